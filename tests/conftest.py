"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

from remedy.models import AffectedPackageSpec, Dependency, FixSuggestion, Vulnerability
from remedy.toolrun import CommandResult


@pytest.fixture
def sample_gradle():
    """Sample build.gradle content for testing."""
    return """plugins {
    id 'java'
    id 'org.springframework.boot' version '2.7.5'
}

ext {
    jacksonVersion = '2.13.0'
}

dependencies {
    implementation 'commons-io:commons-io:2.6'
    implementation "com.fasterxml.jackson.core:jackson-databind:${jacksonVersion}"
    implementation 'io.github.openfeign:feign-gson:11.8'
    testImplementation 'junit:junit:4.12'
}
"""


@pytest.fixture
def sample_pom():
    """Sample pom.xml content for testing."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
    <modelVersion>4.0.0</modelVersion>
    <groupId>com.example</groupId>
    <artifactId>demo</artifactId>
    <version>1.0.0</version>

    <properties>
        <gson.version>2.8.0</gson.version>
    </properties>

    <dependencies>
        <dependency>
            <groupId>com.google.code.gson</groupId>
            <artifactId>gson</artifactId>
            <version>${gson.version}</version>
        </dependency>
        <dependency>
            <groupId>org.apache.commons</groupId>
            <artifactId>commons-text</artifactId>
            <version>1.9</version>
        </dependency>
        <dependency>
            <groupId>junit</groupId>
            <artifactId>junit</artifactId>
            <version>4.12</version>
            <scope>test</scope>
        </dependency>
    </dependencies>
</project>
"""


@pytest.fixture
def sample_package_json():
    """Sample package.json content for testing."""
    return """{
  "name": "test-project",
  "version": "1.0.0",
  "dependencies": {
    "express": "^4.18.0",
    "lodash": "^4.17.0"
  },
  "devDependencies": {
    "jest": "~29.0.0"
  }
}
"""


@pytest.fixture
def write_repo(tmp_path):
    """Write ``{relative path: content}`` into a temporary repository."""

    def write(files: dict[str, str]) -> Path:
        for relative, content in files.items():
            target = tmp_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return tmp_path

    return write


class FakeRunner:
    """Stand-in for ``run_command`` that records calls and replays results."""

    def __init__(self, responses=None, default=None):
        self.responses = responses or {}
        self.default = default or CommandResult(0, "", "")
        self.calls: list[list[str]] = []

    async def __call__(self, cmd, cwd, timeout, max_output, label=None):
        self.calls.append(list(cmd))
        for marker, response in self.responses.items():
            if marker in cmd:
                if isinstance(response, Exception):
                    raise response
                return response
        return self.default


@pytest.fixture
def fake_runner():
    return FakeRunner


def make_dependency(name="commons-io:commons-io", version="2.6", ecosystem="gradle", **kwargs):
    group, _, artifact = name.rpartition(":")
    kwargs.setdefault("group", group or None)
    kwargs.setdefault("artifact", artifact)
    return Dependency(name=name, version=version, ecosystem=ecosystem, **kwargs)


def make_suggestion(name="commons-io:commons-io", current="2.6", suggested="2.8.0", **kwargs):
    kwargs.setdefault("ecosystem", "gradle")
    kwargs.setdefault("update_type", "minor")
    kwargs.setdefault("confidence", 0.9)
    kwargs.setdefault("fixes_vulnerabilities", ("CVE-2021-29425",))
    kwargs.setdefault("reason", "Fixes CVE-2021-29425 (medium)")
    return FixSuggestion(
        dependency_name=name,
        current_version=current,
        suggested_version=suggested,
        **kwargs,
    )


def make_vulnerability(vuln_id="CVE-2021-29425", name="commons-io:commons-io", ecosystem="maven", **kwargs):
    spec = AffectedPackageSpec(
        name=name,
        ecosystem=ecosystem,
        affected_version_ranges=kwargs.pop("ranges", ["<2.7"]),
        fixed_versions=kwargs.pop("fixed", ["2.7"]),
    )
    return Vulnerability(id=vuln_id, cve_ids=[vuln_id], affected_packages=[spec], **kwargs)


@pytest.fixture
def dependency():
    return make_dependency


@pytest.fixture
def suggestion():
    return make_suggestion


@pytest.fixture
def vulnerability():
    return make_vulnerability
