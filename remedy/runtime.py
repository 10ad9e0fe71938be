"""Java runtime version detection for the repository under analysis.

Sources are consulted in order: container base images, version-pin files,
then build descriptors. The first valid hit wins.
"""

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

import structlog

log = structlog.get_logger("depremedy.runtime")

DEFAULT_JAVA_VERSION = 17
MIN_JAVA_VERSION = 8
MAX_JAVA_VERSION = 21

_VERSION = r"(\d+(?:\.\d+)?)"
_REGISTRY = r"(?:[\w.\-]+(?::\d+)?/)*"

DOCKER_PATTERNS = [
    rf"^\s*FROM\s+{_REGISTRY}openjdk:{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}eclipse-temurin:{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}amazoncorretto:{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}zulu-openjdk(?:-alpine|-debian)?:{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}ibm-semeru-runtimes:open-(?:jdk-|jre-)?{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}sapmachine:{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}liberica-openj(?:dk|re)(?:-\w+)?:{_VERSION}",
    rf"^\s*FROM\s+{_REGISTRY}adoptopenjdk(?:/openjdk(\d+)|:{_VERSION})",
    rf"^\s*FROM\s+gcr\.io/distroless/java(\d+)",
    rf"^\s*FROM\s+{_REGISTRY}maven:[\w.\-]*?(?:jdk|temurin|corretto|openjdk)-?(\d+)",
    rf"^\s*FROM\s+{_REGISTRY}gradle:[\w.\-]*?jdk-?(\d+)",
]

GRADLE_PATTERNS = [
    r"JavaLanguageVersion\.of\(\s*(\d+)\s*\)",
    r"(?:sourceCompatibility|targetCompatibility)\s*=\s*JavaVersion\.VERSION_(\d+(?:_\d+)?)",
    r"(?:sourceCompatibility|targetCompatibility)\s*=\s*['\"]?(\d+(?:\.\d+)?)['\"]?",
    r"options\.release\s*(?:=|\.set\()\s*(\d+)",
    r"['\"]--release['\"]\s*,\s*['\"](\d+)['\"]",
    r"jvmTarget\s*(?:=|\.set\()\s*(?:JvmTarget\.JVM_)?['\"]?(\d+(?:\.\d+)?)",
]

MAVEN_PATTERNS = [
    r"<maven\.compiler\.release>\s*(\d+(?:\.\d+)?)\s*</",
    r"<maven\.compiler\.source>\s*(\d+(?:\.\d+)?)\s*</",
    r"<maven\.compiler\.target>\s*(\d+(?:\.\d+)?)\s*</",
    r"<java\.version>\s*(\d+(?:\.\d+)?)\s*</",
    r"<release>\s*(\d+(?:\.\d+)?)\s*</release>",
    r"<source>\s*(\d+(?:\.\d+)?)\s*</source>",
    r"<target>\s*(\d+(?:\.\d+)?)\s*</target>",
]


@dataclass(frozen=True)
class RuntimeInfo:
    """Detected Java version and where it came from."""

    java_version: int
    source: str  # file path, or "default"

    @property
    def detected(self) -> bool:
        return self.source != "default"


def java_major(raw: str) -> int | None:
    """``1.8`` / ``1_8`` -> 8, ``17.0.2`` -> 17; ``None`` outside the supported range."""
    parts = re.split(r"[._]", raw.strip())
    if not parts or not parts[0].isdigit():
        return None
    major = int(parts[0])
    if major == 1 and len(parts) > 1 and parts[1].isdigit():
        major = int(parts[1])
    if MIN_JAVA_VERSION <= major <= MAX_JAVA_VERSION:
        return major
    return None


def _first_match(patterns: list[str], content: str, flags: int = 0) -> int | None:
    for pattern in patterns:
        for match in re.finditer(pattern, content, flags):
            raw = next((g for g in match.groups() if g), None)
            version = java_major(raw) if raw else None
            if version:
                return version
    return None


def from_dockerfile(content: str) -> int | None:
    return _first_match(DOCKER_PATTERNS, content, re.MULTILINE | re.IGNORECASE)


def from_version_file(name: str, content: str) -> int | None:
    text = content.strip()
    if name == ".java-version":
        return java_major(text.splitlines()[0]) if text else None
    if name == ".sdkmanrc":
        match = re.search(r"^\s*java\s*=\s*(\d+(?:\.\d+)?)", text, re.MULTILINE)
    elif name == ".tool-versions":
        match = re.search(r"^\s*java\s+\D*?(\d+(?:\.\d+)?)", text, re.MULTILINE)
    elif name == "runtime.txt":
        match = re.search(r"java-(\d+(?:\.\d+)?)", text)
    else:
        return None
    return java_major(match.group(1)) if match else None


def from_gradle(content: str) -> int | None:
    return _first_match(GRADLE_PATTERNS, content)


def from_maven(content: str) -> int | None:
    return _first_match(MAVEN_PATTERNS, content)


def detect_java_version(files: Mapping[str, str], default: int = DEFAULT_JAVA_VERSION) -> RuntimeInfo:
    """Detect the Java version a repository builds and runs with.

    Args:
        files: Relative path -> content for the repository's files
        default: Version assumed when nothing is found

    Returns:
        The first valid version in the order Dockerfiles, version-pin
        files, Gradle scripts, Maven POMs
    """
    paths = sorted(files)
    tiers = [
        (lambda p: "dockerfile" in os.path.basename(p).lower(), lambda p, c: from_dockerfile(c)),
        (
            lambda p: os.path.basename(p) in (".java-version", ".sdkmanrc", ".tool-versions", "runtime.txt"),
            lambda p, c: from_version_file(os.path.basename(p), c),
        ),
        (lambda p: p.endswith((".gradle", ".gradle.kts")), lambda p, c: from_gradle(c)),
        (lambda p: os.path.basename(p) == "pom.xml", lambda p, c: from_maven(c)),
    ]

    for selects, extract in tiers:
        for path in paths:
            if not selects(path):
                continue
            version = extract(path, files[path])
            if version:
                log.info("runtime.detected", java_version=version, source=path)
                return RuntimeInfo(version, path)

    log.info("runtime.default", java_version=default)
    return RuntimeInfo(default, "default")
