"""Tests for Java runtime detection."""

import pytest

from remedy.runtime import (
    DEFAULT_JAVA_VERSION,
    detect_java_version,
    from_dockerfile,
    from_gradle,
    from_maven,
    from_version_file,
    java_major,
)


class TestJavaMajor:
    """Test version normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("1.8", 8), ("1_8", 8), ("8", 8), ("17.0.2", 17), ("21", 21), ("1.5", None), ("99", None), ("x", None)],
    )
    def test_java_major(self, raw, expected):
        assert java_major(raw) == expected


class TestSources:
    """Test each detection source."""

    def test_dockerfiles(self):
        assert from_dockerfile("FROM eclipse-temurin:11-jre\nCOPY . .\n") == 11
        assert from_dockerfile("FROM openjdk:8-jdk-alpine") == 8
        assert from_dockerfile("FROM gcr.io/distroless/java17-debian11") == 17
        assert from_dockerfile("FROM registry.example.com:5000/library/amazoncorretto:21") == 21
        assert from_dockerfile("FROM maven:3.9-eclipse-temurin-17 AS build") == 17
        assert from_dockerfile("FROM python:3.11") is None

    def test_version_files(self):
        assert from_version_file(".java-version", "1.8\n") == 8
        assert from_version_file(".sdkmanrc", "# sdkman\njava=17.0.8-tem\n") == 17
        assert from_version_file(".tool-versions", "nodejs 18.0.0\njava temurin-21.0.1+12\n") == 21
        assert from_version_file("runtime.txt", "java-11") == 11
        assert from_version_file(".java-version", "") is None

    def test_gradle(self):
        toolchain = "java {\n    toolchain {\n        languageVersion = JavaLanguageVersion.of(11)\n    }\n}\n"
        assert from_gradle(toolchain) == 11
        assert from_gradle("sourceCompatibility = JavaVersion.VERSION_1_8") == 8
        assert from_gradle("sourceCompatibility = '17'") == 17
        assert from_gradle("dependencies {}") is None

    def test_maven(self):
        assert from_maven("<properties><java.version>17</java.version></properties>") == 17
        assert from_maven("<maven.compiler.source>1.8</maven.compiler.source>") == 8


class TestDetectJavaVersion:
    """Test source ordering and the default."""

    def test_dockerfile_wins_over_build_files(self):
        files = {
            "build.gradle": "sourceCompatibility = '17'",
            "Dockerfile": "FROM eclipse-temurin:11",
        }
        info = detect_java_version(files)
        assert info.java_version == 11
        assert info.source == "Dockerfile"
        assert info.detected

    def test_version_file_wins_over_pom(self):
        files = {"pom.xml": "<java.version>11</java.version>", ".java-version": "21"}
        assert detect_java_version(files).java_version == 21

    def test_invalid_hits_are_skipped(self):
        files = {"Dockerfile": "FROM openjdk:7", "pom.xml": "<java.version>11</java.version>"}
        assert detect_java_version(files).java_version == 11

    def test_default(self):
        info = detect_java_version({"package.json": "{}"})
        assert info.java_version == DEFAULT_JAVA_VERSION
        assert not info.detected
        assert detect_java_version({}, default=11).java_version == 11
