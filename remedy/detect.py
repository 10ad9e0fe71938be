"""Ecosystem detection for build files."""

import os
import re
from pathlib import Path

LOCK_FILES = (
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "gradle.lockfile",
)

GRADLE_PROPERTIES = "gradle.properties"

RUNTIME_FILES = (".java-version", ".sdkmanrc", ".tool-versions", "runtime.txt")

SKIP_DIRS = {"node_modules", ".git", "target", "build", ".gradle", ".idea", "dist"}


def identify(content: str, filename: str | None = None) -> str:
    """Detect ecosystem from content and filename hints.

    Args:
        content: The build file content
        filename: Optional filename for additional context

    Returns:
        Detected ecosystem: 'gradle', 'maven', 'npm', or one of the non-parsed
            kinds 'docker', 'runtime', 'lock'; 'unknown' otherwise
    """
    # Filename-based detection (takes precedence)
    if filename:
        name = os.path.basename(filename)
        lowered = name.lower()
        if lowered.endswith((".gradle", ".gradle.kts")) or name == GRADLE_PROPERTIES:
            return "gradle"
        if lowered == "pom.xml":
            return "maven"
        if lowered in ("package.json", "package-lock.json", "npm-shrinkwrap.json"):
            return "npm"
        if "dockerfile" in lowered:
            return "docker"
        if name in RUNTIME_FILES:
            return "runtime"
        if name in LOCK_FILES:
            return "lock"

    # Content-based detection
    if re.search(r"<project[\s>]", content) and "<artifactId>" in content:
        return "maven"

    gradle_patterns = [
        r"^\s*dependencies\s*\{",
        r"^\s*(?:implementation|api|testImplementation|compileOnly)\s*\(?\s*['\"][^'\"]+:[^'\"]+['\"]",
        r"^\s*plugins\s*\{",
    ]
    for pattern in gradle_patterns:
        if re.search(pattern, content, re.MULTILINE):
            return "gradle"

    node_patterns = [
        r'"dependencies"\s*:',
        r'"devDependencies"\s*:',
    ]
    for pattern in node_patterns:
        if re.search(pattern, content):
            return "npm"

    return "unknown"


def is_lock_file(file_path: str) -> bool:
    """Lock files carry transitive dependencies."""
    return os.path.basename(file_path) in LOCK_FILES


def is_gradle_properties(file_path: str) -> bool:
    """``gradle.properties`` holds version properties for the scripts beside it."""
    return os.path.basename(file_path) == GRADLE_PROPERTIES


def find_build_files(repo_path: Path) -> list[Path]:
    """Walk ``repo_path`` and return every file with a known type.

    Build-output and vendor directories are skipped. Runtime descriptor files
    (Dockerfiles, version pins) are included for runtime detection.
    """
    found: list[Path] = []
    for root, dirs, files in os.walk(repo_path):
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
        for name in sorted(files):
            if identify("", name) != "unknown":
                found.append(Path(root) / name)
    return found
