"""Dependency tree construction: static parsing plus tool escalation."""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

import structlog

from .config import Settings
from .detect import is_gradle_properties, is_lock_file
from .errors import ParseError, ResolutionError
from .models import Dependency, ParsedFile
from .parsers import ParserRegistry
from .resolve_gradle import resolve_gradle
from .resolve_maven import resolve_maven
from .versions import is_more_specific

log = structlog.get_logger("depremedy.resolve")


@dataclass
class TreeResult:
    """A resolved dependency tree and what went wrong building it."""

    dependencies: list[Dependency] = field(default_factory=list)
    parsed_files: list[ParsedFile] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    sources: dict[str, str] = field(default_factory=dict)  # ecosystem -> static | resolved


def _merge(a: Dependency, b: Dependency) -> Dependency:
    """Combine two entries with the same identity key; symmetric in its arguments."""
    if is_more_specific(b.version, a.version):
        winner = b
    elif is_more_specific(a.version, b.version):
        winner = a
    else:
        winner = min(a, b, key=lambda dep: (dep.type != "direct", dep.file_path))
    return replace(
        winner,
        is_dev=a.is_dev and b.is_dev,
        type="direct" if "direct" in (a.type, b.type) else "transitive",
    )


def dedupe(dependencies: list[Dependency]) -> list[Dependency]:
    """Collapse duplicates by ``(name, ecosystem)`` keeping first-seen order.

    The more specific version wins and production beats development, whatever
    the order of the input.
    """
    merged: dict[tuple[str, str], Dependency] = {}
    for dep in dependencies:
        existing = merged.get(dep.key)
        merged[dep.key] = dep if existing is None else _merge(existing, dep)
    return list(merged.values())


def build_tree(files: Mapping[str, str], registry: ParserRegistry | None = None) -> TreeResult:
    """Parse every build file and merge the results.

    Args:
        files: Relative path -> file content
        registry: Parsers to use (a fresh registry by default)

    Returns:
        Tree with direct dependencies from manifests, transitive ones from lock
        files, and one error entry per file that failed to parse
    """
    registry = registry or ParserRegistry()
    result = TreeResult()
    collected: list[Dependency] = []

    for path, content in files.items():
        parser = registry.for_file(path, content)
        if parser is None:
            continue
        try:
            parsed = parser.parse(path, content)
        except ParseError as e:
            log.warning("resolve.parse_failed", file=path, error=str(e))
            result.errors.append(str(e))
            continue

        result.parsed_files.append(parsed)

    # gradle.properties values are only known once every file is parsed
    registry.link(result.parsed_files)
    for parsed in result.parsed_files:
        dep_type = "transitive" if is_lock_file(parsed.file_path) else "direct"
        for dep in parsed.dependencies:
            collected.append(replace(dep, type=dep_type) if dep.type != dep_type else dep)
        if not is_gradle_properties(parsed.file_path):
            result.sources.setdefault(parsed.ecosystem, "static")

    result.dependencies = dedupe(collected)
    log.info(
        "resolve.static_tree",
        files=len(result.parsed_files),
        dependencies=len(result.dependencies),
        errors=len(result.errors),
    )
    return result


async def resolve_tree(
    repo_path: Path,
    files: Mapping[str, str],
    settings: Settings | None = None,
    registry: ParserRegistry | None = None,
    runner=None,
) -> TreeResult:
    """Build the static tree, then let Gradle and Maven report the real one.

    An ecosystem's static entries are replaced only when its tool returns a
    non-empty result. Tool failures are recorded on ``TreeResult.errors`` and
    the static data for that ecosystem is kept.
    """
    settings = settings or Settings()
    result = build_tree(files, registry)

    resolvers = {"gradle": resolve_gradle, "maven": resolve_maven}
    for ecosystem, resolver in resolvers.items():
        if ecosystem not in result.sources:
            continue
        try:
            resolved = await resolver(Path(repo_path), settings, runner)
        except ResolutionError as e:
            log.error("resolve.escalation_failed", ecosystem=ecosystem, error=str(e))
            result.errors.append(str(e))
            continue

        if not resolved:
            log.warning("resolve.escalation_empty", ecosystem=ecosystem)
            continue

        kept = [dep for dep in result.dependencies if dep.ecosystem != ecosystem]
        result.dependencies = dedupe(kept + resolved)
        result.sources[ecosystem] = "resolved"
        log.info("resolve.escalated", ecosystem=ecosystem, dependencies=len(resolved))

    return result


def statistics(dependencies: list[Dependency]) -> dict:
    """Counts by ecosystem, direct/transitive and production/development."""
    by_ecosystem: dict[str, int] = {}
    for dep in dependencies:
        by_ecosystem[dep.ecosystem] = by_ecosystem.get(dep.ecosystem, 0) + 1
    return {
        "total": len(dependencies),
        "by_ecosystem": by_ecosystem,
        "direct": sum(1 for dep in dependencies if dep.type == "direct"),
        "transitive": sum(1 for dep in dependencies if dep.type == "transitive"),
        "production": sum(1 for dep in dependencies if not dep.is_dev),
        "development": sum(1 for dep in dependencies if dep.is_dev),
    }
