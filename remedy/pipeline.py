"""End-to-end flow: analyze a repository, then remediate it."""

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .apply import DEFAULT_TITLE, ChangeApplier, files_to_write, stage_files, write_files
from .config import Settings
from .detect import find_build_files, identify, is_gradle_properties
from .errors import FatalError
from .match import MatchResult, analyze_vulnerabilities
from .models import ChangeSetResult, Vulnerability
from .parsers import ParserRegistry
from .policy import load_heuristics, load_rules
from .providers import RepositoryProvider
from .resolve import TreeResult, build_tree, resolve_tree
from .runtime import RuntimeInfo, detect_java_version
from .safety import SafetyContext

log = structlog.get_logger("depremedy.pipeline")

BUILD_ECOSYSTEMS = ("gradle", "maven", "npm")


@dataclass
class Analysis:
    """Everything the analyze phase learned about one repository."""

    repo_path: Path
    files: dict[str, str]
    tree: TreeResult
    matches: MatchResult
    runtime: RuntimeInfo
    vulnerabilities: list[Vulnerability] = field(default_factory=list)


def read_build_files(repo_path: Path) -> dict[str, str]:
    """Relative path -> content for every recognised file in the repository.

    Raises:
        FatalError: if the repository has no build files
    """
    repo_path = Path(repo_path)
    files: dict[str, str] = {}
    for path in find_build_files(repo_path):
        relative = path.relative_to(repo_path).as_posix()
        try:
            # bytes, so CRLF line endings survive
            files[relative] = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.warning("pipeline.unreadable", file=relative, error=str(e))
    if not any(identify("", p) in BUILD_ECOSYSTEMS and not is_gradle_properties(p) for p in files):
        raise FatalError(f"No build files found in {repo_path}")
    return files


async def analyze(
    repo_path: Path,
    vulnerabilities: list[Vulnerability],
    settings: Settings | None = None,
    static: bool = False,
    runner=None,
) -> Analysis:
    """Build the dependency tree and match vulnerabilities against it.

    Args:
        repo_path: Local working copy
        vulnerabilities: Records from the vulnerability source
        settings: Limits and locations
        static: Skip build-tool escalation
        runner: Subprocess runner override

    Raises:
        FatalError: if there are no build files or the phase exceeds
            ``settings.analysis_timeout``
    """
    settings = settings or Settings()
    repo_path = Path(repo_path)
    files = read_build_files(repo_path)
    registry = ParserRegistry(use_yarn=any(os.path.basename(p) == "yarn.lock" for p in files))
    heuristics = load_heuristics(settings.heuristics_file)

    async def run() -> Analysis:
        if static:
            tree = build_tree(files, registry)
        else:
            tree = await resolve_tree(repo_path, files, settings, registry, runner)
        matches = analyze_vulnerabilities(tree.dependencies, vulnerabilities, heuristics)
        runtime = detect_java_version(files, settings.default_runtime_version)
        return Analysis(repo_path, files, tree, matches, runtime, list(vulnerabilities))

    try:
        analysis = await asyncio.wait_for(run(), settings.analysis_timeout)
    except asyncio.TimeoutError:
        log.error("pipeline.analysis_timeout", repo=str(repo_path), timeout=settings.analysis_timeout)
        raise FatalError(f"Analysis of {repo_path} timed out after {settings.analysis_timeout:g}s") from None

    log.info(
        "pipeline.analyzed",
        repo=str(repo_path),
        dependencies=len(analysis.tree.dependencies),
        affected=len(analysis.matches.affected),
        suggestions=len(analysis.matches.suggestions),
        java_version=analysis.runtime.java_version,
    )
    return analysis


def plan_changes(analysis: Analysis, settings: Settings | None = None, strict: bool = False) -> ChangeSetResult:
    """Classify and apply the analysis' suggestions in memory."""
    settings = settings or Settings()
    context = SafetyContext(
        java_version=analysis.runtime.java_version,
        rules=load_rules(settings.rules_file),
    )
    applier = ChangeApplier(analysis.files)
    vulnerability_ids = analysis.matches.vulnerability_ids or None
    result = applier.apply(
        analysis.matches.suggestions,
        vulnerability_ids=vulnerability_ids,
        context=context,
        title=DEFAULT_TITLE,
        strict=strict,
    )
    result.errors = analysis.tree.errors + result.errors
    return result


async def remediate(
    repo_path: Path,
    vulnerabilities: list[Vulnerability],
    provider: RepositoryProvider,
    base_branch: str = "main",
    settings: Settings | None = None,
    static: bool = False,
    strict: bool = False,
    runner=None,
) -> ChangeSetResult:
    """Analyze, apply safe fixes, commit them and open one change-request."""
    settings = settings or Settings()
    analysis = await analyze(repo_path, vulnerabilities, settings, static, runner)
    result = plan_changes(analysis, settings, strict)
    if not analysis.matches.suggestions:
        log.info("pipeline.nothing_affected", repo=str(repo_path))
        return result

    written = write_files(repo_path, files_to_write(result))
    if not written:
        log.info("pipeline.nothing_to_commit", repo=str(repo_path))
        return result

    await stage_files(repo_path, written, settings, runner)
    ids = sorted(analysis.matches.vulnerability_ids)
    branch = f"{settings.branch_prefix}-{ids[0].lower()}" if len(ids) == 1 else settings.branch_prefix
    await provider.commit_and_push(Path(repo_path), branch, result.title)
    result.change_request = await provider.open_change_request(base_branch, branch, result.title, result.report)
    log.info(
        "pipeline.change_request",
        repo=str(repo_path),
        branch=branch,
        url=result.change_request.url,
        outcome=result.outcome,
    )
    return result
