"""Change applier: write safe fixes into build files and assemble the change-set."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .config import Settings
from .detect import is_gradle_properties, is_lock_file
from .errors import FatalError, ParseError, ValidationError
from .models import ChangeSetResult, FailedFix, FixSuggestion, ParsedFile
from .parse_base import BuildFileParser
from .parsers import ParserRegistry
from .report import MANUAL_FIX_FILE, render_report, title_for
from .safety import SafetyContext, partition
from .toolrun import run_command
from .versions import numeric_parts

log = structlog.get_logger("depremedy.apply")

DEFAULT_TITLE = "Fix security vulnerabilities"

# bumped together with a fixed spring-boot library at the same version
SPRING_BOOT_PLUGINS = ("org.springframework.boot", "org.springframework.boot:spring-boot-maven-plugin")


@dataclass
class _Attempt:
    fix: FixSuggestion
    files: set[str] = field(default_factory=set)
    reason: str = ""


def _depth(path: str) -> tuple[int, int, str]:
    name = os.path.basename(path)
    # settings scripts cannot carry dependency constraints
    settings_script = 1 if name.startswith("settings.gradle") else 0
    return (path.count("/"), settings_script, path)


class ChangeApplier:
    """Apply fix suggestions to a repository's build files, in memory."""

    def __init__(self, files: Mapping[str, str], registry: ParserRegistry | None = None):
        self.files = dict(files)
        self.registry = registry or ParserRegistry(use_yarn=any(
            os.path.basename(path) == "yarn.lock" for path in files
        ))
        self.parsed: dict[str, ParsedFile] = {}
        self.errors: list[str] = []

    def _parse_manifests(self) -> None:
        self.registry.clear_constraint_trackers()
        for path, content in self.files.items():
            if is_lock_file(path):
                continue
            parser = self.registry.for_file(path, content)
            if parser is None:
                continue
            try:
                self.parsed[path] = parser.parse(path, content)
            except ParseError as e:
                log.warning("apply.parse_failed", file=path, error=str(e))
                self.errors.append(str(e))
        self.registry.link(list(self.parsed.values()))

    def _parser_for(self, path: str) -> BuildFileParser:
        return self.registry.for_file(path, self.files[path])

    def _files_for(self, ecosystem: str) -> list[ParsedFile]:
        return [
            p for p in self.parsed.values()
            if p.ecosystem == ecosystem and not is_gradle_properties(p.file_path)
        ]

    def _update_variable(self, path: str, variable_name: str, fix: FixSuggestion, target: str) -> str | None:
        owner = self.parsed[path]
        if self._parser_for(path).update_variable(
            owner, variable_name, fix.suggested_version, fix.vulnerability_id, fix.reason, target=target
        ):
            return path
        return None

    def _update_dependency(self, parser: BuildFileParser, parsed: ParsedFile, fix: FixSuggestion) -> str | None:
        """Update ``fix`` where ``parsed`` declares it; returns the file that changed."""
        dep = parser.find_dependency(parsed, fix.dependency_name, fix.current_version)
        if dep is not None and dep.variable_file in self.parsed:
            return self._update_variable(dep.variable_file, dep.variable_name, fix, fix.dependency_name)
        if parser.update_dependency_version(
            parsed,
            fix.dependency_name,
            fix.current_version,
            fix.suggested_version,
            fix.vulnerability_id,
            fix.reason,
        ):
            return parsed.file_path
        return None

    def _update_plugin(
        self, parser: BuildFileParser, parsed: ParsedFile, plugin_id: str, current: str, fix: FixSuggestion
    ) -> str | None:
        plugin = parser.find_plugin(parsed, plugin_id, current)
        if plugin is None:
            return None
        if plugin.variable_file in self.parsed:
            return self._update_variable(plugin.variable_file, plugin.variable_name, fix, plugin.id)
        if parser.update_plugin_version(
            parsed, plugin_id, current, fix.suggested_version, fix.vulnerability_id, fix.reason
        ):
            return parsed.file_path
        return None

    def _apply_one(self, fix: FixSuggestion) -> _Attempt:
        attempt = _Attempt(fix)
        if not numeric_parts(fix.suggested_version):
            attempt.reason = f"No concrete target version ({fix.suggested_version})"
            return attempt

        parser = self.registry.get(fix.ecosystem)
        candidates = self._files_for(fix.ecosystem)
        if parser is None or not candidates:
            attempt.reason = f"No {fix.ecosystem} build file to modify"
            return attempt

        candidates.sort(key=lambda p: (p.file_path != fix.file_path, _depth(p.file_path)))
        declaring = [p for p in candidates if parser.find_dependency(p, fix.dependency_name)]

        for parsed in declaring:
            changed = self._update_dependency(parser, parsed, fix)
            if changed:
                attempt.files.add(changed)
        if attempt.files:
            if "spring-boot" in fix.dependency_name:
                self._bump_spring_boot_plugins(parser, candidates, fix)
            return attempt

        # the vulnerable artifact may be a build plugin rather than a dependency
        for parsed in candidates:
            changed = self._update_plugin(parser, parsed, fix.dependency_name, fix.current_version, fix)
            if changed:
                attempt.files.add(changed)
        if attempt.files:
            return attempt

        for parsed in declaring:
            dep = parser.find_dependency(parsed, fix.dependency_name)
            if dep.location is not None or dep.variable_name:
                attempt.reason = "Declaration found but its version could not be updated"
                return attempt

        # Transitive, or declared without a version: pin it on the primary manifest
        primary = min(candidates, key=lambda p: _depth(p.file_path))
        result = parser.add_constraint_for_transitive(
            primary, fix.dependency_name, fix.suggested_version, fix.vulnerability_id, fix.reason
        )
        if result:
            attempt.files.add(primary.file_path)
        else:
            attempt.reason = result.message or result.status
        return attempt

    def _bump_spring_boot_plugins(
        self, parser: BuildFileParser, candidates: list[ParsedFile], fix: FixSuggestion
    ) -> None:
        """Keep the Spring Boot plugin on the same release as its libraries."""
        for parsed in candidates:
            for plugin_id in SPRING_BOOT_PLUGINS:
                if self._update_plugin(parser, parsed, plugin_id, fix.current_version, fix):
                    log.info(
                        "apply.plugin_bumped",
                        file=parsed.file_path,
                        plugin=plugin_id,
                        version=fix.suggested_version,
                    )

    def _render(self) -> dict[str, str]:
        """Modified content for every file that validates; invalid files are dropped."""
        pending: dict[str, str] = {}
        for path, parsed in self.parsed.items():
            if not parsed.modified:
                continue
            try:
                pending[path] = self._parser_for(path).get_modified_content(parsed)
            except (ValueError, ParseError) as e:
                log.error("apply.render_failed", file=path, error=str(e))
                self.errors.append(f"{path}: {e}")

        while True:
            invalid = []
            for path, content in pending.items():
                errors = self._parser_for(path).validate(content)
                if errors:
                    invalid.append(ValidationError(path, errors))
            if not invalid:
                return pending
            for error in invalid:
                log.error("apply.validation_failed", file=error.file_path, errors=error.errors)
                self.errors.append(str(error))
                pending.pop(error.file_path)

    def apply(
        self,
        suggestions: list[FixSuggestion],
        vulnerability_ids: set[str] | None = None,
        context: SafetyContext | None = None,
        title: str = DEFAULT_TITLE,
        strict: bool = False,
    ) -> ChangeSetResult:
        """Classify, apply and report.

        Args:
            suggestions: Fix suggestions from the matcher
            vulnerability_ids: Distinct vulnerability ids the run is about
                (defaults to those named by ``suggestions``)
            context: Safety context (runtime version, rules)
            title: Change-request title before the outcome suffix
            strict: Raise when nothing at all could be applied

        Raises:
            FatalError: if the repository has no build files, or ``strict`` is
                set and no fix produced a change
        """
        self._parse_manifests()
        if not self.parsed:
            raise FatalError("No parseable build files found in repository")

        safe, problematic = partition(suggestions, context)
        attempts = [self._apply_one(fix) for fix in safe]
        modified = self._render()

        applied: list[FixSuggestion] = []
        failed: list[FailedFix] = []
        for attempt in attempts:
            if attempt.files and attempt.files & modified.keys():
                applied.append(attempt.fix)
            elif attempt.files:
                failed.append(FailedFix(attempt.fix, "Modified file failed validation"))
            else:
                failed.append(FailedFix(attempt.fix, attempt.reason or "No matching declaration"))

        if vulnerability_ids is None:
            vulnerability_ids = {v for fix in suggestions for v in fix.fixes_vulnerabilities}
        addressed = {v for fix in applied for v in fix.fixes_vulnerabilities} & vulnerability_ids
        total = len(vulnerability_ids)
        success_rate = len(addressed) / total if total else 0.0

        if success_rate >= 1.0:
            outcome = "full_success"
        elif success_rate > 0:
            outcome = "partial_success"
        else:
            outcome = "no_automatic_fixes"

        if strict and not applied and not modified:
            raise FatalError("No applicable fixes and no file changes")

        ecosystems = sorted({self.parsed[path].ecosystem for path in modified})
        summaries = [
            self._parser_for(path).changes_summary(self.parsed[path])
            for path in modified
        ]
        report = render_report(
            outcome=outcome,
            success_rate=success_rate,
            applied=applied,
            failed=failed,
            problematic=problematic,
            summaries=summaries,
            ecosystems=ecosystems,
            total_vulnerabilities=total,
            addressed_vulnerabilities=len(addressed),
        )

        result = ChangeSetResult(
            outcome=outcome,
            success_rate=success_rate,
            title=title_for(title, outcome, len(addressed), total),
            report=report,
            modified_files=modified,
            applied=applied,
            failed=failed,
            problematic=problematic,
            manual_fix_document=None if modified else report,
            errors=list(self.errors),
        )
        log.info(
            "apply.finished",
            outcome=outcome,
            success_rate=round(success_rate, 3),
            applied=len(applied),
            failed=len(failed),
            problematic=len(problematic),
            files=sorted(modified),
        )
        return result


def apply_fixes(
    files: Mapping[str, str],
    suggestions: list[FixSuggestion],
    vulnerability_ids: set[str] | None = None,
    context: SafetyContext | None = None,
    **kwargs,
) -> ChangeSetResult:
    """Convenience wrapper around :class:`ChangeApplier`."""
    return ChangeApplier(files).apply(suggestions, vulnerability_ids, context, **kwargs)


def files_to_write(result: ChangeSetResult) -> dict[str, str]:
    """Files a change-set writes: the modified build files, or the manual-fix document."""
    if result.modified_files:
        return dict(result.modified_files)
    if result.manual_fix_document:
        return {MANUAL_FIX_FILE: result.manual_fix_document}
    return {}


def write_files(repo_path: Path, contents: Mapping[str, str]) -> list[str]:
    paths = []
    for relative, content in contents.items():
        target = Path(repo_path) / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        paths.append(relative)
    return paths


async def stage_files(repo_path: Path, paths: list[str], settings: Settings | None = None, runner=None) -> None:
    """``git add -- <paths>``; only the files this run wrote."""
    if not paths:
        return
    settings = settings or Settings()
    runner = runner or run_command
    result = await runner(
        ["git", "add", "--", *paths], repo_path, settings.git_timeout, settings.git_max_output, "git"
    )
    if not result.ok:
        raise FatalError(f"git add failed: {result.stderr.strip()}")
