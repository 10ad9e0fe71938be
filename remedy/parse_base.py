"""Shared parse/mutate contract for build-file parsers.

Every ecosystem parser reads a file into a :class:`~remedy.models.ParsedFile`,
records intended edits as :class:`~remedy.models.Modification` entries and
replays them against the untouched original text in
:meth:`BuildFileParser.get_modified_content`.
"""

from dataclasses import dataclass

import structlog

from .models import Dependency, Location, Modification, ParsedFile, Plugin
from .textpatch import TextEdit, apply_edits, indentation_at, line_start, newline_style

log = structlog.get_logger("depremedy.parser")

INSERTION_KINDS = ("constraint", "override")

ADDED = "added"
UPDATED = "updated"
ALREADY_PRESENT = "already_present"
OVERRIDE_EXISTS = "override_exists"
UNSUPPORTED_SCOPE = "unsupported_scope"
NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class ConstraintResult:
    """Outcome of :meth:`BuildFileParser.add_constraint_for_transitive`."""

    status: str  # added, updated, already_present, override_exists, unsupported_scope, not_applicable
    message: str = ""

    def __bool__(self) -> bool:
        """True when the file now pins the dependency through a change made this session."""
        return self.status in (ADDED, UPDATED, ALREADY_PRESENT)


def format_comment(vulnerability_id: str, reason: str) -> str:
    """Single-line ``<id>: <reason>`` comment text."""
    first_line = next((line.strip() for line in reason.splitlines() if line.strip()), "")
    if not vulnerability_id:
        return first_line
    if not first_line:
        return f"{vulnerability_id}: Security update"
    return f"{vulnerability_id}: {first_line}"


def insert_before_closing(raw: str, close: int, text: str) -> TextEdit:
    """Insert ``text`` (whole lines) ahead of the closing token at ``close``.

    When the closing token sits alone on its line the text goes at that
    line's start; otherwise it is wrapped onto fresh lines in front of it.
    """
    start = line_start(raw, close)
    if raw[start:close].strip() == "":
        return TextEdit(start, start, text)
    return TextEdit(close, close, newline_style(raw) + text + indentation_at(raw, close))


def plugin_matches(plugin_id: str, name: str) -> bool:
    """``name`` is the plugin id itself or the id's Gradle marker artifact."""
    return name == plugin_id or name == f"{plugin_id}:{plugin_id}.gradle.plugin"


def indent_unit(indent: str) -> str:
    if indent.startswith("\t"):
        return "\t"
    return indent or "    "


class BuildFileParser:
    """Base class for ecosystem parsers."""

    ecosystem = ""
    comment_open: str | None = "//"
    comment_close = ""

    def __init__(self):
        # file path -> dependency names already given an override this session
        self._file_constraints: dict[str, set[str]] = {}
        self._session_constraints: dict[str, str] = {}

    def clear_constraint_tracker(self) -> None:
        """Reset override tracking for a new analysis session."""
        self._file_constraints.clear()
        self._session_constraints.clear()

    def parse(self, path: str, content: str) -> ParsedFile:
        raise NotImplementedError

    def validate(self, content: str) -> list[str]:
        raise NotImplementedError

    # Lookup

    def find_dependency(
        self, parsed: ParsedFile, name: str, current_version: str | None = None
    ) -> Dependency | None:
        """Locate a declared dependency by coordinate.

        Exact ``group:artifact`` first, then exact artifact name. Substring
        matches are never accepted (``feign-gson`` must not match ``gson``).
        """
        if ":" in name:
            group, artifact = name.split(":")[:2]
        else:
            group, artifact = None, name

        candidates: list[Dependency] = []
        if group is not None:
            candidates = [
                dep for dep in parsed.dependencies
                if dep.group == group and dep.artifact == artifact
            ]
        if not candidates:
            candidates = [
                dep for dep in parsed.dependencies
                if (dep.artifact or dep.name) == artifact
            ]
        if not candidates:
            return None

        if current_version:
            for dep in candidates:
                if dep.version == current_version:
                    return dep
        for dep in candidates:
            if dep.location is not None or dep.variable_name:
                return dep
        return candidates[0]

    def find_plugin(self, parsed: ParsedFile, plugin_id: str, current_version: str) -> Plugin | None:
        return next(
            (
                plugin for plugin in parsed.plugins
                if plugin_matches(plugin.id, plugin_id) and plugin.version == current_version
            ),
            None,
        )

    # Mutation

    def update_dependency_version(
        self,
        parsed: ParsedFile,
        name: str,
        current_version: str,
        new_version: str,
        vulnerability_id: str,
        reason: str,
    ) -> bool:
        """Record a version update for ``name``; False when nothing can be changed."""
        log.info(
            "parser.update_requested",
            file=parsed.file_path,
            dependency=name,
            current=current_version,
            target=new_version,
            vulnerability=vulnerability_id,
        )
        dependency = self.find_dependency(parsed, name, current_version)
        if dependency is None:
            log.warning(
                "parser.dependency_not_found",
                file=parsed.file_path,
                dependency=name,
                available=[dep.name for dep in parsed.dependencies][:20],
            )
            return False

        if dependency.variable_name:
            return self.update_variable(
                parsed, dependency.variable_name, new_version, vulnerability_id, reason, target=name
            )

        if dependency.location is None:
            log.warning(
                "parser.no_version_literal",
                file=parsed.file_path,
                dependency=name,
            )
            return False

        return self._record(
            parsed,
            kind="dependency",
            location=dependency.location,
            old_value=parsed.raw_content[dependency.location.start : dependency.location.end]
            or dependency.raw_version
            or dependency.version,
            new_value=self.render_version(dependency, new_version),
            vulnerability_id=vulnerability_id,
            reason=reason,
            target=name,
        )

    variable_kind = "variable"

    def update_variable(
        self,
        parsed: ParsedFile,
        variable_name: str,
        new_version: str,
        vulnerability_id: str,
        reason: str,
        target: str,
    ) -> bool:
        """Record a new value for a version variable defined in ``parsed``."""
        variable = parsed.find_variable(variable_name)
        if variable is None or variable.location is None:
            log.warning(
                "parser.variable_unresolved",
                file=parsed.file_path,
                dependency=target,
                variable=variable_name,
            )
            return False
        return self._record(
            parsed,
            kind=self.variable_kind,
            location=variable.location,
            old_value=variable.value,
            new_value=new_version,
            vulnerability_id=vulnerability_id,
            reason=reason,
            target=target,
        )

    def update_plugin_version(
        self,
        parsed: ParsedFile,
        plugin_id: str,
        current_version: str,
        new_version: str,
        vulnerability_id: str,
        reason: str,
    ) -> bool:
        """Record a version update for a build plugin, with the same contract as dependencies.

        ``plugin_id`` may be the plugin id itself, its Gradle marker coordinate
        (``<id>:<id>.gradle.plugin``) or a Maven ``groupId:artifactId``. Only a
        declaration at ``current_version`` is touched.
        """
        plugin = self.find_plugin(parsed, plugin_id, current_version)
        if plugin is None:
            log.warning(
                "parser.plugin_not_found",
                file=parsed.file_path,
                plugin=plugin_id,
                current=current_version,
                available=[f"{p.id}:{p.version}" for p in parsed.plugins][:20],
            )
            return False
        if plugin.variable_name:
            return self.update_variable(
                parsed, plugin.variable_name, new_version, vulnerability_id, reason, target=plugin.id
            )
        if plugin.location is None:
            log.warning("parser.no_version_literal", file=parsed.file_path, plugin=plugin_id)
            return False
        return self._record(
            parsed,
            kind="plugin",
            location=plugin.location,
            old_value=plugin.version,
            new_value=new_version,
            vulnerability_id=vulnerability_id,
            reason=reason,
            target=plugin.id,
        )

    def render_version(self, dependency: Dependency, new_version: str) -> str:
        """Text that replaces the dependency's version literal."""
        return new_version

    def add_constraint_for_transitive(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        """Pin a transitive dependency with the ecosystem's override mechanism."""
        tracked = self._file_constraints.setdefault(parsed.file_path, set())
        if name in tracked:
            log.info("parser.constraint_tracked", file=parsed.file_path, dependency=name)
            return ConstraintResult(ALREADY_PRESENT, f"{name} already pinned in this file")

        other_file = self._session_constraints.get(name)
        if other_file and other_file != parsed.file_path:
            log.info(
                "parser.constraint_tracked_elsewhere",
                file=parsed.file_path,
                dependency=name,
                pinned_in=other_file,
            )
            return ConstraintResult(ALREADY_PRESENT, f"{name} already pinned in {other_file}")

        if self.has_override(parsed, name):
            # never a second entry; raise the existing one instead
            result = self._update_override(parsed, name, version, vulnerability_id, reason)
        else:
            result = self._add_override(parsed, name, version, vulnerability_id, reason)

        if result.status in (ADDED, UPDATED):
            tracked.add(name)
            self._session_constraints[name] = parsed.file_path
            log.info(
                f"parser.constraint_{result.status}",
                file=parsed.file_path,
                dependency=name,
                version=version,
                vulnerability=vulnerability_id,
            )
        else:
            log.warning(
                "parser.constraint_declined",
                file=parsed.file_path,
                dependency=name,
                status=result.status,
                detail=result.message,
            )
        return result

    def has_override(self, parsed: ParsedFile, name: str) -> bool:
        raise NotImplementedError

    def _update_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        return ConstraintResult(OVERRIDE_EXISTS, f"existing override pins {name}; update it by hand")

    def _add_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        raise NotImplementedError

    def _record(
        self,
        parsed: ParsedFile,
        *,
        kind: str,
        location: Location,
        old_value: str,
        new_value: str,
        vulnerability_id: str,
        reason: str,
        target: str,
    ) -> bool:
        for existing in parsed.modifications:
            if existing.kind in INSERTION_KINDS or existing.location != location:
                continue
            if existing.new_value == new_value:
                log.info("parser.update_already_recorded", file=parsed.file_path, dependency=target)
                return True
            log.warning(
                "parser.conflicting_update",
                file=parsed.file_path,
                dependency=target,
                recorded=existing.new_value,
                requested=new_value,
            )
            return False

        if old_value == new_value:
            log.info("parser.version_unchanged", file=parsed.file_path, dependency=target)
            return False

        parsed.modifications.append(
            Modification(
                kind=kind,
                location=location,
                old_value=old_value,
                new_value=new_value,
                comment=format_comment(vulnerability_id, reason),
                vulnerability_id=vulnerability_id,
                target=target,
            )
        )
        log.info(
            "parser.update_recorded",
            file=parsed.file_path,
            kind=kind,
            dependency=target,
            old=old_value,
            new=new_value,
            line=location.line + 1,
        )
        return True

    # Output

    def get_modified_content(self, parsed: ParsedFile) -> str:
        """Replay recorded modifications against the original text."""
        if not parsed.modifications:
            return parsed.raw_content

        raw = parsed.raw_content
        edits: list[TextEdit] = []
        inserts: list[Modification] = []
        for mod in parsed.modifications:
            if mod.kind in INSERTION_KINDS:
                inserts.append(mod)
                continue
            edits.append(TextEdit(mod.location.start, mod.location.end, mod.new_value))
            if mod.vulnerability_id and self.comment_open:
                start = line_start(raw, mod.location.start)
                edits.append(TextEdit(start, start, self._comment_line(raw, mod.location.start, mod.comment)))
        if inserts:
            edits.extend(self._insertion_edits(parsed, inserts))
        return apply_edits(raw, edits)

    def _insertion_edits(self, parsed: ParsedFile, mods: list[Modification]) -> list[TextEdit]:
        raise NotImplementedError

    def _comment_line(self, raw: str, offset: int, comment: str) -> str:
        indent = indentation_at(raw, offset)
        closing = f" {self.comment_close}" if self.comment_close else ""
        return f"{indent}{self.comment_open} {comment}{closing}{newline_style(raw)}"

    def changes_summary(self, parsed: ParsedFile) -> str:
        lines = [f"Changes made to {parsed.file_path}:"]
        for mod in parsed.modifications:
            if mod.kind in INSERTION_KINDS:
                lines.append(f"- Added {mod.kind} for {mod.target}: {mod.new_value}")
            elif mod.kind in ("variable", "property"):
                lines.append(
                    f"- Updated version {mod.kind} on line {mod.location.line + 1}: "
                    f"{mod.old_value} -> {mod.new_value} ({mod.target})"
                )
            else:
                lines.append(
                    f"- Updated {mod.kind} {mod.target} on line {mod.location.line + 1}: "
                    f"{mod.old_value or 'managed'} -> {mod.new_value}"
                )
        return "\n".join(lines)
