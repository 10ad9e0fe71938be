"""Node.js ``package.json`` and ``package-lock.json`` parsing."""

import json
import os
from dataclasses import dataclass, field

from .errors import MatchError, ParseError
from .models import Dependency, Location, Modification, ParsedFile
from .parse_base import (
    ADDED,
    NOT_APPLICABLE,
    OVERRIDE_EXISTS,
    UPDATED,
    BuildFileParser,
    ConstraintResult,
    format_comment,
    log,
)
from .textpatch import TextEdit, indentation_at, line_number, newline_style
from .versions import coerce, compare, is_wildcard, range_prefix, strip_range_prefix, version_in_range

DEPENDENCY_SECTIONS = (
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
)

LOCK_FILE_NAMES = ("package-lock.json", "npm-shrinkwrap.json")

YARN_PREFIX = "**/"

_WS = " \t\r\n"


@dataclass
class JsonNode:
    """A JSON value with its span in the original text (quotes included)."""

    kind: str  # object, array, string, scalar
    start: int
    end: int
    value: str | None = None
    members: dict[str, "JsonNode"] = field(default_factory=dict)
    key_starts: dict[str, int] = field(default_factory=dict)


def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i] in _WS:
        i += 1
    return i


def _scan_string(text: str, i: int) -> JsonNode:
    j = i + 1
    while text[j] != '"':
        j += 2 if text[j] == "\\" else 1
    return JsonNode("string", i, j + 1, value=json.loads(text[i : j + 1]))


def scan_json(text: str, i: int = 0) -> JsonNode:
    """Locate every value in an already-validated JSON document."""
    node, _ = _scan_value(text, _skip_ws(text, i))
    return node


def _scan_value(text: str, i: int) -> tuple[JsonNode, int]:
    ch = text[i]
    if ch == '"':
        node = _scan_string(text, i)
        return node, node.end

    if ch == "{":
        node = JsonNode("object", i, i)
        i = _skip_ws(text, i + 1)
        while text[i] != "}":
            key = _scan_string(text, i)
            i = _skip_ws(text, key.end)
            i = _skip_ws(text, i + 1)  # ':'
            value, i = _scan_value(text, i)
            node.members[key.value] = value
            node.key_starts[key.value] = key.start
            i = _skip_ws(text, i)
            if text[i] == ",":
                i = _skip_ws(text, i + 1)
        node.end = i + 1
        return node, node.end

    if ch == "[":
        node = JsonNode("array", i, i)
        i = _skip_ws(text, i + 1)
        while text[i] != "]":
            _, i = _scan_value(text, i)
            i = _skip_ws(text, i)
            if text[i] == ",":
                i = _skip_ws(text, i + 1)
        node.end = i + 1
        return node, node.end

    j = i
    while j < len(text) and text[j] not in ",]}" + _WS:
        j += 1
    return JsonNode("scalar", i, j, value=text[i:j]), j


def _version_token(raw: str) -> tuple[int, int] | None:
    """Span of the first version in a range spec, after its operator."""
    start = len(raw) - len(raw.lstrip())
    start += len(range_prefix(raw))
    while start < len(raw) and raw[start] in " \t":
        start += 1
    end = start
    while end < len(raw) and raw[end] not in " \t|,":
        end += 1
    return (start, end) if end > start else None


def _is_lock_file(path: str) -> bool:
    return os.path.basename(path) in LOCK_FILE_NAMES


def _override_packages(key: str) -> list[str]:
    """Package names along an override key, version selectors dropped.

    ``**/parent/@scope/child@^1`` -> ``["parent", "@scope/child"]``.
    """
    segments = [s for s in key.split("/") if s and s != "**"]
    packages: list[str] = []
    i = 0
    while i < len(segments):
        segment = segments[i]
        if segment.startswith("@") and i + 1 < len(segments):
            segment = f"{segment}/{segments[i + 1]}"
            i += 1
        i += 1
        at = segment.find("@", 1)
        packages.append(segment[:at] if at > 0 else segment)
    return packages


def _override_key_matches(key: str, name: str) -> bool:
    """True when ``key`` overrides ``name`` itself, not a parent or a scoped namesake."""
    packages = _override_packages(key)
    return bool(packages) and packages[-1] == name


def _override_tables(root: JsonNode) -> list[JsonNode]:
    tables = [root.members.get("overrides"), root.members.get("resolutions")]
    pnpm = root.members.get("pnpm")
    if pnpm is not None and pnpm.kind == "object":
        tables.append(pnpm.members.get("overrides"))
    return [table for table in tables if table is not None and table.kind == "object"]


def _override_pins(table: JsonNode, name: str) -> list[JsonNode]:
    """String nodes that pin ``name`` anywhere inside an override table."""
    pins: list[JsonNode] = []
    for key, member in table.members.items():
        if _override_key_matches(key, name):
            # {"name": {".": "1.0.0", ...}} pins name and overrides its children
            own = member.members.get(".") if member.kind == "object" else member
            if own is not None and own.kind == "string":
                pins.append(own)
        if member.kind == "object":
            pins.extend(_override_pins(member, name))
    return pins


class NodeParser(BuildFileParser):
    """Parser for npm manifests and lock files."""

    ecosystem = "npm"
    comment_open = None  # JSON has no comments

    def __init__(self, use_yarn: bool = False):
        super().__init__()
        self.use_yarn = use_yarn

    def _load(self, path: str, content: str) -> dict:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ParseError(path, f"Invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ParseError(path, "Top-level JSON value must be an object")
        return data

    def parse(self, path: str, content: str) -> ParsedFile:
        """Parse package.json (or a package-lock.json) into a :class:`ParsedFile`.

        Raises:
            ParseError: if the content is not a JSON object
        """
        data = self._load(path, content)
        parsed = ParsedFile(file_path=path, ecosystem=self.ecosystem, raw_content=content)

        if _is_lock_file(path):
            parsed.dependencies.extend(self._lock_dependencies(path, data))
            return parsed

        root = scan_json(content)
        for section in DEPENDENCY_SECTIONS:
            node = root.members.get(section)
            if node is None or node.kind != "object":
                continue
            for name, spec in node.members.items():
                if spec.kind != "string":
                    continue
                parsed.dependencies.append(self._dependency(path, content, section, name, spec))

        log.debug("parser.npm_parsed", file=path, dependencies=len(parsed.dependencies))
        return parsed

    def _dependency(self, path: str, content: str, section: str, name: str, spec: JsonNode) -> Dependency:
        raw_version = spec.value or ""
        stripped = strip_range_prefix(raw_version)
        version = stripped.split()[0] if stripped.split() else ""
        if is_wildcard(version):
            version = "*"

        location = None
        span = _version_token(raw_version)
        # git URLs, file: paths, npm: aliases and tags are not editable versions
        editable = not any(mark in raw_version for mark in (":", "/", "#"))
        # escaped characters would shift offsets between the value and the text
        literal = content[spec.start + 1 : spec.end - 1] == raw_version
        if coerce(version) and editable and literal and span:
            start = spec.start + 1 + span[0]
            location = Location(start, spec.start + 1 + span[1], line_number(content, start))

        return Dependency(
            name=name,
            version=version,
            ecosystem=self.ecosystem,
            file_path=path,
            is_dev=section == "devDependencies",
            artifact=name,
            configuration=section,
            raw_version=raw_version,
            location=location,
        )

    def _lock_dependencies(self, path: str, data: dict) -> list[Dependency]:
        found: list[Dependency] = []
        packages = data.get("packages")
        if isinstance(packages, dict):
            # lockfileVersion 2 and 3
            for package_path, info in packages.items():
                if not package_path or not isinstance(info, dict) or info.get("link"):
                    continue
                version = info.get("version")
                if not version:
                    continue
                name = info.get("name") or package_path.rsplit("node_modules/", 1)[-1]
                found.append(self._locked(path, name, version, info))
            return found

        def walk(tree: dict) -> None:
            for name, info in tree.items():
                if not isinstance(info, dict):
                    continue
                version = info.get("version")
                if version:
                    found.append(self._locked(path, name, version, info))
                nested = info.get("dependencies")
                if isinstance(nested, dict):
                    walk(nested)

        dependencies = data.get("dependencies")
        if isinstance(dependencies, dict):
            walk(dependencies)
        return found

    def _locked(self, path: str, name: str, version: str, info: dict) -> Dependency:
        return Dependency(
            name=name,
            version=version,
            ecosystem=self.ecosystem,
            type="transitive",
            file_path=path,
            is_dev=bool(info.get("dev")),
            artifact=name,
            raw_version=version,
        )

    def update_dependency_version(
        self,
        parsed: ParsedFile,
        name: str,
        current_version: str,
        new_version: str,
        vulnerability_id: str,
        reason: str,
    ) -> bool:
        """Rewrite the first version of the range, keeping operators and other bounds.

        A compound range (``>=4.17.0 <5.0.0``, ``1.2.0 - 1.5.0``) that would no
        longer admit ``new_version`` after the rewrite is left alone.
        """
        dependency = self.find_dependency(parsed, name, current_version)
        if dependency is not None and dependency.location is not None:
            raw = dependency.raw_version or ""
            start, end = _version_token(raw)
            if raw[end:].strip():
                rewritten = raw[:start] + new_version + raw[end:]
                try:
                    admitted = version_in_range(new_version, rewritten)
                except MatchError:
                    admitted = False
                if not admitted:
                    log.warning(
                        "parser.range_excludes_target",
                        file=parsed.file_path,
                        dependency=name,
                        range=raw,
                        target=new_version,
                    )
                    return False
        return super().update_dependency_version(
            parsed, name, current_version, new_version, vulnerability_id, reason
        )

    # Overrides

    def _section_for(self, data: dict) -> str:
        if self.use_yarn or isinstance(data.get("resolutions"), dict):
            return "resolutions"
        return "overrides"

    def has_override(self, parsed: ParsedFile, name: str) -> bool:
        data = json.loads(parsed.raw_content)
        pnpm = data.get("pnpm") if isinstance(data.get("pnpm"), dict) else {}
        for table in (data.get("overrides"), data.get("resolutions"), pnpm.get("overrides")):
            if isinstance(table, dict) and self._mentions(table, name):
                return True
        return False

    def _mentions(self, table: dict, name: str) -> bool:
        for key, value in table.items():
            if _override_key_matches(key, name):
                return True
            if isinstance(value, dict) and self._mentions(value, name):
                return True
        return False

    def _update_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        """Raise every existing pin of ``name`` that sits below ``version``."""
        if _is_lock_file(parsed.file_path):
            return ConstraintResult(NOT_APPLICABLE, "lock files are not edited")

        raw = parsed.raw_content
        recorded = False
        kept: list[str] = []
        for table in _override_tables(scan_json(raw)):
            for pin in _override_pins(table, name):
                value = pin.value or ""
                span = _version_token(value)
                literal = raw[pin.start + 1 : pin.end - 1] == value
                # "$name" references and npm:/git/file specs are not editable versions
                editable = not value.startswith("$") and not any(mark in value for mark in (":", "/", "#"))
                if span is None or not (literal and editable) or not coerce(value[span[0] : span[1]]):
                    kept.append(value)
                    continue
                current = value[span[0] : span[1]]
                if compare(current, version) >= 0:
                    kept.append(value)
                    continue
                start = pin.start + 1 + span[0]
                recorded = self._record(
                    parsed,
                    kind="pin",
                    location=Location(start, pin.start + 1 + span[1], line_number(raw, start)),
                    old_value=current,
                    new_value=version,
                    vulnerability_id=vulnerability_id,
                    reason=reason,
                    target=name,
                ) or recorded

        if recorded:
            return ConstraintResult(UPDATED, f"raised existing override for {name} to {version}")
        return ConstraintResult(OVERRIDE_EXISTS, f"existing override pins {name} to {', '.join(kept)}")

    def _add_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        if _is_lock_file(parsed.file_path):
            return ConstraintResult(NOT_APPLICABLE, "lock files are not edited")

        data = json.loads(parsed.raw_content)
        section = self._section_for(data)
        if section in data and not isinstance(data[section], dict):
            return ConstraintResult(NOT_APPLICABLE, f'"{section}" is not an object')

        key = f"{YARN_PREFIX}{name}" if section == "resolutions" else name
        root = scan_json(parsed.raw_content)
        anchor = root.end - 1
        parsed.modifications.append(
            Modification(
                kind="override",
                location=Location(anchor, anchor, line_number(parsed.raw_content, anchor)),
                old_value="",
                new_value=version,
                comment=format_comment(vulnerability_id, reason or "Force secure transitive version"),
                vulnerability_id=vulnerability_id,
                target=key,
            )
        )
        return ConstraintResult(ADDED)

    def _insertion_edits(self, parsed: ParsedFile, mods: list[Modification]) -> list[TextEdit]:
        raw = parsed.raw_content
        nl = newline_style(raw)
        root = scan_json(raw)
        first_key = min(root.key_starts.values(), default=None)
        unit = indentation_at(raw, first_key) if first_key is not None else ""
        unit = unit or "  "

        grouped: dict[str, list[Modification]] = {}
        for mod in mods:
            section = "resolutions" if mod.target.startswith(YARN_PREFIX) else "overrides"
            grouped.setdefault(section, []).append(mod)

        edits: list[TextEdit] = []
        for section, entries in grouped.items():
            pairs = [(json.dumps(mod.target), json.dumps(mod.new_value)) for mod in entries]
            table = root.members.get(section)

            if table is not None and table.members:
                last = max(table.members, key=lambda k: table.members[k].end)
                indent = indentation_at(raw, table.key_starts[last])
                text = "".join(f",{nl}{indent}{k}: {v}" for k, v in pairs)
                edits.append(TextEdit(table.members[last].end, table.members[last].end, text))
            elif table is not None:
                outer = indentation_at(raw, table.start)
                body = f",{nl}".join(f"{outer}{unit}{k}: {v}" for k, v in pairs)
                edits.append(TextEdit(table.start + 1, table.end - 1, f"{nl}{body}{nl}{outer}"))
            else:
                body = f",{nl}".join(f"{unit * 2}{k}: {v}" for k, v in pairs)
                block = f'{unit}"{section}": {{{nl}{body}{nl}{unit}}}'
                if root.members:
                    last = max(root.members.values(), key=lambda node: node.end)
                    edits.append(TextEdit(last.end, last.end, f",{nl}{block}"))
                else:
                    edits.append(TextEdit(root.start + 1, root.end - 1, f"{nl}{block}{nl}"))
        return edits

    def validate(self, content: str) -> list[str]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            return [f"Invalid JSON: {e}"]
        if not isinstance(data, dict):
            return ["Top-level JSON value must be an object"]

        errors = []
        for section in DEPENDENCY_SECTIONS:
            if section not in data:
                continue
            table = data[section]
            if not isinstance(table, dict):
                errors.append(f'"{section}" must be an object')
                continue
            for name, version in table.items():
                if not isinstance(version, str):
                    errors.append(f'Version for "{name}" in "{section}" must be a string')
        return errors
