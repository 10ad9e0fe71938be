"""Gradle build script (Groovy and Kotlin DSL) and ``gradle.properties`` parsing and lossless mutation."""

import os
import posixpath
import re
from dataclasses import dataclass

from .detect import is_gradle_properties
from .errors import ParseError
from .models import Dependency, Location, Modification, ParsedFile, Plugin, Variable
from .parse_base import (
    ADDED,
    NOT_APPLICABLE,
    OVERRIDE_EXISTS,
    UNSUPPORTED_SCOPE,
    UPDATED,
    BuildFileParser,
    ConstraintResult,
    format_comment,
    indent_unit,
    insert_before_closing,
    log,
)
from .textpatch import TextEdit, indentation_at, line_number, line_start, newline_style
from .versions import compare, numeric_parts

BOM_MANAGED = "BOM-managed"

CONFIGURATIONS = (
    "implementation",
    "testImplementation",
    "api",
    "compile",
    "testCompile",
    "runtimeOnly",
    "compileOnly",
    "testRuntimeOnly",
    "testCompileOnly",
    "annotationProcessor",
    "classpath",
)

# Blocks whose dependencies configure the build itself, not the project
BOOTSTRAP_BLOCKS = ("buildscript", "pluginManagement")

_CONF = "|".join(sorted(CONFIGURATIONS, key=len, reverse=True))
_PLATFORM = r"(?:(?:enforcedPlatform|platform)\s*\(?\s*)?"

_SHORT_RE = re.compile(
    rf"^\s*({_CONF})\s*\(?\s*{_PLATFORM}(['\"])([^:'\"\s]+):([^:'\"\s]+):([^:'\"\s@]+)(?::[^'\"\s@]+)?(?:@\w+)?\2"
)
_BOM_RE = re.compile(rf"^\s*({_CONF})\s*\(?\s*(['\"])([^:'\"\s]+):([^:'\"\s]+)\2")
_LONG_RE = re.compile(
    rf"^\s*({_CONF})\s*\(?\s*group\s*[:=]\s*(['\"])([^'\"]+)\2\s*,\s*"
    r"name\s*[:=]\s*(['\"])([^'\"]+)\4\s*,\s*"
    r"version\s*[:=]\s*(['\"])([^'\"]+)\6"
)
_PLUGIN_RE = re.compile(r"^\s*id\s*\(?\s*(['\"])([^'\"]+)\1\s*\)?\s*version\s*\(?\s*(['\"])([^'\"]+)\3")
_KOTLIN_PLUGIN_RE = re.compile(r"^\s*kotlin\s*\(\s*\"([^\"]+)\"\s*\)\s*version\s*\"([^\"]+)\"")
_VARIABLE_RE = re.compile(
    r"^\s*(?:def\s+|val\s+|var\s+|project\.ext\.|ext\.)?([A-Za-z_]\w*)\s*=\s*(['\"])([^'\"\n]*)\2\s*(?://.*)?$"
)
_EXTRA_RE = re.compile(r"^\s*extra\[\s*\"([\w.\-]+)\"\s*\]\s*=\s*\"([^\"\n]*)\"")
_VAR_REF_RE = re.compile(r"^\$\{?([\w.]+)\}?$")
_PROPERTY_RE = re.compile(r"^\s*([\w.\-]+)\s*(?:[=:]\s*|\s+)(\S(?:.*\S)?)\s*$")
_BLOCK_NAME_RE = re.compile(r"([A-Za-z_][\w.]*)\s*(?:\([^()]*\))?\s*$")

_OPENERS = {"{": "}", "(": ")", "[": "]"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}


@dataclass(frozen=True)
class Block:
    """A ``name { ... }`` block found in a script."""

    name: str
    open: int  # offset of '{'
    close: int  # offset of the matching '}'
    parents: tuple[str, ...]


def scan_blocks(text: str) -> tuple[list[Block], list[str]]:
    """Find brace blocks outside strings and comments.

    Returns:
        ``(blocks, errors)``; errors describe unbalanced brackets or
        unterminated strings and comments
    """
    blocks: list[Block] = []
    errors: list[str] = []
    stack: list[tuple[str, int, str]] = []  # (bracket, offset, block name)
    i, n = 0, len(text)

    while i < n:
        ch = text[i]
        if text.startswith("//", i):
            newline = text.find("\n", i)
            i = n if newline == -1 else newline
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                errors.append(f"Unterminated comment on line {line_number(text, i) + 1}")
                break
            i = end + 2
            continue
        if text.startswith('"""', i) or text.startswith("'''", i):
            quote = text[i : i + 3]
            end = text.find(quote, i + 3)
            if end == -1:
                errors.append(f"Unterminated string on line {line_number(text, i) + 1}")
                break
            i = end + 3
            continue
        if ch in "'\"":
            j = i + 1
            while j < n and text[j] != ch and text[j] != "\n":
                j += 2 if text[j] == "\\" else 1
            if j >= n or text[j] != ch:
                errors.append(f"Unterminated string on line {line_number(text, i) + 1}")
                i = j
                continue
            i = j + 1
            continue

        if ch in _OPENERS:
            name = ""
            if ch == "{":
                match = _BLOCK_NAME_RE.search(text, max(0, i - 200), i)
                name = match.group(1) if match else ""
            stack.append((ch, i, name))
        elif ch in _CLOSERS:
            if not stack:
                errors.append(f"Unexpected '{ch}' on line {line_number(text, i) + 1}")
            elif stack[-1][0] != _CLOSERS[ch]:
                opener = stack[-1]
                errors.append(
                    f"Mismatched '{ch}' on line {line_number(text, i) + 1} "
                    f"(expected '{_OPENERS[opener[0]]}' for line {line_number(text, opener[1]) + 1})"
                )
                stack.pop()
            else:
                _, offset, name = stack.pop()
                if ch == "}":
                    parents = tuple(entry[2] for entry in stack if entry[0] == "{")
                    blocks.append(Block(name, offset, i, parents))
        i += 1

    for bracket, offset, _ in stack:
        errors.append(f"Unclosed '{bracket}' opened on line {line_number(text, offset) + 1}")

    blocks.sort(key=lambda block: block.open)
    return blocks, errors


def _lines(content: str):
    """``(number, offset, line)`` for each line, line endings stripped."""
    offset = 0
    for number, line in enumerate(content.splitlines(keepends=True)):
        yield number, offset, line.rstrip("\r\n")
        offset += len(line)


class GradleParser(BuildFileParser):
    """Parser for ``build.gradle`` and ``build.gradle.kts`` files."""

    ecosystem = "gradle"
    comment_open = "//"

    def __init__(self):
        super().__init__()
        self.skip_prefixes = ("//", "/*", "*")

    def parse(self, path: str, content: str) -> ParsedFile:
        """Parse a Gradle script into a :class:`ParsedFile`.

        Raises:
            ParseError: if the script has unbalanced braces or strings
        """
        _, errors = scan_blocks(content)
        if errors:
            raise ParseError(path, "; ".join(errors))

        parsed = ParsedFile(file_path=path, ecosystem=self.ecosystem, raw_content=content)
        for number, offset, line in _lines(content):
            if not line.strip() or line.strip().startswith(self.skip_prefixes):
                continue

            variable = self._parse_variable(line, offset, number)
            if variable:
                parsed.variables.append(variable)
                continue

            plugin = self._parse_plugin(parsed, line, offset, number)
            if plugin:
                parsed.plugins.append(plugin)
                continue

            dependency = self._parse_dependency(parsed, line, offset, number)
            if dependency:
                parsed.dependencies.append(dependency)

        log.debug(
            "parser.gradle_parsed",
            file=path,
            dependencies=len(parsed.dependencies),
            variables=len(parsed.variables),
            plugins=len(parsed.plugins),
        )
        return parsed

    def _parse_variable(self, line: str, offset: int, number: int) -> Variable | None:
        match = _VARIABLE_RE.match(line)
        if match:
            return Variable(
                name=match.group(1),
                value=match.group(3),
                location=Location(offset + match.start(3), offset + match.end(3), number),
            )
        match = _EXTRA_RE.match(line)
        if match:
            return Variable(
                name=match.group(1),
                value=match.group(2),
                location=Location(offset + match.start(2), offset + match.end(2), number),
            )
        return None

    def _script_variable(self, parsed: ParsedFile, reference: str) -> Variable | None:
        """``project.ext.x`` and ``rootProject.x`` fall back to a plain ``x``."""
        return parsed.find_variable(reference) or parsed.find_variable(reference.rsplit(".", 1)[-1])

    def _parse_plugin(self, parsed: ParsedFile, line: str, offset: int, number: int) -> Plugin | None:
        match = _PLUGIN_RE.match(line)
        if match:
            plugin_id, group = match.group(2), 4
        else:
            match = _KOTLIN_PLUGIN_RE.match(line)
            if not match:
                return None
            plugin_id, group = f"org.jetbrains.kotlin.{match.group(1)}", 2

        version = match.group(group)
        reference = _VAR_REF_RE.match(version)
        if reference:
            variable = self._script_variable(parsed, reference.group(1))
            return Plugin(
                id=plugin_id,
                version=variable.value if variable else version,
                variable_name=variable.name if variable else reference.group(1),
            )
        return Plugin(
            id=plugin_id,
            version=version,
            location=Location(offset + match.start(group), offset + match.end(group), number),
        )

    def _parse_dependency(
        self, parsed: ParsedFile, line: str, offset: int, number: int
    ) -> Dependency | None:
        match = _SHORT_RE.match(line)
        version_group = 5
        if not match:
            match = _LONG_RE.match(line)
            version_group = 7
        if match:
            configuration = match.group(1)
            group = match.group(3)
            artifact = match.group(4 if version_group == 5 else 5)
            raw_version = match.group(version_group)
            location = Location(
                offset + match.start(version_group), offset + match.end(version_group), number
            )
            version, variable_name = raw_version, None

            reference = _VAR_REF_RE.match(raw_version)
            if reference:
                variable_name = reference.group(1)
                variable = self._script_variable(parsed, variable_name)
                if variable:
                    variable_name = variable.name
                    version = variable.value
                location = None
            return self._dependency(
                parsed.file_path,
                configuration,
                group,
                artifact,
                version,
                raw_version=raw_version,
                variable_name=variable_name,
                location=location,
            )

        match = _BOM_RE.match(line)
        if match:
            # Version comes from a platform; an update makes it explicit
            insert_at = offset + match.end(4)
            return self._dependency(
                parsed.file_path,
                match.group(1),
                match.group(3),
                match.group(4),
                BOM_MANAGED,
                location=Location(insert_at, insert_at, number),
            )
        return None

    def _dependency(self, file_path, configuration, group, artifact, version, **extra) -> Dependency:
        return Dependency(
            name=f"{group}:{artifact}",
            version=version,
            ecosystem=self.ecosystem,
            file_path=file_path,
            is_dev=configuration.startswith("test"),
            group=group,
            artifact=artifact,
            configuration=configuration,
            **extra,
        )

    def render_version(self, dependency: Dependency, new_version: str) -> str:
        if dependency.version == BOM_MANAGED:
            return f":{new_version}"
        return new_version

    # Constraints

    def _top_level_dependencies(self, blocks: list[Block]) -> Block | None:
        return next((b for b in blocks if b.name == "dependencies" and not b.parents), None)

    def has_override(self, parsed: ParsedFile, name: str) -> bool:
        return bool(self._override_matches(parsed, name))

    def _override_matches(self, parsed: ParsedFile, name: str) -> list[re.Match]:
        if ":" not in name:
            return []
        blocks, _ = scan_blocks(parsed.raw_content)
        pattern = re.compile(rf"(['\"]){re.escape(name)}:([^'\":@\s]*)[^'\"]*\1")
        matches = []
        for block in blocks:
            if block.name in ("constraints", "resolutionStrategy"):
                matches.extend(pattern.finditer(parsed.raw_content, block.open, block.close))
        return matches

    def _update_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        """Raise constraint and ``force`` entries for ``name`` that sit below ``version``."""
        raw = parsed.raw_content
        recorded = False
        kept: list[str] = []
        for match in self._override_matches(parsed, name):
            current = match.group(2)
            if not current or not numeric_parts(current) or compare(current, version) >= 0:
                kept.append(current or "no version")
                continue
            recorded = self._record(
                parsed,
                kind="pin",
                location=Location(match.start(2), match.end(2), line_number(raw, match.start(2))),
                old_value=current,
                new_value=version,
                vulnerability_id=vulnerability_id,
                reason=reason,
                target=name,
            ) or recorded

        if recorded:
            return ConstraintResult(UPDATED, f"raised existing constraint for {name} to {version}")
        return ConstraintResult(OVERRIDE_EXISTS, f"existing constraint pins {name} to {', '.join(kept)}")

    def _add_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        if name.count(":") < 1:
            return ConstraintResult(NOT_APPLICABLE, f"{name} is not a group:artifact coordinate")
        if os.path.basename(parsed.file_path).startswith("settings.gradle"):
            return ConstraintResult(UNSUPPORTED_SCOPE, "settings scripts cannot declare constraints")

        blocks, _ = scan_blocks(parsed.raw_content)
        dependencies = self._top_level_dependencies(blocks)
        if dependencies is None:
            bootstrap = any(
                b.name == "dependencies" and any(p in BOOTSTRAP_BLOCKS for p in b.parents)
                for b in blocks
            )
            if bootstrap:
                return ConstraintResult(
                    UNSUPPORTED_SCOPE, "dependencies block exists only inside buildscript"
                )
            return ConstraintResult(NOT_APPLICABLE, "no top-level dependencies block")

        close = dependencies.close
        parsed.modifications.append(
            Modification(
                kind="constraint",
                location=Location(close, close, line_number(parsed.raw_content, close)),
                old_value="",
                new_value=version,
                comment=self._constraint_comment(vulnerability_id, reason),
                vulnerability_id=vulnerability_id,
                target=name,
            )
        )
        return ConstraintResult(ADDED)

    def _constraint_comment(self, vulnerability_id: str, reason: str) -> str:
        return format_comment(vulnerability_id, reason or "Force secure transitive version")

    def _declaration(self, parsed: ParsedFile, name: str, version: str) -> str:
        if parsed.file_path.endswith(".kts"):
            return f'implementation("{name}:{version}")'
        return f"implementation('{name}:{version}')"

    def _insertion_edits(self, parsed: ParsedFile, mods: list[Modification]) -> list[TextEdit]:
        raw = parsed.raw_content
        nl = newline_style(raw)
        blocks, _ = scan_blocks(raw)
        dependencies = self._top_level_dependencies(blocks)
        if dependencies is None:
            raise ParseError(parsed.file_path, "top-level dependencies block disappeared")

        constraints = next(
            (
                b for b in blocks
                if b.name == "constraints"
                and b.parents == ("dependencies",)
                and dependencies.open < b.open < dependencies.close
            ),
            None,
        )

        def entries(indent: str) -> str:
            text = ""
            for mod in mods:
                if mod.comment:
                    text += f"{indent}// {mod.comment}{nl}"
                text += f"{indent}{self._declaration(parsed, mod.target, mod.new_value)}{nl}"
            return text

        if constraints is not None:
            indent = self._child_indent(raw, constraints)
            return [insert_before_closing(raw, constraints.close, entries(indent))]

        outer = self._child_indent(raw, dependencies)
        inner = outer + indent_unit(outer)
        block = f"{nl}{outer}constraints {{{nl}{entries(inner)}{outer}}}{nl}"
        return [insert_before_closing(raw, dependencies.close, block)]

    def _child_indent(self, raw: str, block: Block) -> str:
        """Indentation used by the lines inside ``block``."""
        first_line = raw.find("\n", block.open)
        if first_line != -1 and first_line < block.close:
            for line in raw[first_line + 1 : line_start(raw, block.close)].splitlines():
                if line.strip():
                    return line[: len(line) - len(line.lstrip())]
        outer = indentation_at(raw, block.open)
        return outer + indent_unit(outer)

    def validate(self, content: str) -> list[str]:
        _, errors = scan_blocks(content)
        return errors


class GradlePropertiesParser(BuildFileParser):
    """Parser for ``gradle.properties``; its entries are version variables for nearby scripts."""

    ecosystem = "gradle"
    comment_open = "#"
    variable_kind = "property"

    def parse(self, path: str, content: str) -> ParsedFile:
        parsed = ParsedFile(file_path=path, ecosystem=self.ecosystem, raw_content=content)
        continued = False
        for number, offset, line in _lines(content):
            # a trailing backslash carries the value onto the next line
            was_continued, continued = continued, line.endswith("\\")
            if was_continued or not line.strip() or line.lstrip().startswith(("#", "!")):
                continue
            match = _PROPERTY_RE.match(line)
            if match and not continued:
                parsed.variables.append(
                    Variable(
                        name=match.group(1),
                        value=match.group(2),
                        location=Location(offset + match.start(2), offset + match.end(2), number),
                    )
                )
        log.debug("parser.properties_parsed", file=path, properties=len(parsed.variables))
        return parsed

    def validate(self, content: str) -> list[str]:
        return []

    def has_override(self, parsed: ParsedFile, name: str) -> bool:
        return False

    def _add_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        return ConstraintResult(NOT_APPLICABLE, "gradle.properties cannot pin dependencies")


def _property_for(
    properties: dict[str, ParsedFile], directory: str, reference: str
) -> tuple[ParsedFile, Variable] | None:
    """Nearest ``gradle.properties`` entry for ``reference``, walking up from ``directory``."""
    while True:
        owner = properties.get(directory)
        if owner is not None:
            for name in (reference, reference.rsplit(".", 1)[-1]):
                variable = owner.find_variable(name)
                if variable is not None:
                    return owner, variable
        if not directory:
            return None
        directory = posixpath.dirname(directory)


def link_properties(parsed_files: list[ParsedFile]) -> int:
    """Resolve script variables left open against ``gradle.properties``.

    Dependencies and plugins whose ``$var`` is not defined in their own script
    take the value of the nearest properties file in the same directory or
    above, and remember that file so updates are written there.

    Returns:
        Number of declarations resolved
    """
    properties = {
        posixpath.dirname(parsed.file_path): parsed
        for parsed in parsed_files
        if is_gradle_properties(parsed.file_path)
    }
    if not properties:
        return 0

    linked = 0
    for parsed in parsed_files:
        if parsed.ecosystem != "gradle" or is_gradle_properties(parsed.file_path):
            continue
        for item in [*parsed.dependencies, *parsed.plugins]:
            if not item.variable_name or parsed.find_variable(item.variable_name):
                continue
            found = _property_for(properties, posixpath.dirname(parsed.file_path), item.variable_name)
            if found is None:
                log.debug("parser.property_unresolved", file=parsed.file_path, variable=item.variable_name)
                continue
            owner, variable = found
            item.version = variable.value
            item.variable_name = variable.name
            item.variable_file = owner.file_path
            linked += 1
    return linked
