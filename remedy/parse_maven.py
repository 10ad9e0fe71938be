"""Maven ``pom.xml`` parsing and lossless mutation.

``xml.etree`` checks well-formedness; positions come from a small tag
scanner over the raw text so edits never re-serialize the document.
"""

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from .errors import ParseError
from .models import Dependency, Location, Modification, ParsedFile, Plugin, Variable
from .parse_base import (
    ADDED,
    NOT_APPLICABLE,
    OVERRIDE_EXISTS,
    UPDATED,
    BuildFileParser,
    ConstraintResult,
    format_comment,
    indent_unit,
    insert_before_closing,
    log,
)
from .textpatch import TextEdit, indentation_at, line_number, newline_style
from .versions import compare, numeric_parts

_TOKEN_RE = re.compile(
    r"<!--.*?-->|<!\[CDATA\[.*?\]\]>|<\?.*?\?>|<!DOCTYPE[^>]*>"
    r"|<(?P<close>/)?(?P<tag>[A-Za-z_][\w.\-:]*)(?P<attrs>[^>]*?)(?P<empty>/)?>",
    re.DOTALL,
)
_PROPERTY_REF_RE = re.compile(r"^\$\{([^}]+)\}$")

DEFAULT_PLUGIN_GROUP = "org.apache.maven.plugins"


@dataclass
class Element:
    """An XML element with offsets into the original text."""

    tag: str
    start: int  # offset of '<'
    content_start: int
    content_end: int  # offset of '</' (== content_start for empty elements)
    children: list["Element"] = field(default_factory=list)

    def child(self, tag: str) -> "Element | None":
        return next((c for c in self.children if c.tag == tag), None)

    def all(self, tag: str) -> list["Element"]:
        return [c for c in self.children if c.tag == tag]

    def text(self, raw: str) -> str:
        return raw[self.content_start : self.content_end].strip()

    def text_location(self, raw: str) -> Location:
        """Span of the element's text without surrounding whitespace."""
        body = raw[self.content_start : self.content_end]
        start = self.content_start + (len(body) - len(body.lstrip()))
        end = self.content_start + len(body.rstrip())
        return Location(start, max(start, end), line_number(raw, start))


def scan_elements(raw: str) -> Element:
    """Build an offset-annotated element tree; input must be well-formed."""
    root: Element | None = None
    stack: list[Element] = []

    for match in _TOKEN_RE.finditer(raw):
        tag = match.group("tag")
        if tag is None:
            continue
        tag = tag.split(":")[-1]

        if match.group("close"):
            element = stack.pop()
            element.content_end = match.start()
            if not stack:
                root = element
            continue

        element = Element(tag, match.start(), match.end(), match.end())
        if stack:
            stack[-1].children.append(element)
        if match.group("empty"):
            if not stack:
                root = element
            continue
        stack.append(element)

    if root is None:
        raise ValueError("document has no root element")
    return root


class MavenParser(BuildFileParser):
    """Parser for Maven ``pom.xml`` files."""

    ecosystem = "maven"
    comment_open = "<!--"
    comment_close = "-->"
    variable_kind = "property"

    def _load(self, path: str, content: str) -> Element:
        errors = self.validate(content)
        if errors:
            raise ParseError(path, "; ".join(errors))
        return scan_elements(content)

    def parse(self, path: str, content: str) -> ParsedFile:
        """Parse a POM into a :class:`ParsedFile`.

        Raises:
            ParseError: if the XML is malformed or the root is not ``project``
        """
        project = self._load(path, content)
        parsed = ParsedFile(file_path=path, ecosystem=self.ecosystem, raw_content=content)

        properties = project.child("properties")
        if properties:
            for prop in properties.children:
                parsed.variables.append(
                    Variable(
                        name=prop.tag,
                        value=prop.text(content),
                        location=prop.text_location(content),
                    )
                )

        parent = project.child("parent")
        if parent:
            dependency = self._dependency(parsed, parent, "parent")
            if dependency:
                parsed.dependencies.append(dependency)

        for configuration, container in self._dependency_containers(project):
            for element in container.all("dependency"):
                dependency = self._dependency(parsed, element, configuration)
                if dependency:
                    parsed.dependencies.append(dependency)

        build = project.child("build")
        if build:
            self._collect_plugins(parsed, build)

        log.debug(
            "parser.maven_parsed",
            file=path,
            dependencies=len(parsed.dependencies),
            properties=len(parsed.variables),
            plugins=len(parsed.plugins),
        )
        return parsed

    def _dependency_containers(self, project: Element) -> list[tuple[str | None, Element]]:
        containers: list[tuple[str | None, Element]] = []
        direct = project.child("dependencies")
        if direct:
            containers.append((None, direct))
        for configuration, managed in self._managed_containers(project):
            containers.append((configuration, managed))
        profiles = project.child("profiles")
        if profiles:
            for profile in profiles.all("profile"):
                deps = profile.child("dependencies")
                if deps:
                    containers.append(("profile", deps))
        return containers

    def _managed_containers(self, project: Element) -> list[tuple[str, Element]]:
        found = []
        scopes = [project]
        profiles = project.child("profiles")
        if profiles:
            scopes.extend(profiles.all("profile"))
        for scope in scopes:
            management = scope.child("dependencyManagement")
            deps = management.child("dependencies") if management else None
            if deps:
                found.append(("dependencyManagement", deps))
        return found

    def _dependency(self, parsed: ParsedFile, element: Element, configuration: str | None) -> Dependency | None:
        raw = parsed.raw_content
        group = element.child("groupId")
        artifact = element.child("artifactId")
        if not group or not artifact:
            return None
        group_id, artifact_id = group.text(raw), artifact.text(raw)

        version_element = element.child("version")
        scope = element.child("scope")
        scope_text = scope.text(raw) if scope else None

        version, raw_version, location, variable_name = "managed", None, None, None
        if version_element:
            raw_version = version_element.text(raw)
            version = raw_version
            reference = _PROPERTY_REF_RE.match(raw_version)
            if reference:
                variable_name = reference.group(1)
                variable = parsed.find_variable(variable_name)
                if variable:
                    version = variable.value
            else:
                location = version_element.text_location(raw)

        return Dependency(
            name=f"{group_id}:{artifact_id}",
            version=version,
            ecosystem=self.ecosystem,
            file_path=parsed.file_path,
            is_dev=scope_text == "test",
            group=group_id,
            artifact=artifact_id,
            configuration=configuration or scope_text,
            variable_name=variable_name,
            raw_version=raw_version,
            location=location,
        )

    def _collect_plugins(self, parsed: ParsedFile, build: Element) -> None:
        raw = parsed.raw_content
        containers = [build.child("plugins")]
        management = build.child("pluginManagement")
        if management:
            containers.append(management.child("plugins"))
        for container in containers:
            if not container:
                continue
            for plugin in container.all("plugin"):
                artifact = plugin.child("artifactId")
                version = plugin.child("version")
                if not artifact or not version:
                    continue
                group = plugin.child("groupId")
                group_id = group.text(raw) if group else DEFAULT_PLUGIN_GROUP
                plugin_id = f"{group_id}:{artifact.text(raw)}"
                text = version.text(raw)
                reference = _PROPERTY_REF_RE.match(text)
                if reference:
                    prop = parsed.find_variable(reference.group(1))
                    parsed.plugins.append(
                        Plugin(
                            id=plugin_id,
                            version=prop.value if prop else text,
                            variable_name=reference.group(1),
                        )
                    )
                else:
                    parsed.plugins.append(Plugin(id=plugin_id, version=text, location=version.text_location(raw)))

    def _comment_line(self, raw: str, offset: int, comment: str) -> str:
        # "--" is not allowed inside XML comments
        return super()._comment_line(raw, offset, comment.replace("--", "-"))

    # Constraints

    def has_override(self, parsed: ParsedFile, name: str) -> bool:
        raw = parsed.raw_content
        project = scan_elements(raw)
        for _, container in self._managed_containers(project):
            for element in container.all("dependency"):
                group, artifact = element.child("groupId"), element.child("artifactId")
                if group and artifact and f"{group.text(raw)}:{artifact.text(raw)}" == name:
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
        """Raise managed versions of ``name`` below ``version``, through their property if any."""
        recorded = False
        kept: list[str] = []
        for dependency in parsed.dependencies:
            if dependency.configuration != "dependencyManagement" or dependency.name != name:
                continue
            if not numeric_parts(dependency.version) or compare(dependency.version, version) >= 0:
                kept.append(dependency.version)
                continue
            recorded = self.update_dependency_version(
                parsed, name, dependency.version, version, vulnerability_id, reason
            ) or recorded

        if recorded:
            return ConstraintResult(UPDATED, f"raised managed version of {name} to {version}")
        return ConstraintResult(OVERRIDE_EXISTS, f"dependencyManagement pins {name} to {', '.join(kept)}")

    def _add_override(
        self,
        parsed: ParsedFile,
        name: str,
        version: str,
        vulnerability_id: str,
        reason: str,
    ) -> ConstraintResult:
        if name.count(":") < 1:
            return ConstraintResult(NOT_APPLICABLE, f"{name} is not a groupId:artifactId coordinate")

        project = scan_elements(parsed.raw_content)
        close = project.content_end
        parsed.modifications.append(
            Modification(
                kind="constraint",
                location=Location(close, close, line_number(parsed.raw_content, close)),
                old_value="",
                new_value=version,
                comment=format_comment(vulnerability_id, reason or "Force secure transitive version").replace("--", "-"),
                vulnerability_id=vulnerability_id,
                target=name,
            )
        )
        return ConstraintResult(ADDED)

    def _insertion_edits(self, parsed: ParsedFile, mods: list[Modification]) -> list[TextEdit]:
        raw = parsed.raw_content
        nl = newline_style(raw)
        project = scan_elements(raw)
        unit = indent_unit(indentation_at(raw, project.children[0].start) if project.children else "")

        def entries(indent: str) -> str:
            text = ""
            for mod in mods:
                group, artifact = mod.target.split(":")[:2]
                if mod.comment:
                    text += f"{indent}<!-- {mod.comment} -->{nl}"
                text += (
                    f"{indent}<dependency>{nl}"
                    f"{indent}{unit}<groupId>{group}</groupId>{nl}"
                    f"{indent}{unit}<artifactId>{artifact}</artifactId>{nl}"
                    f"{indent}{unit}<version>{mod.new_value}</version>{nl}"
                    f"{indent}</dependency>{nl}"
                )
            return text

        management = project.child("dependencyManagement")
        managed = management.child("dependencies") if management else None
        if managed:
            existing = managed.all("dependency")
            if existing:
                indent = indentation_at(raw, existing[0].start)
            else:
                indent = indentation_at(raw, managed.start) + unit
            return [insert_before_closing(raw, managed.content_end, entries(indent))]

        if management:
            outer = indentation_at(raw, management.start) + unit
            block = f"{outer}<dependencies>{nl}{entries(outer + unit)}{outer}</dependencies>{nl}"
            return [insert_before_closing(raw, management.content_end, block)]

        block = (
            f"{nl}{unit}<dependencyManagement>{nl}"
            f"{unit * 2}<dependencies>{nl}"
            f"{entries(unit * 3)}"
            f"{unit * 2}</dependencies>{nl}"
            f"{unit}</dependencyManagement>{nl}"
        )
        return [insert_before_closing(raw, project.content_end, block)]

    def validate(self, content: str) -> list[str]:
        try:
            root = ET.fromstring(content)
        except ET.ParseError as e:
            return [f"Invalid XML: {e}"]
        tag = root.tag.split("}")[-1]
        if tag != "project":
            return [f"Root element is <{tag}>, expected <project>"]
        return []
