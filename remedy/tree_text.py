"""Tokenizer for text dependency trees printed by build tools.

A tree line looks like ``<nesting><branch> <coordinate>``, e.g.::

    +- org.springframework:spring-core:jar:5.3.0:compile
    |  \\- org.springframework:spring-jcl:jar:5.3.0:compile

The branch marker (``+-``, ``\\-``, ``+---``, ``\\---``) introduces a node;
everything before it is the nesting prefix of ancestor continuations
(``|`` and spaces). A non-empty nesting prefix means the node is reached
through another dependency, i.e. it is transitive.
"""

import json
import re
from dataclasses import dataclass

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_LOG_PREFIX_RE = re.compile(r"^\[(?:INFO|DEBUG)\] ?")
_NOISE_RE = re.compile(r"^\[(?:WARNING|WARN|ERROR)\]")
_TREE_LINE_RE = re.compile(r"^(?P<prefix>[ \t|│]*)(?P<branch>[+\\`├└][-─]+)\s*(?P<body>\S.*)$")
_PROJECT_RE = re.compile(r"[+\\]--- Project '(:[^']+)'")

JSON_START = "JSON_START"
JSON_END = "JSON_END"


@dataclass(frozen=True)
class TreeNode:
    """One dependency line from a text tree."""

    group: str
    artifact: str
    version: str
    scope: str | None
    depth: int  # length of the nesting prefix

    @property
    def name(self) -> str:
        return f"{self.group}:{self.artifact}"

    @property
    def transitive(self) -> bool:
        return self.depth > 0


def clean_line(line: str) -> str | None:
    """Strip ANSI codes and ``[INFO]`` prefixes; ``None`` for warning/error lines."""
    line = _ANSI_RE.sub("", line).rstrip("\r")
    if _NOISE_RE.match(line):
        return None
    return _LOG_PREFIX_RE.sub("", line, count=1)


def tokenize(output: str) -> list[tuple[int, str]]:
    """Split tree output into ``(nesting depth, body)`` pairs."""
    tokens = []
    for raw in output.splitlines():
        line = clean_line(raw)
        if not line:
            continue
        match = _TREE_LINE_RE.match(line)
        if match:
            tokens.append((len(match.group("prefix")), match.group("body").strip()))
    return tokens


def parse_maven_coordinate(body: str) -> tuple[str, str, str, str | None] | None:
    """``group:artifact:packaging[:classifier]:version[:scope]`` -> parts."""
    token = body.split()[0]
    parts = token.split(":")
    if len(parts) == 4:
        group, artifact, _, version = parts
        return group, artifact, version, None
    if len(parts) == 5:
        group, artifact, _, version, scope = parts
        return group, artifact, version, scope
    if len(parts) == 6:
        group, artifact, _, _, version, scope = parts
        return group, artifact, version, scope
    return None


def parse_gradle_coordinate(body: str) -> tuple[str, str, str, str | None] | None:
    """``group:artifact[:version][ -> resolved][ (*)]`` -> parts."""
    if body.startswith("project "):
        return None
    parts = body.split()[0].split(":")
    if len(parts) < 2:
        return None
    resolved = re.search(r"->\s*([^\s()]+)", body)
    if resolved:
        version = resolved.group(1)
    elif len(parts) >= 3:
        version = parts[2]
    else:
        return None
    return parts[0], parts[1], version, None


def parse_tree(output: str, coordinate=parse_maven_coordinate) -> list[TreeNode]:
    """Parse a text tree; the first occurrence of a coordinate wins."""
    nodes: list[TreeNode] = []
    seen: set[str] = set()
    for depth, body in tokenize(output):
        parts = coordinate(body)
        if parts is None:
            continue
        group, artifact, version, scope = parts
        node = TreeNode(group, artifact, version, scope, depth)
        if node.name in seen:
            continue
        seen.add(node.name)
        nodes.append(node)
    return nodes


def parse_gradle_projects(output: str) -> list[str]:
    """Sub-project paths from ``gradle projects`` output, e.g. ``[':app', ':core']``."""
    projects = []
    for raw in output.splitlines():
        match = _PROJECT_RE.search(_ANSI_RE.sub("", raw))
        if match and match.group(1) not in projects:
            projects.append(match.group(1))
    return projects


def extract_json_block(output: str) -> list | None:
    """Decode the JSON printed between ``JSON_START`` and ``JSON_END`` markers."""
    start = output.find(JSON_START)
    if start == -1:
        return None
    end = output.find(JSON_END, start)
    if end == -1:
        return None
    payload = output[start + len(JSON_START) : end].strip()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, list) else None
