"""Parser dispatch by ecosystem."""

from .detect import identify, is_gradle_properties
from .errors import ParseError
from .models import ParsedFile
from .parse_base import BuildFileParser
from .parse_gradle import GradleParser, GradlePropertiesParser, link_properties
from .parse_maven import MavenParser
from .parse_node import NodeParser


class ParserRegistry:
    """One parser per ecosystem, sharing override tracking for a session."""

    def __init__(self, use_yarn: bool = False):
        self._parsers: dict[str, BuildFileParser] = {
            "gradle": GradleParser(),
            "maven": MavenParser(),
            "npm": NodeParser(use_yarn=use_yarn),
        }
        self._properties = GradlePropertiesParser()

    @property
    def ecosystems(self) -> list[str]:
        return list(self._parsers)

    def get(self, ecosystem: str) -> BuildFileParser | None:
        return self._parsers.get(ecosystem)

    def for_file(self, path: str, content: str = "") -> BuildFileParser | None:
        if is_gradle_properties(path):
            return self._properties
        return self._parsers.get(identify(content, path))

    def parse(self, path: str, content: str) -> ParsedFile:
        """Parse ``content`` with the parser matching ``path``.

        Raises:
            ParseError: if the file type is unsupported or the content is malformed
        """
        parser = self.for_file(path, content)
        if parser is None:
            raise ParseError(path, "Unsupported build file type")
        return parser.parse(path, content)

    def link(self, parsed_files: list[ParsedFile]) -> int:
        """Resolve versions that one parsed file takes from another; returns how many."""
        return link_properties(parsed_files)

    def clear_constraint_trackers(self) -> None:
        for parser in self._parsers.values():
            parser.clear_constraint_tracker()


def parse_file(path: str, content: str, registry: ParserRegistry | None = None) -> ParsedFile:
    """Parse one build file; see :meth:`ParserRegistry.parse`."""
    return (registry or ParserRegistry()).parse(path, content)
