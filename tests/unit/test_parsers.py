"""Tests for parser dispatch."""

import pytest

from remedy.errors import ParseError
from remedy.parse_gradle import GradleParser
from remedy.parse_node import NodeParser
from remedy.parsers import ParserRegistry, parse_file


class TestParserRegistry:
    """Test ecosystem dispatch."""

    def test_dispatch_by_filename(self):
        registry = ParserRegistry()

        assert registry.ecosystems == ["gradle", "maven", "npm"]
        assert isinstance(registry.for_file("app/build.gradle.kts"), GradleParser)
        assert isinstance(registry.for_file("package.json"), NodeParser)
        assert registry.for_file("Dockerfile") is None
        assert registry.for_file("yarn.lock") is None

    def test_parse_file(self, sample_pom):
        parsed = parse_file("pom.xml", sample_pom)
        assert parsed.ecosystem == "maven"
        assert parsed.file_path == "pom.xml"

    def test_unsupported_file(self):
        with pytest.raises(ParseError, match="Unsupported build file type"):
            parse_file("notes.txt", "hello")

    def test_trackers_are_shared_per_session(self, sample_package_json):
        """One registry pins a transitive dependency once across its files."""
        registry = ParserRegistry()
        first = registry.parse("package.json", sample_package_json)
        second = registry.parse("web/package.json", sample_package_json)
        parser = registry.get("npm")

        assert parser.add_constraint_for_transitive(first, "minimist", "1.2.6", "", "").status == "added"
        assert parser.add_constraint_for_transitive(second, "minimist", "1.2.6", "", "").status == "already_present"

        registry.clear_constraint_trackers()
        assert parser.add_constraint_for_transitive(second, "minimist", "1.2.6", "", "").status == "added"
