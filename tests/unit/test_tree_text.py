"""Tests for text dependency tree parsing."""

from remedy.tree_text import (
    clean_line,
    extract_json_block,
    parse_gradle_coordinate,
    parse_gradle_projects,
    parse_maven_coordinate,
    parse_tree,
    tokenize,
)

MAVEN_TREE = """[INFO] Scanning for projects...
[INFO] --- maven-dependency-plugin:3.6.0:tree (default-cli) @ demo ---
[INFO] com.example:demo:jar:1.0.0
[INFO] +- org.springframework:spring-core:jar:5.3.20:compile
[INFO] |  \\- org.springframework:spring-jcl:jar:5.3.20:compile
[INFO] +- com.google.code.gson:gson:jar:2.8.0:compile
[INFO] \\- junit:junit:jar:4.12:test
[INFO]    \\- org.hamcrest:hamcrest-core:jar:1.3:test
[WARNING] +- not:a:jar:1.0:compile
[INFO] BUILD SUCCESS
"""

GRADLE_TREE = """runtimeClasspath - Runtime classpath of source set 'main'.
+--- org.springframework.boot:spring-boot-starter-web -> 2.7.5
|    +--- org.springframework.boot:spring-boot-starter:2.7.5
|    |    \\--- org.yaml:snakeyaml:1.30
|    \\--- org.springframework:spring-web:5.3.23 (*)
+--- project :core
\\--- commons-io:commons-io:2.6 -> 2.11.0
"""


class TestTokenizer:
    """Test line cleaning and tokenizing."""

    def test_clean_line(self):
        assert clean_line("[INFO] +- a:b:jar:1:compile") == "+- a:b:jar:1:compile"
        assert clean_line("[WARNING] something") is None
        assert clean_line("\x1b[1m+- a:b:jar:1\x1b[0m") == "+- a:b:jar:1"

    def test_nesting_prefix_is_before_branch_marker(self):
        """A root-level entry has an empty nesting prefix."""
        tokens = tokenize(MAVEN_TREE)
        assert tokens[0] == (0, "org.springframework:spring-core:jar:5.3.20:compile")
        assert tokens[1][0] > 0
        assert tokens[2][0] == 0


class TestCoordinates:
    """Test coordinate parsing."""

    def test_maven_coordinates(self):
        assert parse_maven_coordinate("g:a:jar:1.0") == ("g", "a", "1.0", None)
        assert parse_maven_coordinate("g:a:jar:1.0:compile") == ("g", "a", "1.0", "compile")
        assert parse_maven_coordinate("g:a:jar:jdk8:1.0:runtime") == ("g", "a", "1.0", "runtime")
        assert parse_maven_coordinate("g:a") is None

    def test_gradle_coordinates(self):
        assert parse_gradle_coordinate("g:a:1.0") == ("g", "a", "1.0", None)
        assert parse_gradle_coordinate("g:a:1.0 -> 1.2 (*)") == ("g", "a", "1.2", None)
        assert parse_gradle_coordinate("g:a -> 2.0") == ("g", "a", "2.0", None)
        assert parse_gradle_coordinate("project :core") is None
        assert parse_gradle_coordinate("g:a") is None


class TestParseTree:
    """Test tree parsing."""

    def test_maven_direct_and_transitive(self):
        nodes = {node.name: node for node in parse_tree(MAVEN_TREE)}

        assert not nodes["org.springframework:spring-core"].transitive
        assert nodes["org.springframework:spring-jcl"].transitive
        assert not nodes["com.google.code.gson:gson"].transitive
        assert nodes["org.hamcrest:hamcrest-core"].transitive
        assert nodes["junit:junit"].scope == "test"
        assert "not:a" not in nodes

    def test_gradle_tree(self):
        nodes = {node.name: node for node in parse_tree(GRADLE_TREE, parse_gradle_coordinate)}

        assert nodes["org.springframework.boot:spring-boot-starter-web"].version == "2.7.5"
        assert nodes["org.yaml:snakeyaml"].transitive
        assert nodes["commons-io:commons-io"].version == "2.11.0"
        assert not nodes["commons-io:commons-io"].transitive

    def test_first_occurrence_wins(self):
        output = "+- a:b:jar:1.0:compile\n|  \\- c:d:jar:1.0:compile\n\\- c:d:jar:2.0:compile\n"
        nodes = parse_tree(output)
        assert [(n.name, n.version, n.transitive) for n in nodes] == [
            ("a:b", "1.0", False),
            ("c:d", "1.0", True),
        ]


class TestGradleOutput:
    """Test project discovery and JSON extraction."""

    def test_projects(self):
        output = (
            "Root project 'demo'\n"
            "+--- Project ':app'\n"
            "|    \\--- Project ':app:core'\n"
            "\\--- Project ':lib'\n"
        )
        assert parse_gradle_projects(output) == [":app", ":app:core", ":lib"]

    def test_json_block(self):
        output = 'noise\nJSON_START\n[{"group": "g", "name": "a"}]\nJSON_END\nBUILD SUCCESSFUL\n'
        assert extract_json_block(output) == [{"group": "g", "name": "a"}]

    def test_json_block_missing_or_broken(self):
        assert extract_json_block("no markers") is None
        assert extract_json_block("JSON_START\n{broken\nJSON_END") is None
