"""Maven dependency resolution via ``dependency:tree``."""

from pathlib import Path

import structlog

from .config import Settings
from .errors import ResolutionError
from .models import Dependency
from .toolrun import run_command
from .tree_text import parse_maven_coordinate, parse_tree

log = structlog.get_logger("depremedy.resolve.maven")


def maven_command(repo_path: Path) -> str:
    wrapper = repo_path / "mvnw"
    if wrapper.exists():
        try:
            wrapper.chmod(0o755)
        except OSError as e:
            log.warning("resolve.maven_chmod_failed", path=str(wrapper), error=str(e))
        return "./mvnw"
    return "mvn"


def parse_dependency_tree(output: str) -> list[Dependency]:
    """Convert ``mvn dependency:tree`` output to dependencies, skipping test scope."""
    dependencies = []
    for node in parse_tree(output, parse_maven_coordinate):
        if node.scope == "test":
            continue
        dependencies.append(
            Dependency(
                name=node.name,
                version=node.version,
                ecosystem="maven",
                type="transitive" if node.transitive else "direct",
                file_path="pom.xml",
                is_dev=False,
                group=node.group,
                artifact=node.artifact,
                configuration=node.scope,
            )
        )
    return dependencies


async def resolve_maven(repo_path: Path, settings: Settings, runner=None) -> list[Dependency]:
    """Resolve the Maven project at ``repo_path``.

    Returns ``[]`` without running anything when there is no root ``pom.xml``.

    Raises:
        ResolutionError: if the tool fails or a root ``pom.xml`` yields no
            dependencies (the project does not build)
    """
    repo_path = Path(repo_path)
    if not (repo_path / "pom.xml").exists():
        log.debug("resolve.maven_not_a_project", path=str(repo_path))
        return []

    runner = runner or run_command
    result = await runner(
        [maven_command(repo_path), "dependency:tree", "-B"],
        repo_path,
        settings.maven_timeout,
        settings.maven_max_output,
        "maven",
    )
    dependencies = parse_dependency_tree(result.stdout)
    if not dependencies:
        detail = (result.stderr or result.stdout)[-500:].strip()
        raise ResolutionError(
            "maven",
            f"dependency:tree returned no dependencies (exit {result.returncode}); {detail or 'no output'}",
        )

    log.info(
        "resolve.maven_resolved",
        dependencies=len(dependencies),
        transitive=sum(1 for dep in dependencies if dep.type == "transitive"),
    )
    return dependencies
