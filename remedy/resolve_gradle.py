"""Gradle dependency resolution through the project's own build."""

import asyncio
import os
from pathlib import Path

import structlog

from .config import Settings
from .errors import OutputLimitError, ResolutionError, ToolTimeoutError
from .models import Dependency
from .toolrun import run_command
from .tree_text import extract_json_block, parse_gradle_projects

log = structlog.get_logger("depremedy.resolve.gradle")

INIT_SCRIPT_NAME = "temp-init.gradle"

INIT_SCRIPT = """
allprojects {
    afterEvaluate { project ->
        project.tasks.register("jsonDeps") {
            doLast {
                def results = []
                def seen = [] as Set
                ['runtimeClasspath', 'compileClasspath', 'testRuntimeClasspath'].each { confName ->
                    def conf = project.configurations.findByName(confName)
                    if (conf == null || !conf.canBeResolved) {
                        return
                    }
                    def declared = conf.allDependencies.collect { "${it.group}:${it.name}".toString() } as Set
                    try {
                        conf.resolvedConfiguration.lenientConfiguration.allModuleDependencies.each { dep ->
                            def key = "${dep.moduleGroup}:${dep.moduleName}".toString()
                            if (seen.add(key)) {
                                results << [
                                    group: dep.moduleGroup ?: '',
                                    name: dep.moduleName ?: '',
                                    version: dep.moduleVersion ?: 'unspecified',
                                    configuration: confName,
                                    direct: declared.contains(key)
                                ]
                            }
                        }
                    } catch (Exception e) {
                        project.logger.warn("jsonDeps: could not resolve ${confName}: ${e.message}")
                    }
                }
                println "JSON_START"
                println groovy.json.JsonOutput.toJson(results)
                println "JSON_END"
            }
        }
    }
}
"""

BUILD_FILES = ("build.gradle", "build.gradle.kts", "settings.gradle", "settings.gradle.kts")


def is_gradle_project(repo_path: Path) -> bool:
    return any((repo_path / name).exists() for name in BUILD_FILES) or (repo_path / "gradlew").exists()


def gradle_command(repo_path: Path) -> str:
    """``./gradlew`` when the wrapper is present (made executable), else ``gradle``."""
    wrapper = repo_path / "gradlew"
    if wrapper.exists():
        try:
            wrapper.chmod(0o755)
        except OSError as e:
            log.warning("resolve.gradle_chmod_failed", path=str(wrapper), error=str(e))
        return "./gradlew"
    return "gradle"


def project_build_file(repo_path: Path, project: str) -> str:
    """Relative build file path for a Gradle project path such as ``:app:core``."""
    directory = project.strip(":").replace(":", "/")
    for name in ("build.gradle", "build.gradle.kts"):
        candidate = os.path.join(directory, name) if directory else name
        if (repo_path / candidate).exists():
            return candidate
    return os.path.join(directory, "build.gradle") if directory else "build.gradle"


def to_dependencies(items: list, file_path: str) -> list[Dependency]:
    dependencies = []
    for item in items:
        if not isinstance(item, dict) or not item.get("group") or not item.get("name"):
            continue
        configuration = item.get("configuration") or ""
        dependencies.append(
            Dependency(
                name=f"{item['group']}:{item['name']}",
                version=str(item.get("version") or "unspecified"),
                ecosystem="gradle",
                type="direct" if item.get("direct") else "transitive",
                file_path=file_path,
                is_dev=configuration.startswith("test"),
                group=item["group"],
                artifact=item["name"],
                configuration=configuration,
            )
        )
    return dependencies


async def discover_projects(repo_path: Path, tool: str, settings: Settings, runner=None) -> list[str]:
    """List sub-projects; an empty list means only the root project.

    Raises:
        ToolTimeoutError: if discovery exceeds the configured timeout
        OutputLimitError: if discovery output exceeds the ceiling
    """
    runner = runner or run_command
    try:
        result = await runner(
            [tool, "projects", "--console=plain"],
            repo_path,
            settings.gradle_discovery_timeout,
            settings.gradle_max_output,
            "gradle",
        )
    except (ToolTimeoutError, OutputLimitError):
        raise
    except ResolutionError as e:
        log.warning("resolve.gradle_discovery_failed", error=str(e))
        return []
    if not result.ok:
        log.warning("resolve.gradle_discovery_failed", returncode=result.returncode, stderr=result.stderr[-500:])
        return []
    return parse_gradle_projects(result.stdout)


async def resolve_project(
    repo_path: Path, tool: str, project: str, settings: Settings, runner=None
) -> list[Dependency]:
    """Resolve one project with the ``jsonDeps`` init-script task; failures yield ``[]``."""
    runner = runner or run_command
    task = f"{project}:jsonDeps" if project else "jsonDeps"
    try:
        result = await runner(
            [tool, task, "--init-script", INIT_SCRIPT_NAME, "--console=plain", "-q"],
            repo_path,
            settings.gradle_timeout,
            settings.gradle_max_output,
            "gradle",
        )
    except ResolutionError as e:
        log.error("resolve.gradle_project_failed", project=project or "root", error=str(e))
        return []

    items = extract_json_block(result.stdout)
    if items is None:
        log.warning(
            "resolve.gradle_no_json",
            project=project or "root",
            returncode=result.returncode,
            stderr=result.stderr[-500:],
        )
        return []

    dependencies = to_dependencies(items, project_build_file(repo_path, project))
    log.info("resolve.gradle_project_resolved", project=project or "root", dependencies=len(dependencies))
    return dependencies


async def resolve_gradle(repo_path: Path, settings: Settings, runner=None) -> list[Dependency]:
    """Resolve every Gradle project in ``repo_path``.

    Sub-projects run concurrently under a semaphore; one failing project does
    not affect the others. The temporary init script is always removed.

    Raises:
        ToolTimeoutError: if project discovery times out
        OutputLimitError: if project discovery output is too large
    """
    repo_path = Path(repo_path)
    if not is_gradle_project(repo_path):
        return []

    tool = gradle_command(repo_path)
    projects = await discover_projects(repo_path, tool, settings, runner)
    targets = projects or [""]
    log.info("resolve.gradle_projects", projects=targets)

    init_script = repo_path / INIT_SCRIPT_NAME
    init_script.write_text(INIT_SCRIPT)
    semaphore = asyncio.Semaphore(settings.subproject_concurrency)

    async def bounded(project: str) -> list[Dependency]:
        async with semaphore:
            return await resolve_project(repo_path, tool, project, settings, runner)

    try:
        results = await asyncio.gather(*(bounded(project) for project in targets))
    finally:
        try:
            init_script.unlink()
        except FileNotFoundError:
            pass

    dependencies = [dep for batch in results for dep in batch]
    if not dependencies:
        log.warning("resolve.gradle_empty", projects=len(targets))
    return dependencies
