"""CLI application for depremedy."""

import asyncio
import difflib
import json
from dataclasses import asdict
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from remedy.apply import files_to_write, write_files
from remedy.config import Settings, load_settings
from remedy.errors import RemedyError
from remedy.logging import setup_logging
from remedy.models import ChangeSetResult, Vulnerability
from remedy.pipeline import Analysis, analyze, plan_changes
from remedy.providers import OsvVulnerabilitySource, VulnerabilitySource, load_vulnerabilities
from remedy.resolve import statistics

console = Console()


def format_diff_output(original: dict[str, str], modified: dict[str, str]) -> str:
    """Unified diff of every modified or new file."""
    chunks = []
    for path in sorted(modified):
        before = original.get(path, "")
        diff = difflib.unified_diff(
            before.splitlines(keepends=True),
            modified[path].splitlines(keepends=True),
            fromfile=f"a/{path}" if path in original else "/dev/null",
            tofile=f"b/{path}",
        )
        chunks.append("".join(diff))
    return "\n".join(chunk for chunk in chunks if chunk)


def format_json_output(analysis: Analysis) -> str:
    """Format JSON output."""
    payload = {
        "runtime": {"java_version": analysis.runtime.java_version, "source": analysis.runtime.source},
        "statistics": statistics(analysis.tree.dependencies),
        "sources": analysis.tree.sources,
        "errors": analysis.tree.errors,
        "dependencies": [
            {
                "name": dep.name,
                "version": dep.version,
                "ecosystem": dep.ecosystem,
                "type": dep.type,
                "file_path": dep.file_path,
                "is_dev": dep.is_dev,
            }
            for dep in analysis.tree.dependencies
        ],
        "suggestions": [asdict(fix) for fix in analysis.matches.suggestions],
    }
    return json.dumps(payload, indent=2)


def render_tables(analysis: Analysis) -> None:
    stats = statistics(analysis.tree.dependencies)
    console.print(
        f"[bold]{stats['total']}[/bold] dependencies "
        f"({stats['direct']} direct, {stats['transitive']} transitive); "
        f"Java {analysis.runtime.java_version} ({analysis.runtime.source})"
    )

    deps = Table(title="Dependencies")
    for column in ("Name", "Version", "Ecosystem", "Type", "File"):
        deps.add_column(column)
    for dep in sorted(analysis.tree.dependencies, key=lambda d: (d.ecosystem, d.name)):
        deps.add_row(dep.name, dep.version, dep.ecosystem, dep.type, dep.file_path)
    console.print(deps)

    if analysis.matches.suggestions:
        fixes = Table(title="Fix suggestions")
        for column in ("Dependency", "Current", "Suggested", "Update", "Confidence", "Fixes"):
            fixes.add_column(column)
        for fix in analysis.matches.suggestions:
            fixes.add_row(
                fix.dependency_name,
                fix.current_version,
                fix.suggested_version,
                fix.update_type,
                f"{fix.confidence:.2f}",
                ", ".join(fix.fixes_vulnerabilities),
            )
        console.print(fixes)

    for error in analysis.tree.errors:
        console.print(f"Warning: {error}", style="yellow")


def _load_vulns(vulns: Path | None, ids: list[str], settings: Settings) -> list[Vulnerability]:
    """Vulnerability records from a JSON file and/or OSV lookups by id."""
    records: list[Vulnerability] = []
    if vulns is not None:
        if not vulns.exists():
            console.print(f"Error: File {vulns} not found", style="red")
            raise typer.Exit(1)
        records.extend(load_vulnerabilities(vulns))
    if ids:
        source: VulnerabilitySource = OsvVulnerabilitySource.from_settings(settings)
        records.extend(asyncio.run(source.fetch(list(ids))))
    return records


def _check_repo(repo: Path) -> None:
    if not repo.is_dir():
        console.print(f"Error: Directory {repo} not found", style="red")
        raise typer.Exit(1)


app = typer.Typer(
    name="depremedy",
    help="depremedy - Find vulnerable dependencies and fix them in place",
    add_completion=False,
)


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default from DEPREMEDY_LOG_LEVEL)"),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json"),
) -> None:
    setup_logging(log_level, log_format)


@app.command("analyze")
def analyze_command(
    repo: Path = typer.Argument(help="Path to the repository"),
    format_type: str = typer.Option("table", "--format", help="Output format: table or json"),
    static: bool = typer.Option(False, "--static", help="Parse build files only; do not run Gradle or Maven"),
    vulns: Path | None = typer.Option(None, "--vulns", help="JSON file with vulnerability records"),
    ids: list[str] | None = typer.Option(None, "--id", help="Vulnerability id to look up in OSV (repeatable)"),
) -> None:
    """Print the dependency tree and fix suggestions."""
    _check_repo(repo)
    try:
        settings = load_settings()
        records = _load_vulns(vulns, ids or [], settings)
        analysis = asyncio.run(analyze(repo, records, settings, static=static))
    except typer.Exit:
        raise
    except (RemedyError, ValueError, KeyError) as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)

    if format_type == "json":
        print(format_json_output(analysis))
    else:
        render_tables(analysis)


@app.command("fix")
def fix_command(
    repo: Path = typer.Argument(help="Path to the repository"),
    vulns: Path | None = typer.Option(None, "--vulns", help="JSON file with vulnerability records"),
    ids: list[str] | None = typer.Option(None, "--id", help="Vulnerability id to look up in OSV (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show changes without applying"),
    static: bool = typer.Option(False, "--static", help="Parse build files only; do not run Gradle or Maven"),
    strict: bool = typer.Option(False, "--strict", help="Fail when no fix can be applied"),
) -> None:
    """Apply safe fixes to the repository's build files."""
    _check_repo(repo)
    if vulns is None and not ids:
        console.print("Error: pass --vulns and/or --id", style="red")
        raise typer.Exit(1)
    try:
        settings = load_settings()
        records = _load_vulns(vulns, ids or [], settings)
        analysis = asyncio.run(analyze(repo, records, settings, static=static))
        if not analysis.matches.suggestions:
            console.print("No vulnerable dependencies found")
            raise typer.Exit(0)
        result: ChangeSetResult = plan_changes(analysis, settings, strict=strict)
    except typer.Exit:
        raise
    except (RemedyError, ValueError, KeyError) as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)

    contents = files_to_write(result)
    if dry_run:
        print(format_diff_output(analysis.files, contents))
    else:
        for path in write_files(repo, contents):
            console.print(f"Updated {path}")

    console.print(f"[bold]{result.title}[/bold]")
    for item in result.problematic:
        console.print(f"Manual review: {item.fix.dependency_name} ({item.reason})", style="yellow")
    for item in result.failed:
        console.print(f"Not applied: {item.fix.dependency_name} ({item.reason})", style="yellow")

    if result.outcome == "no_automatic_fixes":
        raise typer.Exit(2)


if __name__ == "__main__":
    app()
