"""Markdown rendering of remediation results."""

from .models import FailedFix, FixSuggestion, ProblematicFix

MANUAL_FIX_FILE = "SECURITY_FIXES_MANUAL.md"

REBUILD_COMMANDS = {
    "gradle": ["./gradlew clean build --refresh-dependencies", "./gradlew dependencies"],
    "maven": ["mvn clean install -U", "mvn dependency:tree"],
    "npm": ["rm -rf node_modules package-lock.json", "npm install", "npm audit"],
}


def title_for(base: str, outcome: str, applied_count: int, total: int) -> str:
    if outcome == "no_automatic_fixes":
        return f"{base} (Manual fixes required)"
    return f"{base} ({applied_count}/{total} vulnerabilities addressed)"


def _fix_line(fix: FixSuggestion) -> str:
    vulns = ", ".join(fix.fixes_vulnerabilities) or "n/a"
    where = f" in `{fix.file_path}`" if fix.file_path else ""
    kind = "transitive" if fix.dependency_type == "transitive" else "direct"
    return (
        f"- **{fix.dependency_name}** `{fix.current_version}` -> `{fix.suggested_version}` "
        f"({fix.update_type}, {kind}{where}) fixes {vulns}"
    )


def render_report(
    *,
    outcome: str,
    success_rate: float,
    applied: list[FixSuggestion],
    failed: list[FailedFix],
    problematic: list[ProblematicFix],
    summaries: list[str],
    ecosystems: list[str],
    total_vulnerabilities: int,
    addressed_vulnerabilities: int,
) -> str:
    """Render the change-request body (or the manual-fix document)."""
    lines = ["## Security Vulnerability Fixes", ""]
    lines.append(
        f"**Vulnerabilities addressed:** {addressed_vulnerabilities}/{total_vulnerabilities} "
        f"({success_rate:.0%})"
    )
    lines.append(f"**Outcome:** {outcome.replace('_', ' ')}")
    lines.append("")

    if applied:
        lines += ["### Applied fixes", ""]
        lines += [_fix_line(fix) for fix in applied]
        lines.append("")
        notes = [fix for fix in applied if fix.migration_notes]
        if notes:
            lines += ["### Migration notes", ""]
            for fix in notes:
                lines.append(f"#### {fix.dependency_name}")
                lines.append("")
                lines.append(fix.migration_notes)
                lines.append("")

    if failed:
        lines += ["### Fixes that could not be applied", ""]
        for item in failed:
            lines.append(f"{_fix_line(item.fix)}")
            lines.append(f"  - Reason: {item.reason}")
        lines.append("")

    if problematic:
        lines += ["### Fixes requiring manual review", ""]
        for item in problematic:
            lines.append(f"{_fix_line(item.fix)}")
            lines.append(f"  - Reason: {item.reason}")
        lines.append("")
        lines.append(
            "These updates were not applied automatically. Review each one and apply it "
            "by hand once the prerequisites are met."
        )
        lines.append("")

    if summaries:
        lines += ["### Changes", ""]
        for summary in summaries:
            lines.append(summary)
            lines.append("")

    commands = [cmd for eco in ecosystems for cmd in REBUILD_COMMANDS.get(eco, [])]
    if commands:
        lines += ["### Rebuild and verify", "", "```bash"]
        lines += commands
        lines += ["```", ""]

    if any(fix.testing_required for fix in applied):
        lines.append("> Some updates are major or carry breaking-change risk; run the full test suite.")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
