"""Vulnerability matching and fix suggestion generation."""

import re
from dataclasses import dataclass, field, replace
from functools import cmp_to_key

import structlog

from .errors import MatchError
from .models import AffectedPackageSpec, BreakingChange, Dependency, FixSuggestion, Vulnerability
from .policy import Heuristics, load_heuristics, matches_any
from .versions import coerce, compare, is_wildcard, numeric_parts, update_type, version_in_range

log = structlog.get_logger("depremedy.match")

LATEST = "latest"

ECOSYSTEM_ALIASES = {
    "gradle": "maven",
    "yarn": "npm",
    "pnpm": "npm",
}


@dataclass(frozen=True)
class AffectedDependency:
    """A dependency hit by one vulnerability."""

    dependency: Dependency
    vulnerability: Vulnerability
    spec: AffectedPackageSpec


@dataclass
class MatchResult:
    affected: list[AffectedDependency] = field(default_factory=list)
    suggestions: list[FixSuggestion] = field(default_factory=list)

    @property
    def vulnerability_ids(self) -> set[str]:
        return {hit.vulnerability.display_id for hit in self.affected}


def normalize_ecosystem(ecosystem: str) -> str:
    lowered = ecosystem.lower()
    return ECOSYSTEM_ALIASES.get(lowered, lowered)


def is_package_match(dependency: Dependency, spec: AffectedPackageSpec) -> bool:
    """Same normalized ecosystem and case-insensitive exact name."""
    if normalize_ecosystem(dependency.ecosystem) != normalize_ecosystem(spec.ecosystem):
        return False
    return dependency.name.lower() == spec.name.lower()


def is_version_affected(version: str, ranges: list[str]) -> bool:
    """Decide whether ``version`` falls in any affected range.

    Wildcards are always affected. Anything that cannot be interpreted falls
    back to substring containment, and a version that cannot be read at all
    with no ranges to compare is treated as affected.
    """
    if is_wildcard(version):
        return True
    if coerce(version) is None:
        if not ranges:
            return True
        return any(_contains(version, r) for r in ranges)

    if not ranges:
        return True
    for range_expr in ranges:
        try:
            if version_in_range(version, range_expr):
                return True
        except MatchError as e:
            log.debug("match.range_fallback", version=version, range=range_expr, error=str(e))
            if _contains(version, range_expr):
                return True
    return False


def _contains(version: str, range_expr: str) -> bool:
    return version in range_expr or range_expr in version


def _affects(dependency: Dependency, spec: AffectedPackageSpec) -> bool:
    if not spec.affected_version_ranges and spec.fixed_versions and numeric_parts(dependency.version):
        # Only fixed versions published: at or beyond all of them is not affected
        fixed = [v for v in spec.fixed_versions if numeric_parts(v)]
        if fixed and all(compare(dependency.version, v) >= 0 for v in fixed):
            return False
    return is_version_affected(dependency.version, spec.affected_version_ranges)


def extract_remediation_version(text: str, heuristics: Heuristics | None = None) -> str | None:
    """Pull a target version out of free-text remediation guidance."""
    if not text:
        return None
    heuristics = heuristics or load_heuristics()
    for pattern in heuristics.remediation_patterns:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            version = match.group(1).replace("*", "").strip().rstrip(".")
            if version:
                return version
    return None


def identify_breaking_changes(
    name: str, kind: str, heuristics: Heuristics | None = None
) -> list[BreakingChange]:
    heuristics = heuristics or load_heuristics()
    return [
        BreakingChange(type=rule.type, description=rule.description, mitigation=rule.mitigation)
        for rule in heuristics.breaking_changes
        if rule.update_type == kind and matches_any([rule.pattern], name)
    ]


def calculate_confidence(
    kind: str,
    breaking_changes: list[BreakingChange],
    is_dev: bool,
    heuristics: Heuristics | None = None,
) -> float:
    penalties = (heuristics or load_heuristics()).confidence
    confidence = penalties.start - penalties.for_update(kind)
    confidence -= len(breaking_changes) * penalties.per_breaking_change
    if is_dev:
        confidence -= penalties.dev
    return round(max(penalties.floor, min(penalties.ceiling, confidence)), 4)


def migration_notes(
    dependency: Dependency, kind: str, breaking_changes: list[BreakingChange]
) -> str | None:
    if kind not in ("minor", "major"):
        return None

    lines = [f"Updating {dependency.name} from {dependency.version} to suggested version.", ""]
    if kind == "major":
        lines += [
            "This is a major version update. Please:",
            "1. Review the package changelog for breaking changes",
            "2. Update your code to use the new API",
            "3. Run comprehensive tests",
        ]
    else:
        lines += [
            "This is a minor version update. Please:",
            "1. Review the package changelog for new features",
            "2. Test your application thoroughly",
        ]

    if breaking_changes:
        lines += ["", "Potential breaking changes:"]
        for change in breaking_changes:
            lines.append(f"- {change.description}")
            if change.mitigation:
                lines.append(f"  Mitigation: {change.mitigation}")
    return "\n".join(lines)


def _lowest_fix(current: str, fixed_versions: list[str]) -> str | None:
    candidates = [v for v in fixed_versions if numeric_parts(v)]
    if not candidates:
        return None
    ordered = sorted(candidates, key=cmp_to_key(compare))
    if not numeric_parts(current):
        return ordered[-1]
    higher = [v for v in ordered if compare(v, current) > 0]
    return higher[0] if higher else None


def generate_fix_suggestion(
    dependency: Dependency,
    vulnerability: Vulnerability,
    spec: AffectedPackageSpec,
    heuristics: Heuristics | None = None,
) -> FixSuggestion:
    """Propose a target version for ``dependency`` that fixes ``vulnerability``.

    The lowest listed fixed version above the current one wins; otherwise a
    version named in the remediation text; otherwise ``latest`` with an update
    type inferred from the dependency family.
    """
    heuristics = heuristics or load_heuristics()

    suggested = _lowest_fix(dependency.version, spec.fixed_versions)
    source = "fixed version"
    if suggested is None:
        suggested = extract_remediation_version(vulnerability.remediation_text, heuristics)
        source = "remediation guidance"

    if suggested and suggested != LATEST:
        kind = update_type(dependency.version, suggested)
    else:
        suggested = LATEST
        source = "no fixed version published"
        kind = heuristics.inferred_update_type(dependency.name)

    breaking = identify_breaking_changes(dependency.name, kind, heuristics)
    suggestion = FixSuggestion(
        dependency_name=dependency.name,
        ecosystem=dependency.ecosystem,
        current_version=dependency.version,
        suggested_version=suggested,
        update_type=kind,
        confidence=calculate_confidence(kind, breaking, dependency.is_dev, heuristics),
        breaking_changes=tuple(breaking),
        testing_required=kind == "major" or bool(breaking),
        fixes_vulnerabilities=(vulnerability.display_id,),
        reason=f"Fixes {vulnerability.display_id} ({vulnerability.severity}); target from {source}",
        migration_notes=migration_notes(dependency, kind, breaking),
        file_path=dependency.file_path,
        dependency_type=dependency.type,
    )
    log.debug(
        "match.suggestion",
        dependency=dependency.name,
        current=dependency.version,
        suggested=suggested,
        update_type=kind,
        vulnerability=vulnerability.display_id,
    )
    return suggestion


def consolidate(suggestions: list[FixSuggestion]) -> list[FixSuggestion]:
    """Merge suggestions for the same dependency into one covering all vulnerabilities.

    The highest concrete target wins; ``latest`` is kept only when no concrete
    version was suggested.
    """
    grouped: dict[tuple[str, str, str, str], list[FixSuggestion]] = {}
    for suggestion in suggestions:
        key = (
            suggestion.dependency_name,
            suggestion.ecosystem,
            suggestion.current_version,
            suggestion.file_path,
        )
        grouped.setdefault(key, []).append(suggestion)

    merged = []
    for group in grouped.values():
        concrete = [s for s in group if s.suggested_version != LATEST]
        pool = concrete or group
        best = max(pool, key=cmp_to_key(lambda a, b: compare(a.suggested_version, b.suggested_version)))
        ids: list[str] = []
        for suggestion in group:
            for vuln_id in suggestion.fixes_vulnerabilities:
                if vuln_id not in ids:
                    ids.append(vuln_id)
        if len(ids) > len(best.fixes_vulnerabilities):
            best = replace(best, fixes_vulnerabilities=tuple(ids), reason=f"Fixes {', '.join(ids)}")
        merged.append(best)
    return merged


def analyze_vulnerabilities(
    dependencies: list[Dependency],
    vulnerabilities: list[Vulnerability],
    heuristics: Heuristics | None = None,
) -> MatchResult:
    """Match every vulnerability against the tree and suggest fixes."""
    heuristics = heuristics or load_heuristics()
    result = MatchResult()
    raw: list[FixSuggestion] = []

    for vulnerability in vulnerabilities:
        for spec in vulnerability.affected_packages:
            for dependency in dependencies:
                if not is_package_match(dependency, spec) or not _affects(dependency, spec):
                    continue
                result.affected.append(AffectedDependency(dependency, vulnerability, spec))
                raw.append(generate_fix_suggestion(dependency, vulnerability, spec, heuristics))

    result.suggestions = consolidate(raw)
    targets = {
        (s.dependency_name, s.ecosystem, s.current_version, s.file_path): s.suggested_version
        for s in result.suggestions
    }
    for item in result.affected:
        dep = item.dependency
        dep.target_version = targets.get((dep.name, dep.ecosystem, dep.version, dep.file_path))
    log.info(
        "match.analyzed",
        dependencies=len(dependencies),
        vulnerabilities=len(vulnerabilities),
        affected=len(result.affected),
        suggestions=len(result.suggestions),
    )
    return result
