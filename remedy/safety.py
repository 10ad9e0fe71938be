"""Safety classification of fix suggestions before unattended application."""

from dataclasses import dataclass, field

import structlog

from .models import FixSuggestion, ProblematicFix, SafetyVerdict
from .policy import CompatibilityRules, load_rules
from .runtime import DEFAULT_JAVA_VERSION
from .versions import is_downgrade, major_of

log = structlog.get_logger("depremedy.safety")


@dataclass
class SafetyContext:
    """Repository facts the classifier needs."""

    java_version: int = DEFAULT_JAVA_VERSION
    rules: CompatibilityRules = field(default_factory=load_rules)


def classify(fix: FixSuggestion, context: SafetyContext | None = None) -> SafetyVerdict:
    """Decide whether ``fix`` can be applied without a human.

    A fix is problematic when it downgrades, when a runtime-gated framework
    bump lacks its runtime, when the library needs a manual migration, or when
    a coupled family moves its major version too far. A runtime-gated bump
    whose runtime is present is allowed even if later checks would object.
    """
    context = context or SafetyContext()
    rules = context.rules
    name = fix.dependency_name
    current, target = fix.current_version, fix.suggested_version

    if is_downgrade(current, target):
        return SafetyVerdict.problematic(f"Version downgrade from {current} to {target}")

    current_major, target_major = major_of(current), major_of(target)

    gate = rules.gate_for(name)
    if gate and target_major is not None and target_major >= gate.min_major:
        crossing = current_major is None or current_major < gate.min_major
        if crossing:
            if context.java_version >= gate.min_runtime:
                return SafetyVerdict.ok()
            return SafetyVerdict.problematic(
                f"{gate.name} {target_major}.x requires {gate.runtime} {gate.min_runtime}+ "
                f"(detected {gate.runtime} {context.java_version})"
            )

    migration = rules.manual_migration_for(name)
    if migration:
        return SafetyVerdict.problematic(f"Requires manual migration: {migration.reason}")

    family = rules.family_for(name)
    if family and target_major is not None:
        if current_major is not None and abs(target_major - current_major) > family.max_major_step:
            return SafetyVerdict.problematic(
                f"{family.name} components must move together; major version jump "
                f"{current_major} -> {target_major} is too large"
            )
        if family.major_ceiling is not None and target_major > family.major_ceiling:
            return SafetyVerdict.problematic(
                f"{family.name} {target_major}.x is beyond the supported major version "
                f"{family.major_ceiling}; coupled components would mismatch"
            )

    return SafetyVerdict.ok()


def partition(
    fixes: list[FixSuggestion], context: SafetyContext | None = None
) -> tuple[list[FixSuggestion], list[ProblematicFix]]:
    """Split ``fixes`` into safe ones and problematic ones with reasons."""
    context = context or SafetyContext()
    safe: list[FixSuggestion] = []
    problematic: list[ProblematicFix] = []
    for fix in fixes:
        verdict = classify(fix, context)
        if verdict.safe:
            safe.append(fix)
        else:
            log.warning(
                "safety.problematic",
                dependency=fix.dependency_name,
                current=fix.current_version,
                suggested=fix.suggested_version,
                reason=verdict.reason,
            )
            problematic.append(ProblematicFix(fix=fix, reason=verdict.reason or "problematic"))
    log.info("safety.partitioned", safe=len(safe), problematic=len(problematic))
    return safe, problematic
