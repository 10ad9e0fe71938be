"""Declarative policy tables: compatibility rules and fix heuristics.

Both tables ship as JSON under ``remedy/data`` and can be replaced through
``Settings.rules_file`` / ``Settings.heuristics_file``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"
RULES_FILE = DATA_DIR / "compatibility_rules.json"
HEURISTICS_FILE = DATA_DIR / "heuristics.json"

UpdateType = Literal["patch", "minor", "major", "alternative"]


def matches_any(patterns: list[str], name: str) -> bool:
    """Case-insensitive substring match of ``name`` against any pattern."""
    lowered = name.lower()
    return any(pattern == "*" or pattern.lower() in lowered for pattern in patterns)


class CoupledFamily(BaseModel):
    """Components that must move together (RPC, serialization, transport stacks)."""

    name: str
    patterns: list[str]
    max_major_step: int = Field(1, ge=0)
    major_ceiling: int | None = None


class ManualMigration(BaseModel):
    pattern: str
    reason: str


class RuntimeGate(BaseModel):
    """A framework major version that needs a minimum runtime version."""

    name: str
    patterns: list[str]
    min_major: int
    runtime: str = "Java"
    min_runtime: int


class CompatibilityRules(BaseModel):
    coupled_families: list[CoupledFamily] = []
    manual_migration: list[ManualMigration] = []
    runtime_gated: list[RuntimeGate] = []

    def family_for(self, name: str) -> CoupledFamily | None:
        return next((f for f in self.coupled_families if matches_any(f.patterns, name)), None)

    def manual_migration_for(self, name: str) -> ManualMigration | None:
        return next((m for m in self.manual_migration if m.pattern.lower() in name.lower()), None)

    def gate_for(self, name: str) -> RuntimeGate | None:
        return next((g for g in self.runtime_gated if matches_any(g.patterns, name)), None)


class ConfidencePenalties(BaseModel):
    start: float = 1.0
    major: float = 0.3
    minor: float = 0.1
    patch: float = 0.0
    alternative: float = 0.1
    per_breaking_change: float = 0.1
    dev: float = 0.05
    floor: float = 0.1
    ceiling: float = 1.0

    def for_update(self, update_type: str) -> float:
        return getattr(self, update_type, self.minor)


class BreakingChangeRule(BaseModel):
    pattern: str = "*"
    update_type: UpdateType
    type: Literal["api", "behavior", "dependency"]
    description: str
    mitigation: str | None = None


class UpdateTypeRule(BaseModel):
    patterns: list[str]
    update_type: UpdateType


class Heuristics(BaseModel):
    confidence: ConfidencePenalties = ConfidencePenalties()
    breaking_changes: list[BreakingChangeRule] = []
    update_type_rules: list[UpdateTypeRule] = []
    default_update_type: UpdateType = "minor"
    remediation_patterns: list[str] = []

    def inferred_update_type(self, name: str) -> str:
        for rule in self.update_type_rules:
            if matches_any(rule.patterns, name):
                return rule.update_type
        return self.default_update_type


@lru_cache(maxsize=8)
def _load_rules(path: Path) -> CompatibilityRules:
    return CompatibilityRules.model_validate_json(path.read_text())


@lru_cache(maxsize=8)
def _load_heuristics(path: Path) -> Heuristics:
    return Heuristics.model_validate_json(path.read_text())


def load_rules(path: Path | None = None) -> CompatibilityRules:
    """Load and validate the compatibility rules table.

    Raises:
        pydantic.ValidationError: if the table does not match the schema
    """
    return _load_rules(Path(path) if path else RULES_FILE)


def load_heuristics(path: Path | None = None) -> Heuristics:
    """Load and validate the fix heuristics table.

    Raises:
        pydantic.ValidationError: if the table does not match the schema
    """
    return _load_heuristics(Path(path) if path else HEURISTICS_FILE)
