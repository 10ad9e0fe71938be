"""Core data models for depremedy."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Location:
    """Position of a literal in the original file text."""

    start: int  # character offset, inclusive
    end: int  # character offset, exclusive
    line: int  # 0-based line number of ``start``


@dataclass
class Variable:
    """A named version alias (Gradle variable, Maven property)."""

    name: str
    value: str
    location: Location | None = None


@dataclass
class Plugin:
    """A build-tool plugin declaration."""

    id: str
    version: str
    location: Location | None = None
    variable_name: str | None = None
    variable_file: str | None = None  # set when the variable lives in another file


@dataclass
class Dependency:
    """A single dependency in the normalized model.

    Identity is ``(name, ecosystem)``. ``location`` points at the version
    literal when the version is written inline, ``variable_name`` is set when
    the version comes from a variable or property instead.
    """

    name: str
    version: str
    ecosystem: str  # gradle, maven, npm
    type: str = "direct"  # direct, transitive
    file_path: str = ""
    is_dev: bool = False
    target_version: str | None = None
    group: str | None = None
    artifact: str | None = None
    configuration: str | None = None
    variable_name: str | None = None
    variable_file: str | None = None  # set when the variable lives in another file
    raw_version: str | None = None
    location: Location | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.ecosystem)


@dataclass
class Modification:
    """An intended edit recorded by a parser, applied later."""

    kind: str  # dependency, variable, property, plugin, pin, constraint, override
    location: Location
    old_value: str
    new_value: str
    comment: str = ""
    vulnerability_id: str = ""
    target: str = ""  # dependency name or override key the edit is about


@dataclass
class ParsedFile:
    """A build file parsed into the normalized model."""

    file_path: str
    ecosystem: str
    raw_content: str
    dependencies: list[Dependency] = field(default_factory=list)
    variables: list[Variable] = field(default_factory=list)
    plugins: list[Plugin] = field(default_factory=list)
    modifications: list[Modification] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return bool(self.modifications)

    def find_variable(self, name: str) -> Variable | None:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None


@dataclass
class AffectedPackageSpec:
    """A package a vulnerability applies to, as reported by the source."""

    name: str
    ecosystem: str
    affected_version_ranges: list[str] = field(default_factory=list)
    fixed_versions: list[str] = field(default_factory=list)


@dataclass
class Vulnerability:
    """A vulnerability record from the vulnerability-source capability."""

    id: str
    cve_ids: list[str] = field(default_factory=list)
    severity: str = "medium"  # critical, high, medium, low, info
    affected_packages: list[AffectedPackageSpec] = field(default_factory=list)
    remediation_text: str = ""

    @property
    def display_id(self) -> str:
        return self.cve_ids[0] if self.cve_ids else self.id


@dataclass(frozen=True)
class BreakingChange:
    """A potential breaking change attached to a fix suggestion."""

    type: str  # api, behavior, dependency
    description: str
    mitigation: str | None = None


@dataclass(frozen=True)
class FixSuggestion:
    """A proposed version change for one vulnerable dependency."""

    dependency_name: str
    ecosystem: str
    current_version: str
    suggested_version: str
    update_type: str  # patch, minor, major, alternative
    confidence: float
    breaking_changes: tuple[BreakingChange, ...] = ()
    testing_required: bool = False
    fixes_vulnerabilities: tuple[str, ...] = ()
    reason: str = ""
    migration_notes: str | None = None
    file_path: str = ""
    dependency_type: str = "direct"

    @property
    def vulnerability_id(self) -> str:
        return self.fixes_vulnerabilities[0] if self.fixes_vulnerabilities else ""


@dataclass(frozen=True)
class SafetyVerdict:
    """Outcome of classifying a fix suggestion."""

    safe: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> "SafetyVerdict":
        return cls(safe=True)

    @classmethod
    def problematic(cls, reason: str) -> "SafetyVerdict":
        return cls(safe=False, reason=reason)


@dataclass
class ProblematicFix:
    """A fix held back for manual review."""

    fix: FixSuggestion
    reason: str


@dataclass
class FailedFix:
    """A safe fix that could not be written to any build file."""

    fix: FixSuggestion
    reason: str


@dataclass
class ChangeRequest:
    """The change-request created by the repository provider."""

    id: str
    url: str


@dataclass
class ChangeSetResult:
    """Outcome of a remediation run."""

    outcome: str  # full_success, partial_success, no_automatic_fixes
    success_rate: float
    title: str
    report: str
    modified_files: dict[str, str] = field(default_factory=dict)
    applied: list[FixSuggestion] = field(default_factory=list)
    failed: list[FailedFix] = field(default_factory=list)
    problematic: list[ProblematicFix] = field(default_factory=list)
    manual_fix_document: str | None = None
    change_request: ChangeRequest | None = None
    errors: list[str] = field(default_factory=list)
