"""Version normalization, comparison and range membership.

Versions from Gradle, Maven and npm do not follow one grammar, so everything
is funnelled through :func:`coerce`, which keeps the first one to three numeric
components (``2.0.18.RELEASE`` -> ``2.0.18``, ``v1.2`` -> ``1.2.0``) and hands
the result to :mod:`packaging` for ordering and specifier checks.
"""

import re

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import Version

from .errors import MatchError

WILDCARDS = {"*", "latest", "x", ""}

_COERCE_RE = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")
_RANGE_PREFIX_RE = re.compile(r"^(?:\^|~>|~=|~|>=|<=|==|=|>|<|v(?=\d))+")
_COMPARATOR_RE = re.compile(r"^(>=|<=|==|!=|=|>|<|\^|~>|~=|~)?\s*v?(.+)$")
_INTERVAL_RE = re.compile(r"[\[\(][^\[\]\(\)]*[\]\)]")


def is_wildcard(version: str | None) -> bool:
    return version is None or version.strip().lower() in WILDCARDS


def coerce(version: str | None) -> Version | None:
    """Coerce a loose version string into a ``Version`` or ``None``."""
    if not version:
        return None
    match = _COERCE_RE.search(version)
    if not match:
        return None
    major, minor, patch = match.groups()
    return Version(f"{int(major)}.{int(minor or 0)}.{int(patch or 0)}")


def strip_range_prefix(version: str) -> str:
    """Drop npm/Gradle range operators: ``^4.17.0`` -> ``4.17.0``."""
    return _RANGE_PREFIX_RE.sub("", version.strip())


def range_prefix(version: str) -> str:
    match = _RANGE_PREFIX_RE.match(version.strip())
    return match.group(0) if match else ""


def normalize(version: str | None) -> str:
    """Normalize a version string; idempotent.

    Range operators and anything after the first space are dropped, wildcards
    collapse to ``*`` and coercible versions become ``MAJOR.MINOR.PATCH``.
    """
    if version is None:
        return "*"
    stripped = version
    while True:
        token = strip_range_prefix(stripped)
        token = token.split()[0] if token.split() else ""
        if token == stripped:
            break
        stripped = token
    if stripped.lower() in WILDCARDS:
        return "*"
    parsed = coerce(stripped)
    return str(parsed) if parsed else stripped


def is_more_specific(candidate: str, existing: str) -> bool:
    """Return True when ``candidate`` should replace ``existing`` on merge."""
    if is_wildcard(existing) and not is_wildcard(candidate):
        return True
    if is_wildcard(candidate):
        return False

    new, old = coerce(candidate), coerce(existing)
    if new and old:
        if new != old:
            return new > old
        # Same numeric core: prefer the longer, more qualified spelling
        return (len(candidate), candidate) > (len(existing), existing)
    if new and not old:
        return True
    if old and not new:
        return False
    return (len(candidate), candidate) > (len(existing), existing)


def numeric_parts(version: str) -> list[int]:
    """Leading numeric components, ignoring release qualifiers.

    ``2.0.18.RELEASE`` -> ``[2, 0, 18]``, ``31.1-jre`` -> ``[31, 1]``.
    """
    parts: list[int] = []
    for token in re.split(r"[.\-+_]", strip_range_prefix(version)):
        if not token.isdigit():
            break
        parts.append(int(token))
    return parts


def compare(left: str, right: str) -> int:
    """Component-wise numeric comparison, missing components count as 0."""
    a, b = numeric_parts(left), numeric_parts(right)
    for i in range(max(len(a), len(b))):
        x = a[i] if i < len(a) else 0
        y = b[i] if i < len(b) else 0
        if x != y:
            return -1 if x < y else 1
    return 0


def is_downgrade(current: str, recommended: str) -> bool:
    if not numeric_parts(current) or not numeric_parts(recommended):
        return False
    return compare(recommended, current) < 0


def major_of(version: str) -> int | None:
    parts = numeric_parts(version)
    return parts[0] if parts else None


def update_type(current: str, target: str) -> str:
    """Classify a version jump as ``major``, ``minor`` or ``patch``."""
    old, new = coerce(current), coerce(target)
    if old is None or new is None:
        return "minor"
    if new.major > old.major:
        return "major"
    if new.minor > old.minor:
        return "minor"
    return "patch"


def version_in_range(version: str, range_expr: str) -> bool:
    """Check range membership for npm, Maven interval and comparator syntax.

    Raises:
        MatchError: if ``version`` or ``range_expr`` cannot be interpreted
    """
    target = coerce(version)
    if target is None:
        raise MatchError(f"Unparseable version: {version!r}")

    expr = range_expr.strip()
    if not expr or expr in ("*", "x", "latest"):
        return True

    if "||" in expr:
        return any(version_in_range(version, part) for part in expr.split("||"))

    if expr[0] in "[(":
        intervals = _INTERVAL_RE.findall(expr)
        if not intervals:
            raise MatchError(f"Unparseable interval: {range_expr!r}")
        return any(_in_interval(target, interval) for interval in intervals)

    if " - " in expr:
        low, high = (part.strip() for part in expr.split(" - ", 1))
        return _specifier(f">={_bound(low)},<={_bound(high)}").contains(target, prereleases=True)

    expr = re.sub(r"(>=|<=|==|!=|~>|~=|[><=^~])\s+", r"\1", expr)
    clauses: list[str] = []
    for token in re.split(r"[,\s]+", expr):
        if token:
            clauses.extend(_comparator_clauses(token))
    if not clauses:
        return True
    return _specifier(",".join(clauses)).contains(target, prereleases=True)


def _specifier(spec: str) -> SpecifierSet:
    try:
        return SpecifierSet(spec)
    except InvalidSpecifier as e:
        raise MatchError(f"Invalid range {spec!r}: {e}") from e


def _bound(raw: str) -> Version:
    parsed = coerce(raw)
    if parsed is None:
        raise MatchError(f"Unparseable range bound: {raw!r}")
    return parsed


def _comparator_clauses(token: str) -> list[str]:
    match = _COMPARATOR_RE.match(token)
    if not match:
        raise MatchError(f"Unparseable comparator: {token!r}")
    op, raw = match.groups()
    raw = raw.strip()

    if raw.lower() in ("*", "x"):
        return []

    wildcard = re.match(r"^(\d+)(?:\.(\d+))?\.[x*]$", raw, re.IGNORECASE)
    if wildcard and not op:
        major, minor = wildcard.groups()
        if minor is None:
            return [f">={major}.0.0", f"<{int(major) + 1}.0.0"]
        return [f">={major}.{minor}.0", f"<{major}.{int(minor) + 1}.0"]

    bound = _bound(raw)
    if op == "^":
        if bound.major > 0:
            upper = f"{bound.major + 1}.0.0"
        elif bound.minor > 0:
            upper = f"0.{bound.minor + 1}.0"
        else:
            upper = f"0.0.{bound.micro + 1}"
        return [f">={bound}", f"<{upper}"]
    if op in ("~", "~>", "~="):
        return [f">={bound}", f"<{bound.major}.{bound.minor + 1}.0"]
    if op in (None, "", "=", "=="):
        return [f"=={bound}"]
    return [f"{op}{bound}"]


def _in_interval(target: Version, interval: str) -> bool:
    lower_inclusive = interval[0] == "["
    upper_inclusive = interval[-1] == "]"
    body = interval[1:-1]

    if "," not in body:
        # [1.0] pins exactly one version
        return target == _bound(body)

    low, high = (part.strip() for part in body.split(",", 1))
    if low:
        bound = _bound(low)
        if target < bound or (target == bound and not lower_inclusive):
            return False
    if high:
        bound = _bound(high)
        if target > bound or (target == bound and not upper_inclusive):
            return False
    return True
