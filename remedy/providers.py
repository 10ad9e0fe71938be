"""External capabilities: repository hosting, vulnerability data and the clone cache."""

import asyncio
import json
import re
import shutil
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

import httpx
import structlog

from .config import Settings
from .errors import FatalError, RemedyError
from .models import AffectedPackageSpec, ChangeRequest, Vulnerability
from .toolrun import run_command

log = structlog.get_logger("depremedy.providers")

SEVERITIES = ("critical", "high", "medium", "low", "info")

# OSV ecosystem names -> ours
OSV_ECOSYSTEMS = {"maven": "maven", "npm": "npm"}

STALE_ENTRY_AGE = 7 * 24 * 3600.0


class RepositoryProvider(Protocol):
    """Where repositories come from and where change-requests go."""

    async def clone(self, url: str) -> Path: ...

    async def commit_and_push(self, path: Path, branch: str, message: str) -> None: ...

    async def open_change_request(self, base: str, head: str, title: str, body: str) -> ChangeRequest: ...


class VulnerabilitySource(Protocol):
    """Lookup of vulnerability records by id."""

    async def fetch(self, ids: Iterable[str]) -> list[Vulnerability]: ...


class GitCliRepository:
    """The git half of a repository provider, driven through the ``git`` CLI.

    Hosting APIs differ, so :meth:`open_change_request` is left to subclasses.
    """

    def __init__(self, workdir: Path, settings: Settings | None = None, runner=None):
        self.workdir = Path(workdir)
        self.settings = settings or Settings()
        self.runner = runner or run_command

    async def _git(self, args: list[str], cwd: Path) -> str:
        result = await self.runner(
            ["git", *args], cwd, self.settings.git_timeout, self.settings.git_max_output, "git"
        )
        if not result.ok:
            raise FatalError(f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result.stdout

    async def clone(self, url: str) -> Path:
        self.workdir.mkdir(parents=True, exist_ok=True)
        target = self.workdir / repository_key(url)
        if target.exists():
            shutil.rmtree(target)
        await self._git(["clone", "--depth", "1", url, str(target)], self.workdir)
        log.info("git.cloned", url=url, path=str(target))
        return target

    async def commit_and_push(self, path: Path, branch: str, message: str) -> None:
        """Commit what is staged on a fresh ``branch`` and push it."""
        await self._git(["checkout", "-B", branch], path)
        await self._git(["commit", "-m", message], path)
        await self._git(["push", "--force", "-u", "origin", branch], path)
        log.info("git.pushed", path=str(path), branch=branch)

    async def open_change_request(self, base: str, head: str, title: str, body: str) -> ChangeRequest:
        raise NotImplementedError("open_change_request needs a hosting-specific provider")


def repository_key(url: str) -> str:
    """Filesystem-safe identity for a repository URL."""
    trimmed = re.sub(r"\.git$", "", url.rstrip("/"))
    trimmed = re.sub(r"^[a-z+]+://", "", trimmed)
    trimmed = re.sub(r"^[^@/]+@", "", trimmed)
    return re.sub(r"[^A-Za-z0-9._-]+", "_", trimmed).strip("_")


class CloneCache:
    """Read-through cache of cloned repositories keyed by repository identity.

    Clones of one key are serialized. An entry is reused until it is older
    than ``max_age`` seconds or has been handed out ``max_reuses`` times.
    """

    INDEX_FILE = "index.json"

    def __init__(
        self,
        root: Path,
        provider: RepositoryProvider,
        max_age: float = 24 * 3600.0,
        max_reuses: int = 20,
        clock=time.time,
    ):
        self.root = Path(root)
        self.provider = provider
        self.max_age = max_age
        self.max_reuses = max_reuses
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._index: dict[str, dict] = self._load_index()

    @classmethod
    def from_settings(cls, provider: RepositoryProvider, settings: Settings) -> "CloneCache":
        root = settings.clone_cache_dir or Path.home() / ".cache" / "depremedy" / "clones"
        return cls(root, provider, settings.clone_cache_max_age, settings.clone_cache_max_reuses)

    def _load_index(self) -> dict[str, dict]:
        path = self.root / self.INDEX_FILE
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as e:
            log.warning("clone_cache.index_unreadable", path=str(path), error=str(e))
            return {}

    def _save_index(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / self.INDEX_FILE).write_text(json.dumps(self._index, indent=2))

    def _expired(self, entry: dict) -> bool:
        if self.clock() - entry["cloned_at"] > self.max_age:
            return True
        return entry["uses"] >= self.max_reuses

    async def get(self, url: str) -> Path:
        """Path of a working copy of ``url``, cloning when absent or expired."""
        key = repository_key(url)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._index.get(key)
            if entry and Path(entry["path"]).exists() and not self._expired(entry):
                entry["uses"] += 1
                self._save_index()
                log.info("clone_cache.hit", key=key, uses=entry["uses"])
                return Path(entry["path"])

            if entry:
                log.info("clone_cache.expired", key=key)
                shutil.rmtree(entry["path"], ignore_errors=True)

            path = await self.provider.clone(url)
            self._index[key] = {"path": str(path), "cloned_at": self.clock(), "uses": 1}
            self._save_index()
            log.info("clone_cache.miss", key=key, path=str(path))
            return path

    def cleanup(self, older_than: float = STALE_ENTRY_AGE) -> int:
        """Drop entries older than ``older_than`` seconds; returns how many."""
        now = self.clock()
        stale = [key for key, entry in self._index.items() if now - entry["cloned_at"] > older_than]
        for key in stale:
            shutil.rmtree(self._index.pop(key)["path"], ignore_errors=True)
        if stale:
            self._save_index()
            log.info("clone_cache.cleaned", removed=len(stale))
        return len(stale)


def _severity(record: dict) -> str:
    db_specific = record.get("database_specific") or {}
    value = str(db_specific.get("severity", "")).lower()
    if value == "moderate":
        value = "medium"
    if value in SEVERITIES:
        return value
    for affected in record.get("affected", []):
        value = str((affected.get("database_specific") or {}).get("severity", "")).lower()
        if value == "moderate":
            value = "medium"
        if value in SEVERITIES:
            return value
    return "medium"


def _range_expressions(affected: dict) -> tuple[list[str], list[str]]:
    ranges: list[str] = []
    fixed: list[str] = []
    for version_range in affected.get("ranges", []):
        if version_range.get("type") == "GIT":
            continue
        lower = None
        for event in version_range.get("events", []):
            if "introduced" in event:
                lower = event["introduced"]
            elif "fixed" in event or "last_affected" in event:
                upper = event.get("fixed") or event.get("last_affected")
                op = "<" if "fixed" in event else "<="
                clauses = [f"{op}{upper}"]
                if lower and lower != "0":
                    clauses.insert(0, f">={lower}")
                ranges.append(" ".join(clauses))
                if "fixed" in event:
                    fixed.append(upper)
                lower = None
        if lower is not None:
            ranges.append(">=0" if lower == "0" else f">={lower}")
    return ranges, fixed


def vulnerability_from_osv(record: dict) -> Vulnerability:
    """Map an OSV record onto :class:`Vulnerability`."""
    packages = []
    for affected in record.get("affected", []):
        package = affected.get("package") or {}
        ecosystem = OSV_ECOSYSTEMS.get(str(package.get("ecosystem", "")).lower())
        if not ecosystem or not package.get("name"):
            continue
        ranges, fixed = _range_expressions(affected)
        packages.append(
            AffectedPackageSpec(
                name=package["name"],
                ecosystem=ecosystem,
                affected_version_ranges=ranges,
                fixed_versions=fixed,
            )
        )

    cves = [alias for alias in record.get("aliases", []) if alias.startswith("CVE-")]
    if record.get("id", "").startswith("CVE-"):
        cves.insert(0, record["id"])
    return Vulnerability(
        id=record["id"],
        cve_ids=cves,
        severity=_severity(record),
        affected_packages=packages,
        remediation_text=record.get("details") or record.get("summary") or "",
    )


class OsvVulnerabilitySource:
    """Vulnerability source backed by the OSV REST API."""

    def __init__(
        self,
        base_url: str = "https://api.osv.dev/v1",
        timeout: float = 30.0,
        max_concurrency: int = 6,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the OSV source.

        Args:
            base_url: API root
            timeout: Request timeout in seconds
            max_concurrency: Maximum concurrent requests
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self._cache: dict[str, Vulnerability | None] = {}
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OsvVulnerabilitySource":
        return cls(settings.osv_base_url, settings.http_timeout, settings.http_max_concurrency)

    async def fetch(self, ids: Iterable[str]) -> list[Vulnerability]:
        """Fetch records for ``ids``; unknown ids are skipped."""
        wanted = list(dict.fromkeys(ids))
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            records = await asyncio.gather(*(self._fetch_one(client, vuln_id) for vuln_id in wanted))
        return [record for record in records if record is not None]

    async def _fetch_one(self, client: httpx.AsyncClient, vuln_id: str) -> Vulnerability | None:
        if vuln_id in self._cache:
            return self._cache[vuln_id]

        async with self._semaphore:
            url = f"{self.base_url}/vulns/{vuln_id}"
            try:
                response = await client.get(url)
                if response.status_code == 404:
                    log.warning("osv.not_found", id=vuln_id)
                    self._cache[vuln_id] = None
                    return None
                response.raise_for_status()
                record = vulnerability_from_osv(response.json())
            except httpx.TimeoutException as e:
                raise RemedyError(f"Timeout fetching vulnerability {vuln_id}") from e
            except httpx.HTTPStatusError as e:
                raise RemedyError(f"HTTP error fetching {vuln_id}: {e}") from e
            except httpx.HTTPError as e:
                raise RemedyError(f"Network error fetching {vuln_id}: {e}") from e

        self._cache[vuln_id] = record
        log.info("osv.fetched", id=vuln_id, packages=len(record.affected_packages))
        return record


def load_vulnerabilities(path: Path) -> list[Vulnerability]:
    """Read vulnerabilities from a JSON file.

    Accepts a list of records in either the native shape
    (``id``, ``cve_ids``, ``severity``, ``affected_packages``,
    ``remediation_text``) or OSV shape (``affected`` with ``package``).
    """
    data = json.loads(Path(path).read_text())
    if isinstance(data, dict):
        data = data.get("vulnerabilities", [data])

    vulnerabilities = []
    for record in data:
        if "affected" in record:
            vulnerabilities.append(vulnerability_from_osv(record))
            continue
        vulnerabilities.append(
            Vulnerability(
                id=record["id"],
                cve_ids=list(record.get("cve_ids", [])),
                severity=str(record.get("severity", "medium")).lower(),
                affected_packages=[
                    AffectedPackageSpec(
                        name=spec["name"],
                        ecosystem=spec["ecosystem"],
                        affected_version_ranges=list(spec.get("affected_version_ranges", [])),
                        fixed_versions=list(spec.get("fixed_versions", [])),
                    )
                    for spec in record.get("affected_packages", [])
                ],
                remediation_text=record.get("remediation_text", ""),
            )
        )
    return vulnerabilities
