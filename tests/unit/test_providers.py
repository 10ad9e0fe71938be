"""Tests for repository, vulnerability and clone-cache providers."""

import asyncio
import json

import httpx
import pytest

from remedy.config import Settings
from remedy.errors import FatalError, RemedyError
from remedy.providers import (
    CloneCache,
    GitCliRepository,
    OsvVulnerabilitySource,
    load_vulnerabilities,
    repository_key,
    vulnerability_from_osv,
)
from remedy.toolrun import CommandResult

OSV_RECORD = {
    "id": "GHSA-gwrp-pvrq-jmwv",
    "aliases": ["CVE-2021-29425"],
    "summary": "Path traversal in commons-io",
    "details": "Upgrade to version 2.7 or later.",
    "database_specific": {"severity": "MODERATE"},
    "affected": [
        {
            "package": {"ecosystem": "Maven", "name": "commons-io:commons-io"},
            "ranges": [{"type": "ECOSYSTEM", "events": [{"introduced": "0"}, {"fixed": "2.7"}]}],
        },
        {"package": {"ecosystem": "PyPI", "name": "unrelated"}},
    ],
}


class FakeProvider:
    """Clones into numbered directories under ``root``."""

    def __init__(self, root):
        self.root = root
        self.clones = 0

    async def clone(self, url):
        self.clones += 1
        path = self.root / f"clone-{self.clones}"
        path.mkdir(parents=True)
        await asyncio.sleep(0)
        return path


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def cache_factory(tmp_path):
    provider = FakeProvider(tmp_path / "work")
    clock = FakeClock()

    def make(**kwargs):
        return CloneCache(tmp_path / "cache", provider, clock=clock, **kwargs)

    make.provider = provider
    make.clock = clock
    return make


class TestRepositoryKey:
    """Test repository identities."""

    def test_https_and_ssh_urls_share_a_key(self):
        assert repository_key("https://github.com/acme/app.git") == "github.com_acme_app"
        assert repository_key("git@github.com:acme/app.git") == "github.com_acme_app"
        assert repository_key("https://github.com/acme/app/") == "github.com_acme_app"


class TestCloneCache:
    """Test reuse, expiry and cleanup."""

    @pytest.mark.asyncio
    async def test_reuses_existing_clone(self, cache_factory):
        cache = cache_factory()
        first = await cache.get("https://github.com/acme/app")
        second = await cache.get("https://github.com/acme/app")

        assert first == second
        assert cache_factory.provider.clones == 1
        index = json.loads((cache.root / CloneCache.INDEX_FILE).read_text())
        assert index["github.com_acme_app"]["uses"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_clone_once(self, cache_factory):
        cache = cache_factory()
        paths = await asyncio.gather(*(cache.get("https://github.com/acme/app") for _ in range(3)))

        assert len(set(paths)) == 1
        assert cache_factory.provider.clones == 1

    @pytest.mark.asyncio
    async def test_expires_after_max_reuses(self, cache_factory):
        cache = cache_factory(max_reuses=2)
        first = await cache.get("https://github.com/acme/app")
        await cache.get("https://github.com/acme/app")
        third = await cache.get("https://github.com/acme/app")

        assert third != first
        assert not first.exists()
        assert cache_factory.provider.clones == 2

    @pytest.mark.asyncio
    async def test_expires_after_max_age(self, cache_factory):
        cache = cache_factory(max_age=60)
        await cache.get("https://github.com/acme/app")
        cache_factory.clock.now += 61
        await cache.get("https://github.com/acme/app")

        assert cache_factory.provider.clones == 2

    @pytest.mark.asyncio
    async def test_missing_directory_is_recloned(self, cache_factory):
        cache = cache_factory()
        first = await cache.get("https://github.com/acme/app")
        first.rmdir()
        await cache.get("https://github.com/acme/app")

        assert cache_factory.provider.clones == 2

    @pytest.mark.asyncio
    async def test_index_survives_restart(self, cache_factory):
        await cache_factory().get("https://github.com/acme/app")
        await cache_factory().get("https://github.com/acme/app")

        assert cache_factory.provider.clones == 1

    @pytest.mark.asyncio
    async def test_cleanup_removes_stale_entries(self, cache_factory):
        cache = cache_factory()
        path = await cache.get("https://github.com/acme/app")
        cache_factory.clock.now += 8 * 24 * 3600

        assert cache.cleanup() == 1
        assert not path.exists()
        assert cache.cleanup() == 0

    def test_from_settings(self, tmp_path):
        settings = Settings(clone_cache_dir=tmp_path, clone_cache_max_reuses=5)
        cache = CloneCache.from_settings(FakeProvider(tmp_path), settings)

        assert cache.root == tmp_path
        assert cache.max_reuses == 5


class TestGitCliRepository:
    """Test the git commands issued."""

    @pytest.mark.asyncio
    async def test_clone(self, tmp_path, fake_runner):
        runner = fake_runner()
        repo = GitCliRepository(tmp_path, runner=runner)
        path = await repo.clone("https://github.com/acme/app.git")

        assert path == tmp_path / "github.com_acme_app"
        assert runner.calls == [["git", "clone", "--depth", "1", "https://github.com/acme/app.git", str(path)]]

    @pytest.mark.asyncio
    async def test_commit_and_push(self, tmp_path, fake_runner):
        runner = fake_runner()
        repo = GitCliRepository(tmp_path, runner=runner)
        await repo.commit_and_push(tmp_path, "depremedy/security-fixes", "Fix things")

        assert runner.calls == [
            ["git", "checkout", "-B", "depremedy/security-fixes"],
            ["git", "commit", "-m", "Fix things"],
            ["git", "push", "--force", "-u", "origin", "depremedy/security-fixes"],
        ]

    @pytest.mark.asyncio
    async def test_git_failure_is_fatal(self, tmp_path, fake_runner):
        runner = fake_runner({"push": CommandResult(1, "", "remote rejected")})
        repo = GitCliRepository(tmp_path, runner=runner)

        with pytest.raises(FatalError, match="git push failed: remote rejected"):
            await repo.commit_and_push(tmp_path, "fixes", "Fix things")

    @pytest.mark.asyncio
    async def test_change_requests_need_a_host(self, tmp_path):
        with pytest.raises(NotImplementedError):
            await GitCliRepository(tmp_path).open_change_request("main", "fixes", "t", "b")


class TestOsvMapping:
    """Test conversion of OSV records."""

    def test_record(self):
        vuln = vulnerability_from_osv(OSV_RECORD)

        assert vuln.id == "GHSA-gwrp-pvrq-jmwv"
        assert vuln.display_id == "CVE-2021-29425"
        assert vuln.severity == "medium"
        assert vuln.remediation_text == "Upgrade to version 2.7 or later."
        assert len(vuln.affected_packages) == 1
        spec = vuln.affected_packages[0]
        assert (spec.name, spec.ecosystem) == ("commons-io:commons-io", "maven")
        assert spec.affected_version_ranges == ["<2.7"]
        assert spec.fixed_versions == ["2.7"]

    def test_ranges(self):
        record = {
            "id": "CVE-2022-0001",
            "affected": [{
                "package": {"ecosystem": "npm", "name": "lodash"},
                "ranges": [
                    {"type": "SEMVER", "events": [
                        {"introduced": "1.0.0"}, {"fixed": "1.5.0"},
                        {"introduced": "2.0.0"}, {"last_affected": "2.3.0"},
                        {"introduced": "3.0.0"},
                    ]},
                    {"type": "GIT", "events": [{"introduced": "abc"}, {"fixed": "def"}]},
                ],
            }],
        }
        vuln = vulnerability_from_osv(record)
        spec = vuln.affected_packages[0]

        assert vuln.cve_ids == ["CVE-2022-0001"]
        assert spec.affected_version_ranges == [">=1.0.0 <1.5.0", ">=2.0.0 <=2.3.0", ">=3.0.0"]
        assert spec.fixed_versions == ["1.5.0"]


class TestOsvVulnerabilitySource:
    """Test the OSV client against a mock transport."""

    def source(self, handler):
        return OsvVulnerabilitySource("https://osv.test/v1", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_fetch(self):
        requested = []

        def handler(request):
            requested.append(request.url.path)
            if request.url.path.endswith("/GHSA-gwrp-pvrq-jmwv"):
                return httpx.Response(200, json=OSV_RECORD)
            return httpx.Response(404, json={"message": "Bug not found"})

        source = self.source(handler)
        vulns = await source.fetch(["GHSA-gwrp-pvrq-jmwv", "GHSA-missing", "GHSA-gwrp-pvrq-jmwv"])

        assert [v.display_id for v in vulns] == ["CVE-2021-29425"]
        assert sorted(requested) == ["/v1/vulns/GHSA-gwrp-pvrq-jmwv", "/v1/vulns/GHSA-missing"]

        await source.fetch(["GHSA-gwrp-pvrq-jmwv", "GHSA-missing"])
        assert len(requested) == 2

    @pytest.mark.asyncio
    async def test_server_error(self):
        source = self.source(lambda request: httpx.Response(500))
        with pytest.raises(RemedyError, match="HTTP error"):
            await source.fetch(["GHSA-1"])

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(RemedyError, match="Timeout"):
            await self.source(handler).fetch(["GHSA-1"])


class TestLoadVulnerabilities:
    """Test reading vulnerability files."""

    def test_native_records(self, tmp_path):
        path = tmp_path / "vulns.json"
        path.write_text(json.dumps([{
            "id": "CVE-2021-29425",
            "cve_ids": ["CVE-2021-29425"],
            "severity": "HIGH",
            "affected_packages": [{
                "name": "commons-io:commons-io",
                "ecosystem": "maven",
                "affected_version_ranges": ["<2.7"],
                "fixed_versions": ["2.7"],
            }],
        }]))
        vulns = load_vulnerabilities(path)

        assert vulns[0].severity == "high"
        assert vulns[0].affected_packages[0].fixed_versions == ["2.7"]

    def test_osv_records_and_wrappers(self, tmp_path):
        single = tmp_path / "single.json"
        single.write_text(json.dumps(OSV_RECORD))
        wrapped = tmp_path / "wrapped.json"
        wrapped.write_text(json.dumps({"vulnerabilities": [OSV_RECORD]}))

        assert load_vulnerabilities(single)[0].display_id == "CVE-2021-29425"
        assert load_vulnerabilities(wrapped)[0].display_id == "CVE-2021-29425"
