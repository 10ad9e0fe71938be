"""Tests for vulnerability matching and fix suggestions."""

from remedy.match import (
    LATEST,
    analyze_vulnerabilities,
    calculate_confidence,
    consolidate,
    extract_remediation_version,
    generate_fix_suggestion,
    is_package_match,
    is_version_affected,
)
from remedy.models import AffectedPackageSpec, BreakingChange, Vulnerability


class TestPackageMatching:
    """Test ecosystem and name matching."""

    def test_gradle_dependency_matches_maven_advisory(self, dependency):
        """Gradle and Maven share one coordinate grammar."""
        spec = AffectedPackageSpec(name="commons-io:commons-io", ecosystem="maven")
        assert is_package_match(dependency(ecosystem="gradle"), spec)
        assert is_package_match(dependency(ecosystem="maven"), spec)

    def test_names_are_case_insensitive_and_exact(self, dependency):
        spec = AffectedPackageSpec(name="Commons-IO:Commons-IO", ecosystem="Maven")
        assert is_package_match(dependency(), spec)
        assert not is_package_match(dependency("commons-io:commons-io-extra"), spec)

    def test_ecosystems_must_agree(self, dependency):
        spec = AffectedPackageSpec(name="lodash", ecosystem="npm")
        assert not is_package_match(dependency("lodash", ecosystem="maven"), spec)
        assert is_package_match(dependency("lodash", ecosystem="yarn"), spec)


class TestVersionAffected:
    """Test range membership decisions."""

    def test_ranges(self):
        assert is_version_affected("2.6", ["<2.7"])
        assert not is_version_affected("2.7", ["<2.7"])
        assert is_version_affected("2.13.0", ["[2.0,2.13.4)"])
        assert is_version_affected("4.17.0", [">=4.0.0 <4.17.21"])

    def test_wildcards_are_affected(self):
        assert is_version_affected("*", ["<1.0"])
        assert is_version_affected("latest", ["<1.0"])

    def test_no_ranges_means_affected(self):
        assert is_version_affected("1.0", [])

    def test_unparseable_versions_fall_back_to_containment(self):
        assert is_version_affected("release-candidate", ["release-candidate"])
        assert not is_version_affected("release-candidate", ["something-else"])


class TestRemediationText:
    """Test target extraction from free text."""

    def test_extraction(self):
        assert extract_remediation_version("Upgrade to version 2.8.0 or later") == "2.8.0"
        assert extract_remediation_version("Recommended Version: 1.2.3") == "1.2.3"
        assert extract_remediation_version("This issue was fixed in v2.17.1.") == "2.17.1"

    def test_nothing_to_extract(self):
        assert extract_remediation_version("") is None
        assert extract_remediation_version("No fix is available.") is None


class TestSuggestions:
    """Test single fix suggestions."""

    def test_lowest_fixed_version_above_current(self, dependency, vulnerability):
        vuln = vulnerability(fixed=["2.5", "2.8.0", "2.7"])
        fix = generate_fix_suggestion(dependency(), vuln, vuln.affected_packages[0])

        assert fix.suggested_version == "2.7"
        assert fix.update_type == "minor"
        assert fix.confidence == 0.9
        assert fix.fixes_vulnerabilities == ("CVE-2021-29425",)
        assert not fix.testing_required

    def test_remediation_text_is_used_without_fixed_versions(self, dependency, vulnerability):
        vuln = vulnerability(fixed=[], remediation_text="Upgrade to version 2.11.0")
        fix = generate_fix_suggestion(dependency(), vuln, vuln.affected_packages[0])
        assert fix.suggested_version == "2.11.0"

    def test_latest_when_nothing_is_known(self, dependency, vulnerability):
        vuln = vulnerability(name="org.springframework.boot:spring-boot", fixed=[])
        dep = dependency("org.springframework.boot:spring-boot", "2.7.5")
        fix = generate_fix_suggestion(dep, vuln, vuln.affected_packages[0])

        assert fix.suggested_version == LATEST
        assert fix.update_type == "major"
        assert fix.testing_required
        assert fix.breaking_changes

    def test_confidence_bounds(self):
        changes = [BreakingChange(type="api", description="x")] * 20
        assert calculate_confidence("major", changes, True) == 0.1
        assert calculate_confidence("patch", [], False) == 1.0
        assert calculate_confidence("patch", [], True) == 0.95


class TestConsolidation:
    """Test merging of suggestions for one dependency."""

    def test_highest_target_covers_all_vulnerabilities(self, suggestion):
        merged = consolidate([
            suggestion(suggested="2.7", fixes_vulnerabilities=("CVE-A",)),
            suggestion(suggested="2.8.0", fixes_vulnerabilities=("CVE-B",)),
        ])

        assert len(merged) == 1
        assert merged[0].suggested_version == "2.8.0"
        assert merged[0].fixes_vulnerabilities == ("CVE-A", "CVE-B")

    def test_latest_only_without_concrete_targets(self, suggestion):
        merged = consolidate([
            suggestion(suggested=LATEST, fixes_vulnerabilities=("CVE-A",)),
            suggestion(suggested="2.7", fixes_vulnerabilities=("CVE-B",)),
        ])
        assert merged[0].suggested_version == "2.7"

    def test_different_files_stay_separate(self, suggestion):
        merged = consolidate([
            suggestion(file_path="build.gradle"),
            suggestion(file_path="app/build.gradle"),
        ])
        assert len(merged) == 2


class TestAnalyzeVulnerabilities:
    """Test end-to-end matching over a tree."""

    def test_analyze(self, dependency, vulnerability):
        deps = [dependency(), dependency("junit:junit", "4.12")]
        result = analyze_vulnerabilities(deps, [vulnerability()])

        assert len(result.affected) == 1
        assert result.vulnerability_ids == {"CVE-2021-29425"}
        assert [s.dependency_name for s in result.suggestions] == ["commons-io:commons-io"]

    def test_fixed_only_advisory_skips_patched_versions(self, dependency, vulnerability):
        vuln = vulnerability(ranges=[], fixed=["2.7"])
        assert analyze_vulnerabilities([dependency(version="2.7")], [vuln]).affected == []
        assert len(analyze_vulnerabilities([dependency(version="2.6")], [vuln]).affected) == 1

    def test_multiple_vulnerabilities_consolidate(self, dependency):
        vulns = [
            Vulnerability(
                id=vuln_id,
                cve_ids=[vuln_id],
                affected_packages=[
                    AffectedPackageSpec("commons-io:commons-io", "maven", ["<" + fixed], [fixed])
                ],
            )
            for vuln_id, fixed in (("CVE-1", "2.7"), ("CVE-2", "2.11.0"))
        ]
        result = analyze_vulnerabilities([dependency()], vulns)

        assert len(result.suggestions) == 1
        assert result.suggestions[0].suggested_version == "2.11.0"
        assert set(result.suggestions[0].fixes_vulnerabilities) == {"CVE-1", "CVE-2"}
        assert result.affected[0].dependency.target_version == "2.11.0"
