"""Tests for safety classification."""

from remedy.policy import CompatibilityRules, CoupledFamily, ManualMigration
from remedy.safety import SafetyContext, classify, partition


def spring_boot(suggestion, name="org.springframework.boot:spring-boot-starter-web", current="2.7.5", target="3.0.0"):
    return suggestion(name, current, target, update_type="major")


class TestDowngrades:
    """Test downgrade detection."""

    def test_downgrade_is_problematic(self, suggestion):
        """Should refuse 2.0.18 -> 2.0.16."""
        verdict = classify(suggestion("org.example:lib", "2.0.18.RELEASE", "2.0.16"))
        assert not verdict.safe
        assert "downgrade" in verdict.reason.lower()

    def test_same_or_newer_is_safe(self, suggestion):
        assert classify(suggestion("org.example:lib", "2.0.18", "2.0.18")).safe
        assert classify(suggestion("org.example:lib", "2.0.18", "2.1.0")).safe


class TestRuntimeGates:
    """Test framework majors that need a newer runtime."""

    def test_spring_boot_3_needs_java_17(self, suggestion):
        verdict = classify(spring_boot(suggestion), SafetyContext(java_version=11))
        assert not verdict.safe
        assert "Java 17+" in verdict.reason
        assert "detected Java 11" in verdict.reason

    def test_spring_boot_3_with_java_17(self, suggestion):
        assert classify(spring_boot(suggestion), SafetyContext(java_version=17)).safe

    def test_satisfied_gate_allows_denylisted_library(self, suggestion):
        fix = spring_boot(suggestion, name="org.springframework.boot:spring-boot-autoconfigure")
        assert classify(fix, SafetyContext(java_version=21)).safe

    def test_gate_applies_only_when_crossing(self, suggestion):
        fix = spring_boot(suggestion, current="3.0.0", target="3.1.5")
        assert classify(fix, SafetyContext(java_version=11)).safe

    def test_downgrade_is_checked_before_the_gate(self, suggestion):
        fix = spring_boot(suggestion, current="3.1.0", target="3.0.0")
        verdict = classify(fix, SafetyContext(java_version=17))
        assert "downgrade" in verdict.reason.lower()


class TestManualMigration:
    """Test libraries that always need a human."""

    def test_denylisted_library(self, suggestion):
        fix = suggestion("org.springframework.security.oauth:spring-security-oauth2", "2.3.4", "2.3.8")
        verdict = classify(fix)
        assert not verdict.safe
        assert verdict.reason.startswith("Requires manual migration")

    def test_denylist_without_crossing_gate(self, suggestion):
        fix = spring_boot(suggestion, name="org.springframework.boot:spring-boot-autoconfigure", target="2.7.18")
        assert not classify(fix, SafetyContext(java_version=17)).safe


class TestCoupledFamilies:
    """Test components that must move together."""

    def test_jackson_ceiling(self, suggestion):
        fix = suggestion("com.fasterxml.jackson.core:jackson-databind", "2.13.0", "3.0.0")
        verdict = classify(fix)
        assert not verdict.safe
        assert "Jackson" in verdict.reason

    def test_jackson_within_ceiling(self, suggestion):
        assert classify(suggestion("com.fasterxml.jackson.core:jackson-databind", "2.13.0", "2.13.4.2")).safe

    def test_major_step_too_large(self, suggestion):
        verdict = classify(suggestion("io.netty:netty-codec", "4.1.94.Final", "6.0.0"))
        assert not verdict.safe
        assert "too large" in verdict.reason

    def test_grpc_minor_is_safe(self, suggestion):
        assert classify(suggestion("io.grpc:grpc-core", "1.50.0", "1.53.0")).safe

    def test_custom_rules(self, suggestion):
        rules = CompatibilityRules(
            coupled_families=[CoupledFamily(name="Acme", patterns=["acme:"], max_major_step=0)],
            manual_migration=[ManualMigration(pattern="legacy", reason="gone")],
        )
        context = SafetyContext(rules=rules)

        assert not classify(suggestion("acme:core", "1.0", "2.0"), context).safe
        assert not classify(suggestion("org:legacy-lib", "1.0", "1.1"), context).safe
        assert classify(suggestion("io.netty:netty-codec", "4.1.0", "6.0.0"), context).safe


class TestPartition:
    """Test splitting fixes into safe and problematic."""

    def test_partition(self, suggestion):
        fixes = [
            suggestion("commons-io:commons-io", "2.6", "2.7"),
            suggestion("org.example:lib", "2.0.18", "2.0.16"),
        ]
        safe, problematic = partition(fixes)

        assert [fix.dependency_name for fix in safe] == ["commons-io:commons-io"]
        assert problematic[0].fix.dependency_name == "org.example:lib"
        assert problematic[0].reason
