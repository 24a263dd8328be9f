"""Unit tests for provider matching.

Tests cover URL pattern matching, exceptions, the enabled flag, method and
resource-type filters, declared ordering and invalid pattern isolation.
"""

import unittest

from linkscrub.core.constants import DiagnosticKind, RuleSource
from linkscrub.core.models import Provider, RequestContext, RuleSetSnapshot
from linkscrub.engine.matcher import compile_provider, compile_snapshot, match_providers


def make_snapshot(*providers):
    return RuleSetSnapshot.build(list(providers), {p.id: RuleSource.CUSTOM for p in providers})


class TestMatchProviders(unittest.TestCase):
    """Test match_providers."""

    def setUp(self):
        """Create a small snapshot."""
        self.general = Provider(id="general", url_pattern=".*", rules=("utm_source",))
        self.example = Provider(
            id="example",
            url_pattern=r"^https?://(?:[a-z0-9-]+\.)*?example\.com",
            rules=("ref",),
            exceptions=(r"example\.com/login",),
        )
        self.disabled = Provider(id="disabled", url_pattern=r"example\.com", enabled=False)
        self.snapshot = make_snapshot(self.general, self.example, self.disabled)

    def test_matches_in_snapshot_order(self):
        """Test applicable providers come back in declared order."""
        matched = match_providers("https://www.example.com/x", self.snapshot)
        self.assertEqual([p.id for p in matched], ["general", "example"])

    def test_url_pattern_is_case_insensitive(self):
        """Test urlPattern matching ignores case."""
        matched = match_providers("HTTPS://WWW.EXAMPLE.COM/", self.snapshot)
        self.assertIn("example", [p.id for p in matched])

    def test_exception_skips_provider(self):
        """Test a matching exception removes the provider."""
        matched = match_providers("https://example.com/login?next=/", self.snapshot)
        self.assertEqual([p.id for p in matched], ["general"])

    def test_disabled_provider_never_applies(self):
        """Test enabled=False providers are skipped."""
        matched = match_providers("https://example.com/", self.snapshot)
        self.assertNotIn("disabled", [p.id for p in matched])

    def test_accepts_compiled_ruleset(self):
        """Test match_providers works on a compiled rule set."""
        compiled = compile_snapshot(self.snapshot)
        matched = match_providers("https://example.com/", compiled)
        self.assertEqual([p.id for p in matched], ["general", "example"])

    def test_method_filter(self):
        """Test providers limited to methods only apply to them."""
        provider = Provider(id="get-only", url_pattern=".*", methods=("GET",))
        snapshot = make_snapshot(provider)

        self.assertEqual(len(match_providers("https://a.test/", snapshot, RequestContext(method="get"))), 1)
        self.assertEqual(match_providers("https://a.test/", snapshot, RequestContext(method="POST")), [])
        # No context means no filtering
        self.assertEqual(len(match_providers("https://a.test/", snapshot)), 1)

    def test_resource_type_filter(self):
        """Test providers limited to resource types only apply to them."""
        provider = Provider(id="frames", url_pattern=".*", resource_types=("main_frame", "sub_frame"))
        snapshot = make_snapshot(provider)

        context = RequestContext(resource_type="main_frame")
        self.assertEqual(len(match_providers("https://a.test/", snapshot, context)), 1)
        context = RequestContext(resource_type="image")
        self.assertEqual(match_providers("https://a.test/", snapshot, context), [])


class TestInvalidPatterns(unittest.TestCase):
    """Test invalid pattern handling at compile time."""

    def test_invalid_url_pattern_never_applies(self):
        """Test a provider with a broken urlPattern is inert, others work."""
        broken = Provider(id="broken", url_pattern="([a-z")
        healthy = Provider(id="healthy", url_pattern=".*")
        snapshot = make_snapshot(broken, healthy)

        matched = match_providers("https://a.test/", snapshot)
        self.assertEqual([p.id for p in matched], ["healthy"])

    def test_invalid_rule_is_dropped_and_reported(self):
        """Test one bad rule does not discard the provider's other rules."""
        provider = Provider(id="mixed", url_pattern=".*", rules=("(unclosed", "utm_source"))
        compiled, diagnostics = compile_provider(provider)

        self.assertEqual(len(compiled.rules), 1)
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].kind, DiagnosticKind.INVALID_PATTERN)
        self.assertEqual(diagnostics[0].provider_id, "mixed")
        self.assertEqual(diagnostics[0].field, "rules")
        self.assertEqual(diagnostics[0].pattern, "(unclosed")

    def test_redirection_without_group_is_rejected(self):
        """Test redirections need a capture group."""
        provider = Provider(id="redir", url_pattern=".*", redirections=(r"go\?url=.*",))
        compiled, diagnostics = compile_provider(provider)

        self.assertEqual(compiled.redirections, ())
        self.assertEqual(diagnostics[0].field, "redirections")

    def test_snapshot_diagnostics(self):
        """Test compile_snapshot collects diagnostics of every provider."""
        snapshot = make_snapshot(
            Provider(id="a", url_pattern="(", rules=("ok",)),
            Provider(id="b", url_pattern=".*", raw_rules=("[",)),
        )
        compiled = compile_snapshot(snapshot)
        self.assertEqual({d.provider_id for d in compiled.diagnostics}, {"a", "b"})
        self.assertEqual(len(compiled.providers), 2)


if __name__ == "__main__":
    unittest.main()
