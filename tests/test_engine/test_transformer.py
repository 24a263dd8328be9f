"""Unit tests for the cleaning transformer.

Tests cover parameter removal in query and fragment, raw rules,
redirections, complete providers, referral marketing and rule group order.
"""

import unittest

from linkscrub.core.constants import RuleGroup
from linkscrub.core.models import EngineSettings, Provider
from linkscrub.engine.matcher import compile_provider
from linkscrub.engine.transformer import apply_provider, find_redirection


class TestParameterRules(unittest.TestCase):
    """Test removal of tracking parameters."""

    def setUp(self):
        """Create a provider with utm rules."""
        self.provider = Provider(id="tracking", url_pattern=".*", rules=("utm_source", "utm_medium"))

    def test_anchored_rule_removes_prefix_matches(self):
        """Test ^utm_ removes utm_source and keeps id."""
        provider = Provider(id="example", url_pattern=r"example\.com", rules=("^utm_",))
        result = apply_provider("https://example.com/?utm_source=x&id=1", provider)

        self.assertEqual(result.url, "https://example.com/?id=1")
        self.assertEqual(result.applied_count, 1)
        self.assertFalse(result.redirected)
        self.assertFalse(result.blocked)

    def test_mixed_anchor_alternation(self):
        """Test an alternation only strips the names its alternatives cover."""
        provider = Provider(id="mixed", url_pattern=".*", rules=("gclid|utm_source$",))
        result = apply_provider("https://x.test/?notgclid=1&gclid=2&page=3", provider)

        self.assertEqual(result.url, "https://x.test/?notgclid=1&page=3")
        self.assertEqual(result.applied_count, 1)

    def test_counts_each_removed_parameter(self):
        """Test the applied count is the number of parameters removed."""
        result = apply_provider("https://a.test/?utm_source=x&utm_medium=y&id=1", self.provider)
        self.assertEqual(result.url, "https://a.test/?id=1")
        self.assertEqual(result.applied_count, 2)

    def test_fragment_parameters(self):
        """Test parameters in the fragment are removed too."""
        result = apply_provider("https://a.test/p#utm_source=x&b=1", self.provider)
        self.assertEqual(result.url, "https://a.test/p#b=1")
        self.assertEqual(result.applied_count, 1)

    def test_emptied_query_drops_separator(self):
        """Test no dangling ? is left behind."""
        result = apply_provider("https://a.test/p?utm_source=x", self.provider)
        self.assertEqual(result.url, "https://a.test/p")

    def test_keeps_encoding_of_other_parameters(self):
        """Test surviving parameters keep their original spelling."""
        result = apply_provider("https://a.test/p?q=a%20b&utm_source=x&r=%2F", self.provider)
        self.assertEqual(result.url, "https://a.test/p?q=a%20b&r=%2F")

    def test_unchanged_url_is_returned_verbatim(self):
        """Test a URL without tracking parameters comes back as-is."""
        url = "https://a.test/p?Q=1&&x=%7E"
        result = apply_provider(url, self.provider)
        self.assertEqual(result.url, url)
        self.assertEqual(result.applied_count, 0)

    def test_rules_are_case_insensitive(self):
        """Test parameter names are matched ignoring case."""
        result = apply_provider("https://a.test/?UTM_SOURCE=1&id=2", self.provider)
        self.assertEqual(result.url, "https://a.test/?id=2")

    def test_unanchored_rule_matches_whole_name(self):
        """Test ref does not remove referrer or pref."""
        provider = Provider(id="ref", url_pattern=".*", rules=("ref",))
        result = apply_provider("https://a.test/?referrer=1&pref=2&ref=3", provider)
        self.assertEqual(result.url, "https://a.test/?referrer=1&pref=2")
        self.assertEqual(result.applied_count, 1)


class TestRawRules(unittest.TestCase):
    """Test raw rules applied to the URL text."""

    def test_raw_rule_deletes_matches(self):
        """Test raw rule matches are cut from the URL."""
        provider = Provider(id="shop", url_pattern=".*", raw_rules=(r"/ref=[^/?]*",))
        result = apply_provider("https://shop.test/item/ref=abc?x=1", provider)

        self.assertEqual(result.url, "https://shop.test/item?x=1")
        self.assertEqual(result.applied_count, 1)

    def test_raw_rule_leaves_no_empty_parameter(self):
        """Test a deleted leading parameter does not leave ?& behind."""
        provider = Provider(id="shop", url_pattern=".*", raw_rules=(r"utm_source=[^&]*",))
        result = apply_provider("https://x.test/?utm_source=a&id=1", provider)

        self.assertEqual(result.url, "https://x.test/?id=1")
        self.assertEqual(result.applied_count, 1)

    def test_raw_rule_emptying_query_drops_separator(self):
        """Test a query emptied by a raw rule loses its ?."""
        provider = Provider(id="shop", url_pattern=".*", raw_rules=(r"utm_source=[^&#]*",))

        self.assertEqual(apply_provider("https://x.test/?utm_source=a", provider).url, "https://x.test/")
        self.assertEqual(apply_provider("https://x.test/p?utm_source=a#top", provider).url, "https://x.test/p#top")
        self.assertEqual(apply_provider("https://x.test/?a=1&utm_source=b&c=2", provider).url, "https://x.test/?a=1&c=2")

    def test_raw_rule_without_match(self):
        """Test non-matching raw rules do not count."""
        provider = Provider(id="shop", url_pattern=".*", raw_rules=(r"/ref=[^/?]*",))
        result = apply_provider("https://shop.test/item", provider)
        self.assertEqual(result.applied_count, 0)


class TestRedirections(unittest.TestCase):
    """Test redirect unwrapping."""

    def setUp(self):
        """Create a redirector provider."""
        self.provider = Provider(
            id="redirector",
            url_pattern=r"redirector\.test",
            rules=("utm_source",),
            redirections=(r"^https?://redirector\.test/go\?(?:.*&)?url=([^&]*)",),
        )

    def test_redirect_decodes_target(self):
        """Test the captured target is percent-decoded."""
        result = apply_provider("https://redirector.test/go?url=https%3A%2F%2Ftarget.test%2Fpage", self.provider)

        self.assertEqual(result.url, "https://target.test/page")
        self.assertTrue(result.redirected)
        self.assertEqual(result.applied_count, 0)

    def test_redirect_ends_provider(self):
        """Test parameter rules do not run after a redirect."""
        result = apply_provider(
            "https://redirector.test/go?utm_source=x&url=https%3A%2F%2Ftarget.test%2F%3Futm_source%3Dy",
            self.provider,
        )
        self.assertEqual(result.url, "https://target.test/?utm_source=y")
        self.assertEqual(result.applied_count, 0)

    def test_double_encoded_target(self):
        """Test repeated encoding is fully decoded."""
        result = apply_provider("https://redirector.test/go?url=https%253A%252F%252Ftarget.test%252F", self.provider)
        self.assertEqual(result.url, "https://target.test/")

    def test_scheme_less_target_gets_http(self):
        """Test targets without scheme get an http:// prefix."""
        result = apply_provider("https://redirector.test/go?url=target.test%2Fp", self.provider)
        self.assertEqual(result.url, "http://target.test/p")

    def test_empty_capture_is_ignored(self):
        """Test an empty capture group does not redirect."""
        result = apply_provider("https://redirector.test/go?url=&utm_source=x", self.provider)
        self.assertFalse(result.redirected)
        self.assertEqual(result.url, "https://redirector.test/go?url=")

    def test_first_matching_redirection_wins(self):
        """Test redirections are tried in order."""
        provider = Provider(
            id="multi",
            url_pattern=".*",
            redirections=(r"[?&]dest=([^&]+)", r"[?&]u=([^&]+)", r"[?&]url=([^&]+)"),
        )
        compiled, _ = compile_provider(provider)
        target = find_redirection("https://r.test/?url=https%3A%2F%2Fb.test%2F&u=https%3A%2F%2Fa.test%2F", compiled)
        self.assertEqual(target, "https://a.test/")


class TestCompleteProvider(unittest.TestCase):
    """Test complete providers."""

    def setUp(self):
        """Create an ad-domain provider."""
        self.provider = Provider(id="ads", url_pattern=r"ads\.test", complete_provider=True)

    def test_blocks_when_domain_blocking(self):
        """Test the URL is blocked and left unchanged."""
        result = apply_provider("https://ads.test/p?a=1", self.provider)
        self.assertTrue(result.blocked)
        self.assertEqual(result.url, "https://ads.test/p?a=1")
        self.assertEqual(result.applied_count, 1)

    def test_strips_everything_without_domain_blocking(self):
        """Test all parameters are removed when blocking is off."""
        settings = EngineSettings(domain_blocking=False)
        result = apply_provider("https://ads.test/p?a=1&b=2", self.provider, settings)

        self.assertFalse(result.blocked)
        self.assertEqual(result.url, "https://ads.test/p")
        self.assertEqual(result.applied_count, 2)


class TestSettings(unittest.TestCase):
    """Test settings that change transformer behavior."""

    def test_referral_marketing_toggle(self):
        """Test referral rules only apply when enabled."""
        provider = Provider(id="shop", url_pattern=".*", referral_marketing=("tag",))
        url = "https://shop.test/?tag=affiliate-20&id=1"

        self.assertEqual(apply_provider(url, provider).url, url)

        result = apply_provider(url, provider, EngineSettings(referral_marketing=True))
        self.assertEqual(result.url, "https://shop.test/?id=1")
        self.assertEqual(result.applied_count, 1)

    def test_redirections_only(self):
        """Test forced redirection evaluates nothing but redirections."""
        provider = Provider(
            id="forced",
            url_pattern=".*",
            force_redirection=True,
            rules=("utm_source",),
            redirections=(r"[?&]url=([^&]+)",),
        )
        untouched = apply_provider("https://r.test/?utm_source=x", provider, redirections_only=True)
        self.assertEqual(untouched.url, "https://r.test/?utm_source=x")
        self.assertEqual(untouched.applied_count, 0)

        redirected = apply_provider("https://r.test/?url=https%3A%2F%2Ft.test%2F", provider, redirections_only=True)
        self.assertTrue(redirected.redirected)
        self.assertEqual(redirected.url, "https://t.test/")

    def test_rule_group_order(self):
        """Test a custom order runs parameter rules before redirections."""
        provider = Provider(
            id="ordered",
            url_pattern=".*",
            rules=("url",),
            redirections=(r"[?&]url=([^&]+)",),
        )
        url = "https://r.test/go?url=https%3A%2F%2Ft.test%2F"

        default = apply_provider(url, provider)
        self.assertEqual(default.url, "https://t.test/")

        settings = EngineSettings(rule_group_order=(
            RuleGroup.PARAMETERS,
            RuleGroup.RAW_RULES,
            RuleGroup.REDIRECTIONS,
        ))
        reordered = apply_provider(url, provider, settings)
        self.assertEqual(reordered.url, "https://r.test/go")
        self.assertEqual(reordered.applied_count, 1)
        self.assertFalse(reordered.redirected)


if __name__ == "__main__":
    unittest.main()
