"""Pattern matching: which providers apply to a URL.

Patterns are compiled once per snapshot. A pattern that fails to compile is
dropped from its provider and reported once as a diagnostic; the rest of the
provider, and every other provider, keeps working.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from linkscrub.core.constants import DiagnosticKind
from linkscrub.core.exceptions import InvalidPatternError
from linkscrub.core.models import Diagnostic, Provider, RequestContext, RuleSetSnapshot
from linkscrub.rules.parser import compile_pattern


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledProvider:
    """Provider with its regular expressions compiled."""
    provider: Provider
    url_pattern: Optional[re.Pattern]
    rules: tuple[re.Pattern, ...] = ()
    raw_rules: tuple[re.Pattern, ...] = ()
    referral_marketing: tuple[re.Pattern, ...] = ()
    exceptions: tuple[re.Pattern, ...] = ()
    redirections: tuple[re.Pattern, ...] = ()

    @property
    def id(self) -> str:
        return self.provider.id

    def matches_exception(self, url: str) -> bool:
        return any(p.search(url) for p in self.exceptions)

    def accepts_request(self, request_context: Optional[RequestContext]) -> bool:
        """Apply the optional method and resource-type filters."""
        if request_context is None:
            return True
        provider = self.provider
        if provider.methods and request_context.method:
            methods = {m.upper() for m in provider.methods}
            if request_context.method.upper() not in methods:
                return False
        if provider.resource_types and request_context.resource_type:
            if request_context.resource_type not in provider.resource_types:
                return False
        return True

    def matches_url(self, url: str) -> bool:
        """URL pattern matches and no exception does; ignores ``enabled``."""
        if self.url_pattern is None or not self.url_pattern.search(url):
            return False
        return not self.matches_exception(url)

    def applies(self, url: str, request_context: Optional[RequestContext] = None) -> bool:
        return (
            self.provider.enabled
            and self.matches_url(url)
            and self.accepts_request(request_context)
        )


@dataclass(frozen=True)
class CompiledRuleSet:
    """Compiled form of one snapshot, in snapshot order."""
    snapshot: RuleSetSnapshot
    providers: tuple[CompiledProvider, ...]
    diagnostics: tuple[Diagnostic, ...] = field(default=())

    @property
    def version(self) -> int:
        return self.snapshot.version


def _compile_group(
    provider: Provider,
    field_name: str,
    patterns: tuple[str, ...],
    diagnostics: list[Diagnostic],
    *,
    whole: bool = False,
    needs_group: bool = False,
) -> tuple[re.Pattern, ...]:
    compiled = []
    for pattern in patterns:
        try:
            regex = compile_pattern(pattern, whole=whole)
        except InvalidPatternError as e:
            diagnostics.append(Diagnostic(
                kind=DiagnosticKind.INVALID_PATTERN,
                message=e.reason,
                provider_id=provider.id,
                pattern=pattern,
                field=field_name,
            ))
            continue
        if needs_group and regex.groups < 1:
            diagnostics.append(Diagnostic(
                kind=DiagnosticKind.INVALID_PATTERN,
                message="redirection pattern has no capture group",
                provider_id=provider.id,
                pattern=pattern,
                field=field_name,
            ))
            continue
        compiled.append(regex)
    return tuple(compiled)


def compile_provider(provider: Provider) -> tuple[CompiledProvider, list[Diagnostic]]:
    """Compile one provider, collecting diagnostics for broken patterns."""
    diagnostics: list[Diagnostic] = []
    url_patterns = _compile_group(provider, "urlPattern", (provider.url_pattern,), diagnostics)

    compiled = CompiledProvider(
        provider=provider,
        url_pattern=url_patterns[0] if url_patterns else None,
        rules=_compile_group(provider, "rules", provider.rules, diagnostics, whole=True),
        raw_rules=_compile_group(provider, "rawRules", provider.raw_rules, diagnostics),
        referral_marketing=_compile_group(
            provider, "referralMarketing", provider.referral_marketing, diagnostics, whole=True
        ),
        exceptions=_compile_group(provider, "exceptions", provider.exceptions, diagnostics),
        redirections=_compile_group(
            provider, "redirections", provider.redirections, diagnostics, needs_group=True
        ),
    )
    return compiled, diagnostics


def compile_snapshot(snapshot: RuleSetSnapshot) -> CompiledRuleSet:
    """Compile every provider of a snapshot."""
    compiled_providers = []
    diagnostics: list[Diagnostic] = []

    for provider in snapshot.providers:
        compiled, provider_diagnostics = compile_provider(provider)
        compiled_providers.append(compiled)
        diagnostics.extend(provider_diagnostics)

    for diagnostic in diagnostics:
        logger.warning(
            f"Skipping invalid pattern in {diagnostic.provider_id}.{diagnostic.field}: "
            f"{diagnostic.pattern!r} ({diagnostic.message})"
        )

    return CompiledRuleSet(
        snapshot=snapshot,
        providers=tuple(compiled_providers),
        diagnostics=tuple(diagnostics),
    )


def match_compiled(
    url: str,
    ruleset: CompiledRuleSet,
    request_context: Optional[RequestContext] = None,
) -> list[CompiledProvider]:
    return [cp for cp in ruleset.providers if cp.applies(url, request_context)]


def match_providers(
    url: str,
    snapshot: Union[RuleSetSnapshot, CompiledRuleSet],
    request_context: Optional[RequestContext] = None,
) -> list[Provider]:
    """Return the providers that apply to ``url``, in snapshot order.

    Args:
        url: Absolute URL to test
        snapshot: Snapshot or its compiled form
        request_context: Optional request information for method and
            resource-type filters

    Returns:
        Applicable providers in the snapshot's declared order
    """
    ruleset = snapshot if isinstance(snapshot, CompiledRuleSet) else compile_snapshot(snapshot)
    return [cp.provider for cp in match_compiled(url, ruleset, request_context)]
