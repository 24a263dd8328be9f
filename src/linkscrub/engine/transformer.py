"""Cleaning transformer: apply one provider to one URL.

Per provider, in order:
1. Block the URL if the provider is a complete provider and domain
   blocking is enabled
2. Run the rule groups in the configured order (default: redirections,
   raw rules, parameter rules). A redirection replaces the URL and ends
   processing for this provider.
"""

import logging
from typing import Optional, Union

from linkscrub.core.constants import RuleGroup
from linkscrub.core.models import EngineSettings, Provider, ProviderResult
from linkscrub.engine.matcher import CompiledProvider, compile_provider
from linkscrub.engine.urltools import URLParts, decode_url, strip_parameters, tidy_separators


logger = logging.getLogger(__name__)


def find_redirection(url: str, compiled: CompiledProvider) -> Optional[str]:
    """Extract the embedded destination of the first matching redirection."""
    for regex in compiled.redirections:
        match = regex.search(url)
        if match is None:
            continue
        target = match.group(1)
        if not target:
            continue
        return decode_url(target)
    return None


def apply_raw_rules(url: str, compiled: CompiledProvider) -> tuple[str, bool]:
    """Delete every match of every raw rule from the URL text.

    Separators left dangling by the deletions are cleaned up afterwards.
    """
    changed = False
    for regex in compiled.raw_rules:
        replaced = regex.sub("", url)
        if replaced != url:
            changed = True
            url = replaced
    if changed:
        url = tidy_separators(url)
    return url, changed


def strip_tracking_parameters(
    url: str,
    compiled: CompiledProvider,
    settings: EngineSettings,
) -> tuple[str, int]:
    """Remove query and fragment parameters matching the provider's rules.

    Returns:
        Tuple of (new URL, number of parameters removed)
    """
    patterns = list(compiled.rules)
    if settings.referral_marketing:
        patterns.extend(compiled.referral_marketing)
    strip_all = compiled.provider.complete_provider and not settings.domain_blocking

    if not patterns and not strip_all:
        return url, 0

    def should_remove(name: str) -> bool:
        return strip_all or any(p.fullmatch(name) for p in patterns)

    parts = URLParts.split(url)
    parts.query, removed_query = strip_parameters(parts.query, should_remove)
    parts.fragment, removed_fragment = strip_parameters(parts.fragment, should_remove)

    removed = removed_query + removed_fragment
    if removed == 0:
        return url, 0
    return parts.join(), removed


def apply_provider(
    url: str,
    provider: Union[Provider, CompiledProvider],
    settings: Optional[EngineSettings] = None,
    *,
    redirections_only: bool = False,
) -> ProviderResult:
    """Apply a single provider's rule groups to a URL.

    The caller decides applicability (see ``matcher``); this function only
    transforms.

    Args:
        url: URL to transform
        provider: Provider or its compiled form
        settings: Engine settings; defaults apply when None
        redirections_only: Only evaluate redirections (forced redirection
            while the engine is globally disabled)

    Returns:
        ProviderResult with the new URL, the number of rules applied and
        the redirected/blocked flags
    """
    compiled = provider if isinstance(provider, CompiledProvider) else compile_provider(provider)[0]
    settings = settings or EngineSettings()

    if redirections_only:
        target = find_redirection(url, compiled)
        if target is None:
            return ProviderResult(url=url)
        return ProviderResult(url=target, redirected=True)

    if compiled.provider.complete_provider and settings.domain_blocking:
        return ProviderResult(url=url, applied_count=1, blocked=True)

    applied = 0
    for group in settings.rule_group_order:
        if group == RuleGroup.REDIRECTIONS:
            target = find_redirection(url, compiled)
            if target is not None:
                logger.debug(f"{compiled.id}: redirect {url} -> {target}")
                return ProviderResult(url=target, applied_count=applied, redirected=True)

        elif group == RuleGroup.RAW_RULES:
            url, changed = apply_raw_rules(url, compiled)
            if changed:
                applied += 1

        elif group == RuleGroup.PARAMETERS:
            url, removed = strip_tracking_parameters(url, compiled, settings)
            applied += removed

    return ProviderResult(url=url, applied_count=applied)
