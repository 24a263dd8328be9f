"""Cleaning engine.

This module provides the Engine class, the single entry point of the
cleaning hot path. It owns the active rule set, whitelist and settings as
one immutable record that is replaced atomically on reload, so a cleaning
request always sees exactly one consistent version of each.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol, Union, runtime_checkable

from linkscrub.core.constants import (
    CleanOutcome,
    DiagnosticKind,
    SELF_TEST_CLEAN_URL,
    SELF_TEST_DIRTY_URL,
)
from linkscrub.core.exceptions import MalformedURLError
from linkscrub.core.models import (
    CleanResult,
    Diagnostic,
    EngineSettings,
    Provider,
    ProviderResult,
    RequestContext,
    RuleSetSnapshot,
    SelfTestResult,
    StatsEvent,
    WhitelistEntry,
)
from linkscrub.engine.matcher import CompiledRuleSet, compile_snapshot, match_compiled
from linkscrub.engine.transformer import apply_provider
from linkscrub.engine.urltools import is_local_host, normalize_host, split_absolute
from linkscrub.engine.whitelist import Whitelist


logger = logging.getLogger(__name__)


@runtime_checkable
class StatisticsSink(Protocol):
    """Receiver of per-request statistics events."""

    def record(self, event: StatsEvent) -> None:
        ...


@dataclass(frozen=True)
class ActiveState:
    """Everything a cleaning request reads, published as one value."""
    ruleset: CompiledRuleSet
    whitelist: Whitelist
    settings: EngineSettings


def _resolve_sink(
    sink: Union[StatisticsSink, Callable[[StatsEvent], None], None],
) -> Optional[Callable[[StatsEvent], None]]:
    if sink is None:
        return None
    if isinstance(sink, StatisticsSink):
        return sink.record
    if callable(sink):
        return sink
    raise TypeError(f"Statistics sink must provide record() or be callable, got {type(sink).__name__}")


class Engine:
    """Rule-driven URL cleaning engine.

    ``clean()`` is safe to call from many threads at once. Reloads build the
    new compiled state off to the side and publish it with one assignment;
    a request started before the swap finishes on the state it started with.

    Example:
        >>> engine = Engine(store.build_snapshot(), store.whitelist_entries())
        >>> engine.clean("https://example.com/?utm_source=x&id=1").final_url
        'https://example.com/?id=1'
    """

    def __init__(
        self,
        snapshot: Optional[RuleSetSnapshot] = None,
        whitelist: Iterable[Union[WhitelistEntry, str]] = (),
        settings: Optional[EngineSettings] = None,
        *,
        stats_sink: Union[StatisticsSink, Callable[[StatsEvent], None], None] = None,
    ):
        """Initialize the engine.

        Args:
            snapshot: Initial rule set; empty when None
            whitelist: Whitelist entries or bare patterns
            settings: Global toggles; defaults when None
            stats_sink: Optional statistics receiver, either an object with
                ``record(event)`` or a plain callable
        """
        self._lock = threading.Lock()
        self._emit = _resolve_sink(stats_sink)
        self._state = ActiveState(
            ruleset=compile_snapshot(snapshot or RuleSetSnapshot.empty()),
            whitelist=whitelist if isinstance(whitelist, Whitelist) else Whitelist(whitelist),
            settings=settings or EngineSettings(),
        )

    # ========================================================================
    # State Publication
    # ========================================================================

    @property
    def state(self) -> ActiveState:
        return self._state

    @property
    def snapshot(self) -> RuleSetSnapshot:
        return self._state.ruleset.snapshot

    @property
    def settings(self) -> EngineSettings:
        return self._state.settings

    @property
    def whitelist(self) -> Whitelist:
        return self._state.whitelist

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        """Invalid-pattern diagnostics of the active rule set."""
        return self._state.ruleset.diagnostics

    def reload(self, snapshot: RuleSetSnapshot) -> tuple[Diagnostic, ...]:
        """Compile and publish a new snapshot.

        Returns:
            Diagnostics for patterns that failed to compile
        """
        ruleset = compile_snapshot(snapshot)
        with self._lock:
            current = self._state
            self._state = ActiveState(ruleset, current.whitelist, current.settings)
        logger.info(f"Published rule set v{snapshot.version} ({len(snapshot)} providers)")
        return ruleset.diagnostics

    def set_whitelist(self, entries: Iterable[Union[WhitelistEntry, str]]) -> None:
        whitelist = Whitelist(entries)
        with self._lock:
            current = self._state
            self._state = ActiveState(current.ruleset, whitelist, current.settings)
        logger.debug(f"Published whitelist ({len(whitelist)} entries)")

    def configure(self, settings: EngineSettings) -> None:
        with self._lock:
            current = self._state
            self._state = ActiveState(current.ruleset, current.whitelist, settings)

    # ========================================================================
    # Queries
    # ========================================================================

    def is_whitelisted(self, url: str, request_context: Optional[RequestContext] = None) -> bool:
        return self._state.whitelist.is_whitelisted(url, request_context)

    def match_providers(self, url: str, request_context: Optional[RequestContext] = None) -> list[Provider]:
        return [cp.provider for cp in match_compiled(url, self._state.ruleset, request_context)]

    # ========================================================================
    # Cleaning
    # ========================================================================

    def clean(self, url: str, request_context: Optional[RequestContext] = None) -> CleanResult:
        """Clean a single URL.

        Never raises for bad input; problems are reported as diagnostics on
        the result.

        Args:
            url: Absolute URL to clean
            request_context: Optional method, resource type and page URLs

        Returns:
            CleanResult with the final URL, applied count and outcome
        """
        state = self._state
        result = self._clean(url, request_context, state, honor_whitelist=True)
        self._record(result, state.settings)
        return result

    def clean_many(
        self,
        urls: Iterable[str],
        request_context: Optional[RequestContext] = None,
    ) -> list[CleanResult]:
        """Clean several URLs against the same published state."""
        state = self._state
        results = []
        for url in urls:
            result = self._clean(url, request_context, state, honor_whitelist=True)
            self._record(result, state.settings)
            results.append(result)
        return results

    def _clean(
        self,
        url: str,
        request_context: Optional[RequestContext],
        state: ActiveState,
        *,
        honor_whitelist: bool,
    ) -> CleanResult:
        result = CleanResult(original_url=url, final_url=url)

        try:
            parsed = split_absolute(url)
        except MalformedURLError as e:
            result.outcome = CleanOutcome.BYPASSED
            result.diagnostics.append(Diagnostic(kind=DiagnosticKind.MALFORMED_URL, message=str(e)))
            return result

        if honor_whitelist and state.whitelist.is_whitelisted(url, request_context):
            result.outcome = CleanOutcome.BYPASSED
            result.whitelisted = True
            return result

        settings = state.settings
        if settings.skip_local_hosts and is_local_host(normalize_host(parsed.hostname)):
            result.outcome = CleanOutcome.BYPASSED
            return result

        current = url
        for pass_number in range(1, settings.max_passes + 1):
            result.passes = pass_number
            step = self._run_pass(current, request_context, state, result.diagnostics)
            result.applied_count += step.applied_count

            if step.blocked:
                result.outcome = CleanOutcome.BLOCKED
                result.final_url = url
                return result

            if step.url == current and not step.redirected:
                break
            current = step.url
            result.final_url = current

            if step.redirected and honor_whitelist and state.whitelist.is_whitelisted(current):
                result.whitelisted = True
                break
        else:
            result.outcome = CleanOutcome.LOOP_LIMIT_HIT
            result.diagnostics.append(Diagnostic(
                kind=DiagnosticKind.FIXPOINT_LIMIT_REACHED,
                message=f"URL still changing after {settings.max_passes} passes",
            ))
            logger.warning(f"Pass limit ({settings.max_passes}) reached while cleaning {url}")

        return result

    def _run_pass(
        self,
        url: str,
        request_context: Optional[RequestContext],
        state: ActiveState,
        diagnostics: list[Diagnostic],
    ) -> ProviderResult:
        """Run every applicable provider once, in snapshot order."""
        settings = state.settings
        applied = 0

        for compiled in state.ruleset.providers:
            if not settings.enabled and not compiled.provider.force_redirection:
                continue
            if not compiled.applies(url, request_context):
                continue

            try:
                step = apply_provider(url, compiled, settings, redirections_only=not settings.enabled)
            except (re.error, RecursionError, ValueError) as e:
                logger.warning(f"Provider {compiled.id} failed on {url}: {e}")
                diagnostics.append(Diagnostic(
                    kind=DiagnosticKind.INVALID_PATTERN,
                    message=str(e),
                    provider_id=compiled.id,
                ))
                continue

            applied += step.applied_count
            if step.blocked:
                logger.debug(f"{compiled.id}: blocked {url}")
                return ProviderResult(url=url, applied_count=applied, blocked=True)
            if step.redirected:
                return ProviderResult(url=step.url, applied_count=applied, redirected=True)
            url = step.url

        return ProviderResult(url=url, applied_count=applied)

    def _record(self, result: CleanResult, settings: EngineSettings) -> None:
        if self._emit is None or not settings.statistics:
            return
        if result.outcome == CleanOutcome.BYPASSED:
            return
        if not result.changed and not result.blocked:
            return
        event = StatsEvent(
            count=result.applied_count,
            blocked=result.blocked,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self._emit(event)
        except Exception as e:
            logger.warning(f"Statistics sink failed: {e}")


def self_test(engine: Engine) -> SelfTestResult:
    """Clean a known tracking URL and compare with the expected result.

    Runs against the published rules without consulting the whitelist and
    without emitting statistics.
    """
    state = engine.state
    result = engine._clean(SELF_TEST_DIRTY_URL, None, state, honor_whitelist=False)
    outcome = SelfTestResult(
        dirty_url=SELF_TEST_DIRTY_URL,
        expected_url=SELF_TEST_CLEAN_URL,
        actual_url=result.final_url,
    )
    if outcome.passed:
        logger.info("Self-test passed")
    else:
        logger.error(f"Self-test failed: got {outcome.actual_url!r}, expected {outcome.expected_url!r}")
    return outcome
