"""Core data models for linkscrub.

This module defines the data structures shared by the cleaning engine, the
rule store and the provider editor: providers, rule-set snapshots,
whitelist entries, request contexts, diagnostics and cleaning results.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

from linkscrub.core.constants import (
    CleanOutcome,
    DiagnosticKind,
    RuleGroup,
    RuleSource,
    DEFAULT_RULE_GROUP_ORDER,
    DEFAULTS,
)


# ============================================================================
# Provider Model
# ============================================================================

@dataclass(frozen=True)
class Provider:
    """A named rule bundle targeting URLs that match ``url_pattern``.

    Instances are immutable; editing produces a new Provider via
    :meth:`with_changes`.
    """
    id: str
    url_pattern: str
    enabled: bool = True
    complete_provider: bool = False
    force_redirection: bool = False
    rules: tuple[str, ...] = ()
    raw_rules: tuple[str, ...] = ()
    referral_marketing: tuple[str, ...] = ()
    exceptions: tuple[str, ...] = ()
    redirections: tuple[str, ...] = ()
    methods: tuple[str, ...] = ()
    resource_types: tuple[str, ...] = ()

    def with_changes(self, **changes: Any) -> "Provider":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def same_rules(self, other: "Provider") -> bool:
        """Compare everything except the id."""
        return self.to_dict() == other.to_dict()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the rule-source record format (without the id)."""
        data: dict[str, Any] = {"urlPattern": self.url_pattern}
        if not self.enabled:
            data["enabled"] = False
        if self.complete_provider:
            data["completeProvider"] = True
        if self.force_redirection:
            data["forceRedirection"] = True
        groups = {
            "rules": self.rules,
            "rawRules": self.raw_rules,
            "referralMarketing": self.referral_marketing,
            "exceptions": self.exceptions,
            "redirections": self.redirections,
            "methods": self.methods,
            "resourceTypes": self.resource_types,
        }
        for key, values in groups.items():
            if values:
                data[key] = list(values)
        return data


# ============================================================================
# Snapshot Model
# ============================================================================

@dataclass(frozen=True)
class RuleSetSnapshot:
    """Immutable, versioned view of all active providers.

    Provider order is the declared cleaning order. Each provider id carries
    the tag of the source it was materialized from.
    """
    version: int
    providers: tuple[Provider, ...]
    sources: Mapping[str, RuleSource]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def build(
        cls,
        providers: list[Provider],
        sources: Mapping[str, RuleSource],
        *,
        version: int = 1,
    ) -> "RuleSetSnapshot":
        """Create a snapshot, freezing the provider list and source map."""
        ids = [p.id for p in providers]
        if len(ids) != len(set(ids)):
            raise ValueError("Snapshot provider ids must be unique")
        frozen_sources = MappingProxyType({pid: RuleSource(sources[pid]) for pid in ids})
        return cls(version=version, providers=tuple(providers), sources=frozen_sources)

    @classmethod
    def empty(cls) -> "RuleSetSnapshot":
        return cls.build([], {}, version=0)

    def get(self, provider_id: str) -> Optional[Provider]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def source_of(self, provider_id: str) -> Optional[RuleSource]:
        return self.sources.get(provider_id)

    @property
    def ids(self) -> list[str]:
        return [p.id for p in self.providers]

    def __len__(self) -> int:
        return len(self.providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter(self.providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self.sources


# ============================================================================
# Whitelist Model
# ============================================================================

@dataclass(frozen=True)
class WhitelistEntry:
    """Host/domain exemption pattern."""
    pattern: str
    enabled: bool = True


# ============================================================================
# Request Context Model
# ============================================================================

@dataclass(frozen=True)
class RequestContext:
    """Optional information about the request a URL belongs to.

    ``context_urls`` are the document, origin, tab or frame URLs the request
    was issued from. A request is whitelisted if any of them is.
    """
    method: Optional[str] = None
    resource_type: Optional[str] = None
    context_urls: tuple[str, ...] = ()


# ============================================================================
# Engine Settings Model
# ============================================================================

@dataclass(frozen=True)
class EngineSettings:
    """Global toggles consulted by the cleaning engine."""
    enabled: bool = DEFAULTS["enabled"]
    referral_marketing: bool = DEFAULTS["referral_marketing"]
    domain_blocking: bool = DEFAULTS["domain_blocking"]
    skip_local_hosts: bool = DEFAULTS["skip_local_hosts"]
    statistics: bool = DEFAULTS["statistics"]
    max_passes: int = DEFAULTS["max_passes"]
    rule_group_order: tuple[RuleGroup, ...] = DEFAULT_RULE_GROUP_ORDER

    def __post_init__(self) -> None:
        if self.max_passes < 1:
            raise ValueError("max_passes must be at least 1")
        if sorted(g.value for g in self.rule_group_order) != sorted(g.value for g in RuleGroup):
            raise ValueError("rule_group_order must list every rule group exactly once")


# ============================================================================
# Configuration Models
# ============================================================================

@dataclass(frozen=True)
class RemoteSource:
    """Remote rule document location.

    The document is only accepted when its SHA-256 digest equals ``sha256``
    or the digest published at ``hash_url``.
    """
    name: str
    url: str
    hash_url: Optional[str] = None
    sha256: Optional[str] = None


@dataclass
class AppConfig:
    """Complete application configuration."""
    settings: EngineSettings = field(default_factory=EngineSettings)
    remote_sources: list[RemoteSource] = field(default_factory=list)
    fetch_timeout: float = DEFAULTS["fetch_timeout"]
    data_dir: Optional[Path] = None
    statistics_log: Optional[Path] = None


# ============================================================================
# Diagnostics and Results
# ============================================================================

@dataclass(frozen=True)
class Diagnostic:
    """Structured non-fatal anomaly."""
    kind: DiagnosticKind
    message: str
    provider_id: Optional[str] = None
    pattern: Optional[str] = None
    field: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "provider_id": self.provider_id,
            "pattern": self.pattern,
            "field": self.field,
        }


@dataclass(frozen=True)
class ProviderResult:
    """Result of applying one provider to one URL."""
    url: str
    applied_count: int = 0
    redirected: bool = False
    blocked: bool = False


@dataclass
class CleanResult:
    """Result of a full cleaning request."""
    original_url: str
    final_url: str
    applied_count: int = 0
    outcome: CleanOutcome = CleanOutcome.CLEANED
    passes: int = 0
    whitelisted: bool = False
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.outcome == CleanOutcome.BLOCKED

    @property
    def changed(self) -> bool:
        return self.final_url != self.original_url

    def to_dict(self) -> dict[str, Any]:
        """Boundary representation consumed by external callers."""
        return {
            "finalUrl": self.final_url,
            "appliedCount": self.applied_count,
            "blocked": self.blocked,
        }


@dataclass(frozen=True)
class StatsEvent:
    """Statistics record emitted for each clean or block."""
    count: int
    blocked: bool
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "blocked": self.blocked,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SelfTestResult:
    """Outcome of the self-test."""
    dirty_url: str
    expected_url: str
    actual_url: str

    @property
    def passed(self) -> bool:
        return self.actual_url == self.expected_url
