"""Constants used throughout linkscrub.

This module contains enums, default values, and static configurations
to ensure consistency across the application.
"""

from enum import Enum


class RuleSource(str, Enum):
    """Origin of a provider definition."""
    BUNDLED = "bundled"
    REMOTE = "remote"
    CUSTOM = "custom"


class CleanOutcome(str, Enum):
    """Terminal state of a cleaning request."""
    CLEANED = "cleaned"
    BLOCKED = "blocked"
    LOOP_LIMIT_HIT = "loop_limit_hit"
    BYPASSED = "bypassed"


class DiagnosticKind(str, Enum):
    """Kinds of non-fatal anomalies surfaced to callers."""
    INVALID_PATTERN = "invalid_pattern"
    MALFORMED_URL = "malformed_url"
    IMPORT_CONFLICT = "import_conflict"
    FIXPOINT_LIMIT_REACHED = "fixpoint_limit_reached"
    SOURCE_UNAVAILABLE = "source_unavailable"


class RuleGroup(str, Enum):
    """Orderable rule-group steps of the cleaning transformer."""
    REDIRECTIONS = "redirections"
    RAW_RULES = "raw_rules"
    PARAMETERS = "parameters"


class ImportClassification(str, Enum):
    """Preview classification of an import candidate."""
    NEW = "new"
    CONFLICT = "conflict"
    EXCLUDED = "excluded"
    IDENTICAL = "identical"


class ConflictDecision(str, Enum):
    """User decision for a conflicting import candidate."""
    OVERWRITE = "overwrite"
    SKIP = "skip"
    RENAME_AND_ADD = "rename-and-add"


class ImportOutcome(str, Enum):
    """What commit does with a selected provider id."""
    NEW = "new"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class EditorState(str, Enum):
    """Provider editor state machine."""
    CLEAN = "clean"
    EDITING = "editing"


# Overlay order when materializing a snapshot; later sources win.
SOURCE_PRECEDENCE = (RuleSource.BUNDLED, RuleSource.REMOTE, RuleSource.CUSTOM)

DEFAULT_RULE_GROUP_ORDER = (
    RuleGroup.REDIRECTIONS,
    RuleGroup.RAW_RULES,
    RuleGroup.PARAMETERS,
)

# Provider fields holding regular expressions, keyed by rule-source name.
PATTERN_FIELDS = (
    "urlPattern",
    "rules",
    "rawRules",
    "referralMarketing",
    "exceptions",
    "redirections",
)

# Private, loopback, link-local and carrier-grade NAT ranges
LOCAL_NETWORKS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "100.64.0.0/10",
    "169.254.0.0/16",
    "127.0.0.0/8",
    "::1/128",
    "fc00::/7",
    "fe80::/10",
)

SELF_TEST_DIRTY_URL = "https://example.org/?utm_source=selftest"
SELF_TEST_CLEAN_URL = "https://example.org/"

# Application-wide defaults
DEFAULTS = {
    "max_passes": 8,
    "fetch_timeout": 15.0,
    "enabled": True,
    "referral_marketing": False,
    "domain_blocking": True,
    "skip_local_hosts": True,
    "statistics": True,
}
