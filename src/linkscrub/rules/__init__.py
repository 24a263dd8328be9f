"""Rule sources: parsing, storage and remote fetching of providers."""

from linkscrub.rules.parser import (
    RuleDocument,
    compile_pattern,
    dump_providers,
    load_rule_file,
    parse_provider,
    parse_rule_document,
    parse_rule_text,
    validate_provider,
)
from linkscrub.rules.store import (
    RuleStore,
    load_bundled_rules,
    overlay_providers,
)
from linkscrub.rules.remote import (
    FetchReport,
    FetchedSource,
    RemoteRuleFetcher,
)


__all__ = [
    # Parser
    "RuleDocument",
    "compile_pattern",
    "dump_providers",
    "load_rule_file",
    "parse_provider",
    "parse_rule_document",
    "parse_rule_text",
    "validate_provider",
    # Store
    "RuleStore",
    "load_bundled_rules",
    "overlay_providers",
    # Remote
    "FetchReport",
    "FetchedSource",
    "RemoteRuleFetcher",
]
