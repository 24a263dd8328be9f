"""Cleaning engine.

This package provides the hot path of linkscrub: whitelist gate, provider
matching, the per-provider transformer and the fixpoint driver.
"""

from linkscrub.engine.driver import (
    ActiveState,
    Engine,
    StatisticsSink,
    self_test,
)
from linkscrub.engine.matcher import (
    CompiledProvider,
    CompiledRuleSet,
    compile_provider,
    compile_snapshot,
    match_providers,
)
from linkscrub.engine.transformer import apply_provider
from linkscrub.engine.whitelist import (
    Whitelist,
    is_valid_pattern,
    whitelist_stats,
)


__all__ = [
    # Driver
    "ActiveState",
    "Engine",
    "StatisticsSink",
    "self_test",
    # Matching
    "CompiledProvider",
    "CompiledRuleSet",
    "compile_provider",
    "compile_snapshot",
    "match_providers",
    # Transformer
    "apply_provider",
    # Whitelist
    "Whitelist",
    "is_valid_pattern",
    "whitelist_stats",
]
