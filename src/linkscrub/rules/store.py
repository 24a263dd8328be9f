"""Rule provider storage for linkscrub.

This module manages the three provider layers (bundled, remote, custom),
the per-source import exclusions and the whitelist, persists the mutable
parts as JSON under the data directory, and materializes them into
immutable RuleSetSnapshot objects.

Files under the data directory::

    custom_rules.json       user-authored and imported providers
    import_exclusions.json  {"bundled": [...], "remote": [...], "<file>": [...]}
    whitelist.json          ordered list of whitelist patterns
    remote_rules.json       last verified remote rule document
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from linkscrub.core.constants import RuleSource, SOURCE_PRECEDENCE
from linkscrub.core.exceptions import InvalidPatternError, RuleSourceError, StorageError
from linkscrub.core.models import Provider, RuleSetSnapshot, WhitelistEntry
from linkscrub.engine.whitelist import parse_pattern, whitelist_stats
from linkscrub.rules.parser import dump_providers, load_rule_file, parse_rule_document


logger = logging.getLogger(__name__)

BUNDLED_RULES_PATH = Path(__file__).parent / "data" / "bundled_rules.json"

CUSTOM_RULES_FILE = "custom_rules.json"
EXCLUSIONS_FILE = "import_exclusions.json"
WHITELIST_FILE = "whitelist.json"
REMOTE_CACHE_FILE = "remote_rules.json"


def source_key(source: RuleSource | str) -> str:
    """Plain string key of a rule source name."""
    return source.value if isinstance(source, RuleSource) else str(source)


def load_bundled_rules(path: Path = BUNDLED_RULES_PATH) -> list[Provider]:
    """Load the rule document shipped with the package.

    Raises:
        RuleSourceError: If the bundled document is missing or invalid
    """
    return load_rule_file(path).providers


def overlay_providers(layers: Iterable[Iterable[Provider]]) -> tuple[list[Provider], dict[str, int]]:
    """Merge provider layers by id; later layers win.

    An overriding provider keeps the position of the one it replaces; new
    ids are appended in layer order.

    Returns:
        Tuple of (merged providers, index of the winning layer per id)
    """
    merged: dict[str, Provider] = {}
    winner: dict[str, int] = {}
    for index, layer in enumerate(layers):
        for provider in layer:
            merged[provider.id] = provider
            winner[provider.id] = index
    return list(merged.values()), winner


class RuleStore:
    """Manages provider layers, import exclusions and the whitelist.

    The store is the editor's working set; the engine only ever sees the
    snapshots it builds.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        *,
        bundled: Optional[list[Provider]] = None,
    ):
        """Initialize the store.

        Args:
            data_dir: Directory for persistent state. Nothing is written to
                disk when None.
            bundled: Bundled providers; loaded from package data when None
        """
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self._bundled: list[Provider] = list(bundled) if bundled is not None else load_bundled_rules()
        self._remote: list[Provider] = []
        self._custom: list[Provider] = []
        self._exclusions: dict[str, set[str]] = {
            RuleSource.BUNDLED.value: set(),
            RuleSource.REMOTE.value: set(),
        }
        self._whitelist: list[str] = []
        self._version = 0

    # ========================================================================
    # Persistence
    # ========================================================================

    def _path(self, filename: str) -> Optional[Path]:
        return self.data_dir / filename if self.data_dir is not None else None

    def _read_json(self, filename: str) -> Any:
        path = self._path(filename)
        if path is None or not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt state file {path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def _write_json(self, filename: str, data: Any) -> None:
        path = self._path(filename)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def load(self) -> "RuleStore":
        """Load custom rules, exclusions, whitelist and the remote cache.

        Missing files leave the corresponding state empty.

        Raises:
            StorageError: If a state file exists but cannot be read
        """
        custom = self._read_json(CUSTOM_RULES_FILE)
        if custom is not None:
            try:
                self._custom = parse_rule_document(custom).providers
            except RuleSourceError as e:
                raise StorageError(f"Invalid custom rules: {e}") from e

        remote = self._read_json(REMOTE_CACHE_FILE)
        if remote is not None:
            try:
                self._remote = parse_rule_document(remote).providers
            except RuleSourceError as e:
                logger.warning(f"Ignoring invalid remote rule cache: {e}")

        exclusions = self._read_json(EXCLUSIONS_FILE) or {}
        if not isinstance(exclusions, dict):
            raise StorageError("Import exclusions must be a mapping of source to ids")
        for source, ids in exclusions.items():
            if source != RuleSource.CUSTOM.value and isinstance(ids, list):
                self._exclusions[str(source)] = {str(i) for i in ids}

        whitelist = self._read_json(WHITELIST_FILE) or []
        if not isinstance(whitelist, list):
            raise StorageError("Whitelist must be a list of patterns")
        self._whitelist = [str(p) for p in whitelist]

        logger.debug(
            f"Loaded {len(self._custom)} custom, {len(self._remote)} remote providers, "
            f"{len(self._whitelist)} whitelist entries"
        )
        return self

    def save_custom(self) -> None:
        self._write_json(CUSTOM_RULES_FILE, dump_providers(self._custom))

    def save_exclusions(self) -> None:
        self._write_json(
            EXCLUSIONS_FILE,
            {source: sorted(ids) for source, ids in self._exclusions.items()},
        )

    def save_whitelist(self) -> None:
        self._write_json(WHITELIST_FILE, list(self._whitelist))

    # ========================================================================
    # Provider Layers
    # ========================================================================

    def providers(self, source: RuleSource | str) -> list[Provider]:
        """List the providers of one layer, in declared order."""
        source = RuleSource(source)
        if source == RuleSource.BUNDLED:
            return list(self._bundled)
        if source == RuleSource.REMOTE:
            return list(self._remote)
        return list(self._custom)

    def get_custom(self, provider_id: str) -> Optional[Provider]:
        for provider in self._custom:
            if provider.id == provider_id:
                return provider
        return None

    def set_custom(self, providers: Iterable[Provider], *, persist: bool = True) -> None:
        """Replace the custom layer."""
        providers = list(providers)
        ids = [p.id for p in providers]
        if len(ids) != len(set(ids)):
            raise StorageError("Custom provider ids must be unique")
        self._custom = providers
        if persist:
            self.save_custom()

    def set_remote(self, providers: Iterable[Provider], metadata: Optional[dict[str, Any]] = None) -> None:
        """Replace the remote layer and cache it."""
        self._remote = list(providers)
        self._write_json(REMOTE_CACHE_FILE, dump_providers(self._remote, metadata))

    # ========================================================================
    # Import Exclusions
    # ========================================================================

    def exclusions(self, source: RuleSource | str) -> set[str]:
        return set(self._exclusions.get(source_key(source), set()))

    def exclusions_by_source(self) -> dict[str, set[str]]:
        return {source: set(ids) for source, ids in self._exclusions.items()}

    def set_exclusions(self, source: RuleSource | str, ids: Iterable[str], *, persist: bool = True) -> None:
        key = source_key(source)
        if key == RuleSource.CUSTOM.value:
            raise StorageError("Custom providers cannot be excluded")
        self._exclusions[key] = set(ids)
        if persist:
            self.save_exclusions()

    # ========================================================================
    # Snapshot
    # ========================================================================

    def build_snapshot(self) -> RuleSetSnapshot:
        """Materialize bundled < remote < custom into a new snapshot.

        Bundled and remote providers whose id is excluded for their source
        are left out before overlaying.
        """
        excluded_bundled = self.exclusions(RuleSource.BUNDLED)
        excluded_remote = self.exclusions(RuleSource.REMOTE)
        layers = {
            RuleSource.BUNDLED: [p for p in self._bundled if p.id not in excluded_bundled],
            RuleSource.REMOTE: [p for p in self._remote if p.id not in excluded_remote],
            RuleSource.CUSTOM: list(self._custom),
        }
        ordered = [layers[source] for source in SOURCE_PRECEDENCE]
        providers, winner = overlay_providers(ordered)
        sources = {pid: SOURCE_PRECEDENCE[index] for pid, index in winner.items()}

        self._version += 1
        snapshot = RuleSetSnapshot.build(providers, sources, version=self._version)
        logger.debug(f"Built snapshot v{snapshot.version} with {len(snapshot)} providers")
        return snapshot

    # ========================================================================
    # Whitelist
    # ========================================================================

    def whitelist_patterns(self) -> list[str]:
        return list(self._whitelist)

    def whitelist_entries(self) -> list[WhitelistEntry]:
        return [WhitelistEntry(pattern=p) for p in self._whitelist]

    def add_whitelist(self, pattern: str) -> bool:
        """Add a whitelist pattern.

        Returns:
            False if the pattern was already present

        Raises:
            InvalidPatternError: If the pattern is not a valid host pattern
        """
        normalized = str(pattern or "").strip().lower()
        try:
            parse_pattern(normalized)
        except ValueError as e:
            raise InvalidPatternError(pattern, str(e), field="whitelist") from e

        if normalized in self._whitelist:
            return False
        self._whitelist.append(normalized)
        self.save_whitelist()
        return True

    def remove_whitelist(self, pattern: str) -> bool:
        normalized = str(pattern or "").strip().lower()
        if normalized not in self._whitelist:
            return False
        self._whitelist.remove(normalized)
        self.save_whitelist()
        return True

    def clear_whitelist(self) -> int:
        removed = len(self._whitelist)
        self._whitelist = []
        self.save_whitelist()
        return removed

    def whitelist_stats(self) -> dict[str, int]:
        return whitelist_stats(self._whitelist)
