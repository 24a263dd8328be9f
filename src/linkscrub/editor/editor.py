"""Provider editor.

This module provides the ProviderEditor class: CRUD over the custom
provider layer through an in-session draft, per-field pattern validation,
save/discard with unsaved-change tracking, and import exclusion management.

Nothing the editor does affects cleaning until ``save()`` (or a committed
import) publishes a new snapshot.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

if TYPE_CHECKING:
    from linkscrub.rules.remote import FetchReport

from linkscrub.core.constants import EditorState, RuleSource
from linkscrub.core.exceptions import (
    EditorError,
    ProviderExistsError,
    ProviderNotFoundError,
    RuleSourceError,
)
from linkscrub.core.models import Provider, RuleSetSnapshot
from linkscrub.editor.importer import ImportSession, next_free_id
from linkscrub.engine.driver import Engine
from linkscrub.rules.parser import RECORD_FIELDS, parse_provider, validate_provider
from linkscrub.rules.store import RuleStore, source_key


logger = logging.getLogger(__name__)


@dataclass
class SaveReport:
    """Outcome of ``ProviderEditor.save``."""
    saved: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    blocked: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    snapshot: Optional[RuleSetSnapshot] = None

    @property
    def ok(self) -> bool:
        return not self.blocked


class ProviderEditor:
    """Edits the custom provider layer of a RuleStore.

    State machine: ``clean -> editing -> (save | discard) -> clean``. A save
    that leaves invalid providers in the draft stays in ``editing``.

    Example:
        >>> editor = ProviderEditor(store, engine)
        >>> editor.create_provider("shop", {"urlPattern": "shop\\\\.example", "rules": ["ref"]})
        >>> editor.save()
    """

    def __init__(self, store: RuleStore, engine: Optional[Engine] = None):
        self.store = store
        self.engine = engine
        self._saved: dict[str, Provider] = {p.id: p for p in store.providers(RuleSource.CUSTOM)}
        self._draft: dict[str, Provider] = dict(self._saved)
        self._dirty = False

    # ========================================================================
    # State
    # ========================================================================

    @property
    def state(self) -> EditorState:
        return EditorState.EDITING if self._dirty else EditorState.CLEAN

    @property
    def has_unsaved_changes(self) -> bool:
        return self._dirty

    @property
    def needs_save_prompt(self) -> bool:
        """Whether leaving the editor now should ask to save or discard."""
        return self._dirty

    @property
    def draft(self) -> list[Provider]:
        return list(self._draft.values())

    def validation_errors(self) -> dict[str, dict[str, list[str]]]:
        """Per-provider, per-field pattern errors of the draft."""
        errors = {}
        for provider in self._draft.values():
            provider_errors = validate_provider(provider)
            if provider_errors:
                errors[provider.id] = provider_errors
        return errors

    def _touch(self) -> None:
        self._dirty = True

    # ========================================================================
    # Queries
    # ========================================================================

    def list_providers(self, source: Union[RuleSource, str] = RuleSource.CUSTOM) -> list[Provider]:
        """List providers of one source; the custom source shows the draft."""
        if RuleSource(source) == RuleSource.CUSTOM:
            return self.draft
        return self.store.providers(source)

    def get_provider(self, provider_id: str) -> Provider:
        """Draft provider by id.

        Raises:
            ProviderNotFoundError: If the draft has no such provider
        """
        try:
            return self._draft[provider_id]
        except KeyError:
            raise ProviderNotFoundError(f"Custom provider '{provider_id}' not found") from None

    def find_draft(self, provider_id: str) -> Optional[Provider]:
        return self._draft.get(provider_id)

    def _find_any(self, provider_id: str) -> Provider:
        if provider_id in self._draft:
            return self._draft[provider_id]
        for source in (RuleSource.REMOTE, RuleSource.BUNDLED):
            for provider in self.store.providers(source):
                if provider.id == provider_id:
                    return provider
        raise ProviderNotFoundError(f"Provider '{provider_id}' not found")

    # ========================================================================
    # Draft Mutation
    # ========================================================================

    @staticmethod
    def _build(provider_id: str, record: Mapping[str, Any]) -> Provider:
        unknown = set(record) - RECORD_FIELDS
        if unknown:
            raise EditorError(f"Unknown provider fields: {', '.join(sorted(unknown))}")
        try:
            return parse_provider(provider_id, dict(record))
        except RuleSourceError as e:
            raise EditorError(str(e)) from e

    def create_provider(self, provider_id: str, data: Union[Provider, Mapping[str, Any]]) -> Provider:
        """Add a new custom provider to the draft.

        Raises:
            ProviderExistsError: If the draft already has this id
            EditorError: If the record is unusable
        """
        provider_id = provider_id.strip()
        if not provider_id:
            raise EditorError("Provider id must not be empty")
        if provider_id in self._draft:
            raise ProviderExistsError(f"Custom provider '{provider_id}' already exists")

        if isinstance(data, Provider):
            provider = data.with_changes(id=provider_id)
        else:
            provider = self._build(provider_id, data)

        self._draft[provider_id] = provider
        self._touch()
        return provider

    def edit_provider(self, provider_id: str, patch: Mapping[str, Any]) -> Provider:
        """Apply a record-format patch to a provider.

        Editing a bundled or remote provider creates a custom override with
        the same id.

        Returns:
            The edited draft provider; check ``validation_errors`` for
            patterns that do not compile
        """
        current = self._find_any(provider_id)
        record = current.to_dict()
        record.update(patch)
        provider = self._build(provider_id, record)
        self._draft[provider_id] = provider
        self._touch()

        errors = validate_provider(provider)
        if errors:
            logger.debug(f"Draft provider {provider_id} has invalid fields: {sorted(errors)}")
        return provider

    def delete_provider(self, provider_id: str) -> None:
        if provider_id not in self._draft:
            raise ProviderNotFoundError(f"Custom provider '{provider_id}' not found")
        del self._draft[provider_id]
        self._touch()

    def duplicate_provider(self, provider_id: str, new_id: Optional[str] = None) -> Provider:
        """Copy a provider (from any source) into the draft under a new id."""
        source = self._find_any(provider_id)
        new_id = new_id or next_free_id(provider_id, self._draft)
        return self.create_provider(new_id, source)

    def rename_provider(self, old_id: str, new_id: str) -> Provider:
        """Rename a draft provider, keeping its position."""
        provider = self.get_provider(old_id)
        new_id = new_id.strip()
        if not new_id:
            raise EditorError("Provider id must not be empty")
        if new_id == old_id:
            return provider
        if new_id in self._draft:
            raise ProviderExistsError(f"Custom provider '{new_id}' already exists")

        renamed = provider.with_changes(id=new_id)
        self._draft = {
            (new_id if pid == old_id else pid): (renamed if pid == old_id else p)
            for pid, p in self._draft.items()
        }
        self._touch()
        return renamed

    def put_provider(self, provider: Provider) -> None:
        """Insert or replace a draft provider, keeping its position."""
        self._draft[provider.id] = provider
        self._touch()

    # ========================================================================
    # Save / Discard
    # ========================================================================

    def publish(self) -> RuleSetSnapshot:
        """Build a snapshot from the store and hand it to the engine."""
        snapshot = self.store.build_snapshot()
        if self.engine is not None:
            self.engine.reload(snapshot)
        return snapshot

    def save(self) -> SaveReport:
        """Persist valid draft providers and publish a new snapshot.

        Providers with invalid patterns are not saved; their last saved
        version (if any) stays active and the draft keeps the edit.
        """
        report = SaveReport()
        errors = self.validation_errors()
        committed: list[Provider] = []

        for provider_id, provider in self._draft.items():
            if provider_id in errors:
                report.blocked[provider_id] = errors[provider_id]
                if provider_id in self._saved:
                    committed.append(self._saved[provider_id])
                continue
            committed.append(provider)
            if self._saved.get(provider_id) != provider:
                report.saved.append(provider_id)

        report.removed = [pid for pid in self._saved if pid not in self._draft]

        self.store.set_custom(committed)
        self._saved = {p.id: p for p in committed}
        self._dirty = bool(report.blocked)
        report.snapshot = self.publish()

        if report.blocked:
            logger.warning(f"Not saved (invalid patterns): {', '.join(report.blocked)}")
        logger.info(
            f"Saved {len(report.saved)} provider(s), removed {len(report.removed)}, "
            f"snapshot v{report.snapshot.version}"
        )
        return report

    def discard(self) -> None:
        """Throw away every unsaved draft change."""
        self._draft = dict(self._saved)
        self._dirty = False

    # ========================================================================
    # Import Exclusions
    # ========================================================================

    def exclude(self, source: Union[RuleSource, str], provider_id: str) -> None:
        """Opt out of a provider from a source.

        The provider stops being imported from that source and any custom
        provider with the same id is removed.
        """
        excluded = self.store.exclusions(source)
        excluded.add(provider_id)
        self.store.set_exclusions(source, excluded)
        self._remove_custom(provider_id)
        self.publish()
        logger.info(f"Excluded {provider_id} from {source_key(source)}")

    def restore_exclusion(self, source: Union[RuleSource, str], provider_id: str) -> bool:
        excluded = self.store.exclusions(source)
        if provider_id not in excluded:
            return False
        excluded.discard(provider_id)
        self.store.set_exclusions(source, excluded)
        self.publish()
        return True

    def clear_exclusions(self, source: Union[RuleSource, str]) -> int:
        excluded = self.store.exclusions(source)
        self.store.set_exclusions(source, set())
        self.publish()
        return len(excluded)

    def _remove_custom(self, provider_id: str) -> None:
        self._draft.pop(provider_id, None)
        if provider_id in self._saved:
            del self._saved[provider_id]
            self.store.set_custom(self._saved.values())

    # ========================================================================
    # Import
    # ========================================================================

    def open_import(
        self,
        fetch_report: Optional["FetchReport"] = None,
        extra_sources: Optional[Mapping[str, list[Provider]]] = None,
    ) -> ImportSession:
        """Start an import session over the available rule sources.

        Args:
            fetch_report: Result of a remote fetch. When given, only sources
                that were fetched successfully are offered; otherwise the
                cached remote layer is used.
            extra_sources: Additional named sources, e.g. a rule file
        """
        sources: dict[str, list[Provider]] = {
            RuleSource.BUNDLED.value: self.store.providers(RuleSource.BUNDLED),
        }
        diagnostics = []
        if fetch_report is not None:
            remote = fetch_report.merged_providers()
            diagnostics = list(fetch_report.diagnostics)
        else:
            remote = self.store.providers(RuleSource.REMOTE)
        if remote:
            sources[RuleSource.REMOTE.value] = remote
        for name, providers in (extra_sources or {}).items():
            sources[source_key(name)] = list(providers)

        return ImportSession(self, sources, diagnostics=diagnostics)
