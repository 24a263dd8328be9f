"""Import session: copy providers from a rule source into the custom layer.

Candidates are classified against the editor's custom draft, conflicts are
resolved one id at a time, and a commit writes the result through the
editor and publishes a new snapshot.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

if TYPE_CHECKING:
    from linkscrub.editor.editor import ProviderEditor

from linkscrub.core.constants import (
    ConflictDecision,
    DiagnosticKind,
    ImportClassification,
    ImportOutcome,
    RuleSource,
)
from linkscrub.core.exceptions import EditorError, ImportConflictError, ProviderNotFoundError
from linkscrub.core.models import Diagnostic, Provider
from linkscrub.rules.store import source_key


logger = logging.getLogger(__name__)


def next_free_id(base: str, taken: Iterable[str]) -> str:
    """First ``<base>_<n>`` (n >= 1) not in ``taken``."""
    taken = set(taken)
    n = 1
    while f"{base}_{n}" in taken:
        n += 1
    return f"{base}_{n}"


@dataclass
class ImportReport:
    """What a committed import did."""
    source: str
    imported: list[str] = field(default_factory=list)
    overwritten: list[str] = field(default_factory=list)
    renamed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    snapshot_version: Optional[int] = None

    @property
    def changed(self) -> int:
        return len(self.imported) + len(self.overwritten) + len(self.renamed)


class ImportSession:
    """Browse rule sources and import providers with conflict resolution.

    Created by ``ProviderEditor.open_import``; discarded on close or commit.
    """

    def __init__(
        self,
        editor: "ProviderEditor",
        available_rule_sources: Mapping[str, list[Provider]],
        *,
        current_rule_source: Optional[str] = None,
        diagnostics: Optional[list[Diagnostic]] = None,
    ):
        if not available_rule_sources:
            raise EditorError("No rule sources available for import")

        self.editor = editor
        self.available_rule_sources: dict[str, list[Provider]] = {
            source_key(name): list(providers) for name, providers in available_rule_sources.items()
        }
        self.diagnostics: list[Diagnostic] = list(diagnostics or [])
        self.closed = False

        self.current_rule_source = ""
        self.selected_providers: set[str] = set()
        self.outcomes: dict[str, ImportOutcome] = {}
        self.classifications: dict[str, ImportClassification] = {}
        self._renames: dict[str, str] = {}
        self._pending_exclusions: dict[str, set[str]] = {}
        self._dirty = False

        self.set_source(current_rule_source or next(iter(self.available_rule_sources)))

    # ========================================================================
    # Session State
    # ========================================================================

    @property
    def has_unsaved_changes(self) -> bool:
        return self._dirty

    @property
    def import_exclusions_by_source(self) -> dict[str, set[str]]:
        """Saved exclusions plus the ones this session will add on commit."""
        exclusions = self.editor.store.exclusions_by_source()
        for source, ids in self._pending_exclusions.items():
            exclusions[source] = exclusions.get(source, set()) | ids
        return exclusions

    @property
    def current_exclusions(self) -> set[str]:
        pending = self._pending_exclusions.get(self.current_rule_source, set())
        return self.editor.store.exclusions(self.current_rule_source) | pending

    def _check_open(self) -> None:
        if self.closed:
            raise EditorError("Import session is closed")

    def set_source(self, source: RuleSource | str) -> None:
        """Switch the source being browsed; resets selection and outcomes."""
        self._check_open()
        key = source_key(source)
        if key not in self.available_rule_sources:
            available = ", ".join(self.available_rule_sources)
            raise EditorError(f"Rule source '{key}' is not available (available: {available})")
        self.current_rule_source = key
        self.selected_providers = set()
        self.outcomes = {}
        self.classifications = {}
        self._renames = {}
        self._dirty = False

    def candidates(self) -> list[Provider]:
        return list(self.available_rule_sources[self.current_rule_source])

    def _candidate(self, provider_id: str) -> Provider:
        for provider in self.available_rule_sources[self.current_rule_source]:
            if provider.id == provider_id:
                return provider
        raise ProviderNotFoundError(
            f"Provider '{provider_id}' not in source '{self.current_rule_source}'"
        )

    # ========================================================================
    # Preview and Selection
    # ========================================================================

    def _classify(self, candidate: Provider, excluded: set[str]) -> ImportClassification:
        if candidate.id in excluded:
            return ImportClassification.EXCLUDED
        existing = self.editor.find_draft(candidate.id)
        if existing is None:
            return ImportClassification.NEW
        if existing.same_rules(candidate):
            return ImportClassification.IDENTICAL
        return ImportClassification.CONFLICT

    def preview_import(self, ids: Optional[Iterable[str]] = None) -> dict[str, ImportClassification]:
        """Classify candidates against the custom draft.

        New ids are selected automatically; excluded ids never are.

        Args:
            ids: Candidate ids; every provider of the current source if None

        Raises:
            ProviderNotFoundError: If an id is not in the current source
        """
        self._check_open()
        candidates = self.candidates() if ids is None else [self._candidate(i) for i in ids]
        excluded = self.current_exclusions

        preview: dict[str, ImportClassification] = {}
        for candidate in candidates:
            classification = self._classify(candidate, excluded)
            preview[candidate.id] = classification
            self.classifications[candidate.id] = classification

            if classification == ImportClassification.NEW:
                self.selected_providers.add(candidate.id)
                self.outcomes[candidate.id] = ImportOutcome.NEW
            elif classification == ImportClassification.EXCLUDED:
                self.selected_providers.discard(candidate.id)
                self.outcomes.pop(candidate.id, None)

        return preview

    def select(self, provider_id: str) -> None:
        """Select a candidate for import.

        Raises:
            ImportConflictError: If the id is excluded for this source
        """
        self._check_open()
        candidate = self._candidate(provider_id)
        classification = self._classify(candidate, self.current_exclusions)
        self.classifications[provider_id] = classification
        if classification == ImportClassification.EXCLUDED:
            raise ImportConflictError(
                f"'{provider_id}' is excluded from '{self.current_rule_source}'; restore it first"
            )
        self.selected_providers.add(provider_id)
        if classification == ImportClassification.NEW:
            self.outcomes[provider_id] = ImportOutcome.NEW
        self._dirty = True

    def deselect(self, provider_id: str) -> None:
        self._check_open()
        self.selected_providers.discard(provider_id)
        self._dirty = True

    def resolve_conflict(self, provider_id: str, decision: ConflictDecision | str) -> ImportOutcome:
        """Decide what happens to a conflicting candidate.

        ``skip`` also excludes the id from this source, once the import is
        committed, so later imports do not ask again. ``rename-and-add`` imports it under ``<id>_<n>``.

        Raises:
            ImportConflictError: If the id is not in conflict
        """
        self._check_open()
        decision = ConflictDecision(decision)
        candidate = self._candidate(provider_id)
        classification = self._classify(candidate, self.current_exclusions)
        self.classifications[provider_id] = classification
        if classification != ImportClassification.CONFLICT:
            raise ImportConflictError(
                f"'{provider_id}' is {classification.value}, not in conflict"
            )

        if decision == ConflictDecision.OVERWRITE:
            self.outcomes[provider_id] = ImportOutcome.OVERWRITE
            self.selected_providers.add(provider_id)
        elif decision == ConflictDecision.SKIP:
            self.outcomes[provider_id] = ImportOutcome.SKIP
            self.selected_providers.discard(provider_id)
            self._pending_exclusions.setdefault(self.current_rule_source, set()).add(provider_id)
        else:
            taken = {p.id for p in self.editor.draft} | set(self._renames.values())
            self._renames[provider_id] = next_free_id(provider_id, taken)
            self.outcomes[provider_id] = ImportOutcome.NEW
            self.selected_providers.add(provider_id)

        self._dirty = True
        return self.outcomes[provider_id]

    # ========================================================================
    # Commit
    # ========================================================================

    def commit_import(self, selection: Optional[Iterable[str]] = None) -> ImportReport:
        """Copy the selected providers into the custom layer and publish.

        Unresolved conflicts and excluded ids are skipped and reported, never
        fatal. Unsaved edits in the editor draft are saved along with the
        import.

        Args:
            selection: Ids to import; the current selection if None
        """
        self._check_open()
        selected = set(self.selected_providers if selection is None else selection)
        report = ImportReport(source=self.current_rule_source)
        excluded = self.current_exclusions

        for candidate in self.candidates():
            provider_id = candidate.id
            if provider_id not in selected:
                continue

            classification = self._classify(candidate, excluded)
            outcome = self.outcomes.get(provider_id)

            if classification == ImportClassification.EXCLUDED or outcome == ImportOutcome.SKIP:
                report.skipped.append(provider_id)
            elif provider_id in self._renames:
                new_id = self._renames[provider_id]
                self.editor.put_provider(candidate.with_changes(id=new_id))
                report.renamed[provider_id] = new_id
            elif classification == ImportClassification.IDENTICAL:
                report.unchanged.append(provider_id)
            elif classification == ImportClassification.NEW:
                self.editor.put_provider(candidate)
                report.imported.append(provider_id)
            elif outcome == ImportOutcome.OVERWRITE:
                self.editor.put_provider(candidate)
                report.overwritten.append(provider_id)
            else:
                report.unresolved.append(provider_id)
                report.diagnostics.append(Diagnostic(
                    kind=DiagnosticKind.IMPORT_CONFLICT,
                    message=f"Unresolved conflict for '{provider_id}'; not imported",
                    provider_id=provider_id,
                ))

        for source, ids in self._pending_exclusions.items():
            self.editor.store.set_exclusions(source, self.editor.store.exclusions(source) | ids)
        self._pending_exclusions = {}

        save_report = self.editor.save()
        report.snapshot_version = save_report.snapshot.version if save_report.snapshot else None

        self._dirty = False
        self.closed = True
        logger.info(
            f"Import from {report.source}: {len(report.imported)} new, "
            f"{len(report.overwritten)} overwritten, {len(report.renamed)} renamed, "
            f"{len(report.skipped)} skipped, {len(report.unresolved)} unresolved"
        )
        return report

    def close(self) -> None:
        """Abandon the session without importing."""
        self.closed = True
        self._pending_exclusions = {}
        self._dirty = False
