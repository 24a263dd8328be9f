"""Unit tests for the provider editor.

Tests cover draft CRUD, overriding bundled providers, validation on save,
discard, import exclusions and publishing to the engine.
"""

import tempfile
import unittest
from pathlib import Path

from linkscrub.core.constants import EditorState, RuleSource
from linkscrub.core.exceptions import (
    EditorError,
    ProviderExistsError,
    ProviderNotFoundError,
    StorageError,
)
from linkscrub.core.models import Provider
from linkscrub.editor.editor import ProviderEditor
from linkscrub.engine.driver import Engine
from linkscrub.rules.store import RuleStore


BUNDLED = [
    Provider(id="tracker", url_pattern=".*", rules=("^utm_",)),
    Provider(id="shop", url_pattern=r"shop\.test", rules=("ref",)),
]


class EditorTestCase(unittest.TestCase):
    """Shared setup: in-memory store, engine and editor."""

    def setUp(self):
        """Create store, engine and editor."""
        self.store = RuleStore(bundled=BUNDLED)
        self.engine = Engine(self.store.build_snapshot())
        self.editor = ProviderEditor(self.store, self.engine)


class TestDraft(EditorTestCase):
    """Test draft mutation and the editor state machine."""

    def test_initial_state(self):
        """Test a fresh editor is clean and empty."""
        self.assertEqual(self.editor.state, EditorState.CLEAN)
        self.assertFalse(self.editor.needs_save_prompt)
        self.assertEqual(self.editor.list_providers(), [])
        self.assertEqual(self.editor.list_providers(RuleSource.BUNDLED), BUNDLED)

    def test_create_does_not_affect_cleaning_until_save(self):
        """Test draft changes are invisible to the engine until saved."""
        self.editor.create_provider("mine", {"urlPattern": r"mine\.test", "rules": ["sid"]})

        self.assertEqual(self.editor.state, EditorState.EDITING)
        self.assertTrue(self.editor.needs_save_prompt)
        url = "https://mine.test/?sid=1&x=2"
        self.assertEqual(self.engine.clean(url).final_url, url)

        report = self.editor.save()
        self.assertTrue(report.ok)
        self.assertEqual(report.saved, ["mine"])
        self.assertEqual(self.editor.state, EditorState.CLEAN)
        self.assertEqual(self.engine.clean(url).final_url, "https://mine.test/?x=2")
        self.assertEqual(self.engine.snapshot.source_of("mine"), RuleSource.CUSTOM)

    def test_create_rejects_bad_input(self):
        """Test duplicate ids, empty ids, unknown fields and missing urlPattern."""
        self.editor.create_provider("mine", {"urlPattern": "m"})

        with self.assertRaises(ProviderExistsError):
            self.editor.create_provider("mine", {"urlPattern": "m"})
        with self.assertRaises(EditorError):
            self.editor.create_provider("  ", {"urlPattern": "m"})
        with self.assertRaises(EditorError):
            self.editor.create_provider("other", {"urlPattern": "m", "colour": "red"})
        with self.assertRaises(EditorError):
            self.editor.create_provider("other", {"rules": ["a"]})

    def test_edit_bundled_creates_override(self):
        """Test editing a bundled provider creates a custom one with the same id."""
        provider = self.editor.edit_provider("shop", {"rules": ["ref", "tag"]})
        self.assertEqual(provider.url_pattern, r"shop\.test")

        self.editor.save()
        self.assertEqual(self.engine.snapshot.source_of("shop"), RuleSource.CUSTOM)
        self.assertEqual(self.engine.snapshot.ids, ["tracker", "shop"])
        result = self.engine.clean("https://shop.test/?tag=1&ref=2&x=3")
        self.assertEqual(result.final_url, "https://shop.test/?x=3")

    def test_edit_unknown_provider(self):
        """Test editing an id that exists nowhere."""
        with self.assertRaises(ProviderNotFoundError):
            self.editor.edit_provider("ghost", {"rules": []})

    def test_delete(self):
        """Test deleting a custom provider."""
        self.editor.create_provider("mine", {"urlPattern": "m"})
        self.editor.save()

        self.editor.delete_provider("mine")
        report = self.editor.save()
        self.assertEqual(report.removed, ["mine"])
        self.assertIsNone(self.store.get_custom("mine"))

        with self.assertRaises(ProviderNotFoundError):
            self.editor.delete_provider("mine")

    def test_duplicate(self):
        """Test duplicating picks the next free id."""
        copy = self.editor.duplicate_provider("shop")
        self.assertEqual(copy.id, "shop_1")
        self.assertEqual(copy.rules, ("ref",))
        self.assertEqual(self.editor.duplicate_provider("shop").id, "shop_2")
        self.assertEqual(self.editor.duplicate_provider("shop", "shop-copy").id, "shop-copy")

    def test_rename_keeps_position(self):
        """Test renaming a draft provider keeps its order."""
        for provider_id in ("a", "b", "c"):
            self.editor.create_provider(provider_id, {"urlPattern": provider_id})

        self.editor.rename_provider("b", "beta")
        self.assertEqual([p.id for p in self.editor.draft], ["a", "beta", "c"])

        with self.assertRaises(ProviderExistsError):
            self.editor.rename_provider("a", "c")

    def test_discard(self):
        """Test discard restores the saved layer."""
        self.editor.create_provider("mine", {"urlPattern": "m"})
        self.editor.save()
        self.editor.delete_provider("mine")
        self.editor.create_provider("other", {"urlPattern": "o"})

        self.editor.discard()
        self.assertEqual([p.id for p in self.editor.draft], ["mine"])
        self.assertEqual(self.editor.state, EditorState.CLEAN)


class TestValidation(EditorTestCase):
    """Test pattern validation on save."""

    def test_invalid_provider_keeps_last_saved_version(self):
        """Test an invalid edit is not saved and the previous version stays active."""
        self.editor.create_provider("mine", {"urlPattern": r"mine\.test", "rules": ["sid"]})
        self.editor.save()

        self.editor.edit_provider("mine", {"rules": ["("]})
        self.assertIn("mine", self.editor.validation_errors())

        with self.assertLogs("linkscrub.editor.editor", level="WARNING"):
            report = self.editor.save()

        self.assertFalse(report.ok)
        self.assertIn("rules", report.blocked["mine"])
        self.assertTrue(self.editor.has_unsaved_changes)
        self.assertEqual(self.store.get_custom("mine").rules, ("sid",))
        self.assertEqual(self.engine.snapshot.get("mine").rules, ("sid",))
        self.assertEqual(self.editor.get_provider("mine").rules, ("(",))

    def test_invalid_new_provider_is_not_saved(self):
        """Test a new provider with broken patterns never reaches the store."""
        self.editor.create_provider("broken", {"urlPattern": "["})
        self.editor.create_provider("fine", {"urlPattern": "f"})

        with self.assertLogs("linkscrub.editor.editor", level="WARNING"):
            report = self.editor.save()

        self.assertEqual(report.saved, ["fine"])
        self.assertIsNone(self.store.get_custom("broken"))
        self.assertIsNotNone(self.store.get_custom("fine"))


class TestExclusions(EditorTestCase):
    """Test import exclusion management."""

    def test_exclude_removes_provider_and_custom_copy(self):
        """Test excluding drops the bundled provider and any custom override."""
        self.editor.edit_provider("shop", {"rules": ["tag"]})
        self.editor.save()

        self.editor.exclude(RuleSource.BUNDLED, "shop")

        self.assertNotIn("shop", self.engine.snapshot)
        self.assertIsNone(self.store.get_custom("shop"))
        self.assertEqual(self.store.exclusions(RuleSource.BUNDLED), {"shop"})

    def test_restore_and_clear(self):
        """Test restoring one exclusion and clearing all."""
        self.editor.exclude("bundled", "shop")
        self.editor.exclude("bundled", "tracker")

        self.assertTrue(self.editor.restore_exclusion("bundled", "shop"))
        self.assertFalse(self.editor.restore_exclusion("bundled", "shop"))
        self.assertIn("shop", self.engine.snapshot)

        self.assertEqual(self.editor.clear_exclusions("bundled"), 1)
        self.assertEqual(self.engine.snapshot.ids, ["tracker", "shop"])

    def test_custom_cannot_be_excluded(self):
        """Test the custom source has no exclusions."""
        with self.assertRaises(StorageError):
            self.editor.exclude(RuleSource.CUSTOM, "mine")


class TestPersistence(unittest.TestCase):
    """Test that saves persist under the data directory."""

    def test_saved_providers_survive_restart(self):
        """Test a new editor over the same data dir sees saved providers."""
        with tempfile.TemporaryDirectory() as tmpdir:
            data_dir = Path(tmpdir)
            editor = ProviderEditor(RuleStore(data_dir, bundled=BUNDLED))
            editor.create_provider("mine", {"urlPattern": "m", "rules": ["a"]})
            editor.save()

            reopened = ProviderEditor(RuleStore(data_dir, bundled=BUNDLED).load())
            self.assertEqual(reopened.get_provider("mine").rules, ("a",))
            self.assertEqual(reopened.state, EditorState.CLEAN)


if __name__ == "__main__":
    unittest.main()
