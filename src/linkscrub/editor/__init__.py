"""Provider editor and import flow.

This module provides draft-based editing of custom providers and import
sessions that copy providers from bundled, remote or file rule sources with
conflict detection and per-source exclusions.
"""

from linkscrub.editor.importer import (
    ImportReport,
    ImportSession,
    next_free_id,
)
from linkscrub.editor.editor import (
    ProviderEditor,
    SaveReport,
)


__all__ = [
    "ImportReport",
    "ImportSession",
    "next_free_id",
    "ProviderEditor",
    "SaveReport",
]
