"""Statistics logging for cleaned and blocked URLs.

This module provides the JsonlStatisticsSink class, a statistics sink for
the cleaning engine that appends one JSON Lines record per event, and a
reader that folds the log back into totals.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from linkscrub.core.exceptions import StorageError
from linkscrub.core.models import StatsEvent


class JsonlStatisticsSink:
    """Statistics sink writing events in JSON Lines format.

    Example:
        >>> sink = JsonlStatisticsSink(Path("~/.local/share/linkscrub/stats.jsonl"))
        >>> engine = Engine(snapshot, stats_sink=sink)
        >>> sink.close()
    """

    def __init__(self, log_path: Path) -> None:
        """Initialize the sink.

        Args:
            log_path: File the events are appended to.

        Raises:
            StorageError: If the log directory or file cannot be created.
        """
        self.log_path = Path(log_path)

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to create statistics directory {self.log_path.parent}: {e}"
            ) from e

        self._logger = logging.getLogger(f"linkscrub.stats.{self.log_path}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.handlers.clear()

        try:
            handler = logging.FileHandler(str(self.log_path), mode="a", encoding="utf-8")
            handler.setLevel(logging.INFO)
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)
        except OSError as e:
            raise StorageError(
                f"Failed to open statistics log {self.log_path}: {e}"
            ) from e

    def record(self, event: StatsEvent) -> None:
        """Append one statistics event."""
        self._logger.info(json.dumps(event.to_dict(), ensure_ascii=False))

    def close(self) -> None:
        """Close the sink and flush buffers."""
        for handler in self._logger.handlers:
            handler.flush()
            handler.close()
        self._logger.handlers.clear()


@dataclass
class StatsSummary:
    """Totals folded from a statistics log."""
    requests: int = 0
    removed: int = 0
    blocked: int = 0


def summarize(log_path: Path) -> StatsSummary:
    """Fold a statistics log into totals.

    Lines that are not valid events are skipped. A missing file yields
    zero totals.
    """
    summary = StatsSummary()
    path = Path(log_path)
    if not path.exists():
        return summary

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise StorageError(f"Failed to read statistics log {path}: {e}") from e

    for line in lines:
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue
        summary.requests += 1
        if event.get("blocked"):
            summary.blocked += 1
        else:
            summary.removed += int(event.get("count", 0) or 0)

    return summary
