"""
Edit tracker: remembers which line ranges of which files were written
from an AI conversation.

The ingestion pipeline asks :meth:`EditTracker.lookup_conversation` whether
a chunk overlaps a registered region; the editor integration reports later
edits through :meth:`EditTracker.record_edit`, which backfills the
``final_edited_code`` of the memory the region came from.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class TrackedRegion:
    conversation_id: str
    record_id: str
    file_path: str
    start_line: int
    end_line: int
    last_content: str = ""

    def overlaps(self, start_line: int, end_line: int) -> bool:
        return max(start_line, self.start_line) <= min(end_line, self.end_line)


class EditTracker:
    """Registry of AI-authored regions keyed by normalised file path.

    Parameters
    ----------
    on_edit:
        Called as ``on_edit(record_id, new_content)`` when a region's text
        changes.  The engine wires this to ``update_memory``.
    """

    def __init__(self, on_edit: Optional[Callable[[str, str], object]] = None) -> None:
        self._regions: dict[str, list[TrackedRegion]] = {}
        self._lock = threading.Lock()
        self._on_edit = on_edit

    def set_edit_callback(self, on_edit: Callable[[str, str], object]) -> None:
        self._on_edit = on_edit

    @staticmethod
    def _key(file_path: str) -> str:
        return os.path.normcase(os.path.abspath(file_path))

    def register_region(self, file_path: str, start_line: int, end_line: int,
                        conversation_id: str, record_id: str = "",
                        initial_content: str = "") -> TrackedRegion:
        region = TrackedRegion(
            conversation_id=conversation_id,
            record_id=record_id,
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            last_content=initial_content,
        )
        with self._lock:
            self._regions.setdefault(self._key(file_path), []).append(region)
        logger.debug("[Tracker] Registered region for %s at lines %d-%d",
                     conversation_id, start_line, end_line)
        return region

    def regions(self, file_path: str) -> list[TrackedRegion]:
        with self._lock:
            return [replace(r) for r in self._regions.get(self._key(file_path), [])]

    def lookup_conversation(self, file_path: str, start_line: int,
                            end_line: int) -> Optional[str]:
        """Conversation id of the first region overlapping the line range."""
        for region in self.regions(file_path):
            if region.overlaps(start_line, end_line):
                return region.conversation_id
        return None

    def record_edit(self, file_path: str, start_line: int, end_line: int,
                    new_content: str) -> int:
        """Report that lines of *file_path* now read *new_content*.

        Every overlapping region whose text changed is updated and, when
        it carries a record id, forwarded to the edit callback.  Returns
        the number of regions updated.
        """
        changed: list[TrackedRegion] = []
        with self._lock:
            for region in self._regions.get(self._key(file_path), []):
                if not region.overlaps(start_line, end_line):
                    continue
                if new_content == region.last_content:
                    continue
                region.last_content = new_content
                changed.append(region)

        # callbacks run outside the lock
        for region in changed:
            if region.record_id and self._on_edit is not None:
                self._on_edit(region.record_id, new_content)
                logger.debug("[Tracker] Updated final edited code for %s",
                             region.conversation_id)
        return len(changed)

    def clear(self, file_path: Optional[str] = None) -> None:
        with self._lock:
            if file_path is None:
                self._regions.clear()
            else:
                self._regions.pop(self._key(file_path), None)
