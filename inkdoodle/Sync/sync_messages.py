"""Textual messages the sync orchestrator posts to the UI."""

from typing import Any, Dict, Optional

from textual.message import Message


class SyncStarted(Message):
    """Posted when a sync cycle begins."""
    def __init__(self, creator_id: Optional[int], trigger: str):
        super().__init__()
        self.creator_id = creator_id
        self.trigger = trigger


class SyncProgressUpdated(Message):
    """Posted as the engine moves through its phases."""
    def __init__(self, phase: str, current: int, total: int, detail: str = ""):
        super().__init__()
        self.phase = phase
        self.current = current
        self.total = total
        self.detail = detail


class SyncFinished(Message):
    """Posted when a sync cycle ends, successfully or not."""
    def __init__(self, ok: bool, counts: Optional[Dict[str, Any]] = None, errors: int = 0,
                 conflicts: int = 0, error: Optional[str] = None, reload_needed: bool = False,
                 partial: bool = False):
        super().__init__()
        self.ok = ok
        self.counts = counts or {}
        self.errors = errors
        self.conflicts = conflicts
        self.error = error
        self.reload_needed = reload_needed
        self.partial = partial
