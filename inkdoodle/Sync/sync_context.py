# sync_context.py
# Description: Explicit session object passed into every sync operation
#
# Imports
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
#
# Third-Party Imports
from loguru import logger
#
########################################################################################################################
#
# Classes and Functions:


@dataclass
class SyncProgress:
    """One progress report: phase name, position within the phase and a free-form detail."""
    phase: str
    current: int = 0
    total: int = 0
    detail: str = ""


@dataclass
class SyncContext:
    """
    Who is syncing and where their projects live.

    The engine, collector and loader read everything they need from this
    object instead of ambient state, so a test can build one per fixture.
    """
    creator_id: Optional[int]
    project_root: Path
    dry_run: bool = False
    allow_empty_local_deletion: bool = False
    prune_orphaned_children: bool = False
    progress_callback: Optional[Callable[[SyncProgress], None]] = field(default=None, repr=False)

    def __post_init__(self):
        self.project_root = Path(self.project_root).expanduser()
        if self.creator_id is not None:
            self.creator_id = int(self.creator_id)

    @property
    def has_session(self) -> bool:
        return self.creator_id is not None

    @classmethod
    def from_settings(cls, creator_id: Optional[int], settings: Dict[str, Any],
                      project_root: Optional[Union[str, Path]] = None, **overrides) -> "SyncContext":
        """Build a context from the `[sync]` config section; keyword overrides win."""
        sync_cfg = settings.get("sync", {}) if settings else {}
        values = dict(
            creator_id=creator_id,
            project_root=project_root or sync_cfg.get("projects_root", "."),
            dry_run=bool(sync_cfg.get("dry_run", False)),
            allow_empty_local_deletion=bool(sync_cfg.get("allow_empty_local_deletion", False)),
            prune_orphaned_children=bool(sync_cfg.get("prune_orphaned_children", False)),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_creator(self, creator_id: Optional[int]) -> "SyncContext":
        return replace(self, creator_id=creator_id)

    def report(self, phase: str, current: int = 0, total: int = 0, detail: str = "") -> None:
        """Send a progress update to the callback, if one is registered."""
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(SyncProgress(phase=phase, current=current, total=total, detail=detail))
        except Exception as e:
            # A broken UI callback must not stop the cycle
            logger.warning(f"Progress callback failed during {phase}: {e}")

#
# End of sync_context.py
########################################################################################################################
