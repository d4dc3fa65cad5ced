# sync_orchestrator.py
# Description: Decides when reconciliation runs and reports outcomes to the UI
#
# Imports
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.remote_store import RemoteStore
from .project_loader import PullResult, pull_projects
from .reconciliation_engine import ReconciliationEngine, SyncSummary
from .sync_context import SyncContext, SyncProgress
from .sync_messages import SyncFinished, SyncProgressUpdated, SyncStarted
#
########################################################################################################################
#
# Classes:


class SyncState(Enum):
    """Orchestrator states."""
    IDLE = "idle"
    SYNCING = "syncing"


class SyncRefusal(Enum):
    """Expected reasons a sync request does not start."""
    ALREADY_IN_FLIGHT = "Sync already in progress"
    TOO_SOON = "Sync attempted too soon"
    NO_SESSION = "No user logged in"


@dataclass
class SyncOutcome:
    """What one orchestrator call produced."""
    ok: bool
    summary: Optional[SyncSummary] = None
    pull: Optional[PullResult] = None
    refused: Optional[SyncRefusal] = None
    error: Optional[str] = None
    reload_needed: bool = False
    partial: bool = False
    disabled: bool = False

    @classmethod
    def refusal(cls, reason: SyncRefusal) -> "SyncOutcome":
        return cls(ok=False, refused=reason, error=reason.value)


@dataclass
class SyncStatusInfo:
    state: SyncState
    last_attempt: Optional[datetime]
    last_success: Optional[datetime]
    creator_id: Optional[int]
    enabled: bool

    @property
    def in_progress(self) -> bool:
        return self.state is SyncState.SYNCING


class SyncOrchestrator:
    """
    Gates reconciliation: one cycle at a time, a minimum spacing between
    automatic attempts, and a process-wide enable switch.
    """

    def __init__(
        self,
        store: RemoteStore,
        project_root: Union[str, Path],
        enabled: bool = True,
        min_interval_seconds: float = 300,  # 5 minutes default
        check_interval_seconds: float = 60,
        timeout_seconds: float = 600,
        dry_run: bool = False,
        allow_empty_local_deletion: bool = False,
        prune_orphaned_children: bool = False,
        message_target: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.engine = ReconciliationEngine(store)
        self.reader = self.engine.reader
        self.project_root = Path(project_root).expanduser()
        self.enabled = enabled
        self.min_interval_seconds = min_interval_seconds
        self.check_interval_seconds = check_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.dry_run = dry_run
        self.allow_empty_local_deletion = allow_empty_local_deletion
        self.prune_orphaned_children = prune_orphaned_children
        self.message_target = message_target
        self._clock = clock

        self.creator_id: Optional[int] = None
        self._state = SyncState.IDLE
        self._last_attempt: Optional[float] = None
        self.last_attempt_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_outcome: Optional[SyncOutcome] = None
        self._auto_task: Optional[asyncio.Task] = None

        # Callbacks for UI updates
        self.on_sync_started: Optional[Callable[[str], None]] = None
        self.on_sync_progress: Optional[Callable[[SyncProgress], None]] = None
        self.on_sync_finished: Optional[Callable[[SyncOutcome], None]] = None

    @classmethod
    def from_settings(cls, store: RemoteStore, settings: Dict[str, Any], **overrides) -> "SyncOrchestrator":
        """Build an orchestrator from the `[sync]` config section."""
        sync_cfg = settings.get("sync", {})
        values = dict(
            project_root=sync_cfg.get("projects_root", "."),
            enabled=bool(sync_cfg.get("enabled", True)),
            min_interval_seconds=sync_cfg.get("min_interval_seconds", 300),
            check_interval_seconds=sync_cfg.get("check_interval_seconds", 60),
            timeout_seconds=sync_cfg.get("timeout_seconds", 600),
            dry_run=bool(sync_cfg.get("dry_run", False)),
            allow_empty_local_deletion=bool(sync_cfg.get("allow_empty_local_deletion", False)),
            prune_orphaned_children=bool(sync_cfg.get("prune_orphaned_children", False)),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(store, **values)

    # --- Status ---

    @property
    def state(self) -> SyncState:
        return self._state

    def status(self) -> SyncStatusInfo:
        """Current state and timestamps; no side effects."""
        return SyncStatusInfo(
            state=self._state,
            last_attempt=self.last_attempt_at,
            last_success=self.last_success_at,
            creator_id=self.creator_id,
            enabled=self.enabled,
        )

    # --- Requests ---

    async def request_sync(self) -> SyncOutcome:
        """Start a cycle unless one is running or the last attempt was too recent."""
        if not self.enabled:
            return SyncOutcome(ok=True, disabled=True)
        if self._state is SyncState.SYNCING:
            return SyncOutcome.refusal(SyncRefusal.ALREADY_IN_FLIGHT)
        if self._last_attempt is not None and self._clock() - self._last_attempt < self.min_interval_seconds:
            return SyncOutcome.refusal(SyncRefusal.TOO_SOON)
        return await self._run_cycle("request")

    async def force_sync(self) -> SyncOutcome:
        """Start a cycle now, ignoring the minimum interval; still single-flight."""
        if not self.enabled:
            return SyncOutcome(ok=True, disabled=True)
        if self._state is SyncState.SYNCING:
            return SyncOutcome.refusal(SyncRefusal.ALREADY_IN_FLIGHT)
        return await self._run_cycle("force")

    async def handle_login(self, creator_id: int) -> SyncOutcome:
        """Remember the session, pull the creator's projects, then reconcile."""
        self.creator_id = int(creator_id)
        logger.info(f"Creator {self.creator_id} logged in")
        if not self.enabled:
            return SyncOutcome(ok=True, disabled=True)
        if self._state is SyncState.SYNCING:
            return SyncOutcome.refusal(SyncRefusal.ALREADY_IN_FLIGHT)
        return await self._run_cycle("login", pull_first=True)

    async def handle_logout(self) -> SyncOutcome:
        """Push local state one last time, then forget the session."""
        try:
            if self.creator_id is None:
                return SyncOutcome(ok=True)
            return await self.force_sync()
        finally:
            logger.info(f"Creator {self.creator_id} logged out")
            self.stop_auto_sync()
            self.creator_id = None

    # --- Auto sync ---

    def start_auto_sync(self) -> None:
        """Ask for a sync every check interval until stopped."""
        if self._auto_task is not None and not self._auto_task.done():
            return
        self._auto_task = asyncio.get_running_loop().create_task(self._auto_sync_loop())
        logger.info(f"Auto-sync started (every {self.check_interval_seconds}s)")

    def stop_auto_sync(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            self._auto_task = None
            logger.info("Auto-sync stopped")

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.check_interval_seconds)
                if self.creator_id is None:
                    continue
                outcome = await self.request_sync()
                if outcome.refused:
                    logger.debug(f"Auto-sync skipped: {outcome.refused.value}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in auto-sync loop: {e}")

    # --- Cycle ---

    def _context(self) -> SyncContext:
        return SyncContext(
            creator_id=self.creator_id,
            project_root=self.project_root,
            dry_run=self.dry_run,
            allow_empty_local_deletion=self.allow_empty_local_deletion,
            prune_orphaned_children=self.prune_orphaned_children,
            progress_callback=self._on_progress,
        )

    async def _run_cycle(self, trigger: str, pull_first: bool = False) -> SyncOutcome:
        if self.creator_id is None:
            return SyncOutcome.refusal(SyncRefusal.NO_SESSION)

        self._state = SyncState.SYNCING
        self._last_attempt = self._clock()
        self.last_attempt_at = datetime.now()
        self._emit_started(trigger)
        try:
            outcome = await asyncio.wait_for(self._cycle(self._context(), pull_first), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Sync timed out after {self.timeout_seconds}s; remote state may be partial")
            outcome = SyncOutcome(ok=False, error=f"Sync timed out after {self.timeout_seconds}s", partial=True)
        except Exception as e:
            logger.exception(f"Sync failed: {e}")
            outcome = SyncOutcome(ok=False, error=str(e))
        finally:
            self._state = SyncState.IDLE

        self.last_outcome = outcome
        if outcome.ok:
            self.last_success_at = datetime.now()
        self._emit_finished(outcome)
        return outcome

    async def _cycle(self, context: SyncContext, pull_first: bool) -> SyncOutcome:
        pull = None
        if pull_first:
            pull = await pull_projects(context, self.reader)
            if not pull.ok:
                logger.warning(f"Pull before sync failed: {pull.error}")
        summary = await self.engine.reconcile(context)
        return SyncOutcome(
            ok=summary.ok,
            summary=summary,
            pull=pull,
            error=summary.lookup_failure,
            reload_needed=bool(pull and pull.reload_needed),
        )

    # --- UI notification ---

    def _post(self, message) -> None:
        if self.message_target is None:
            return
        try:
            self.message_target.post_message(message)
        except Exception as e:
            logger.warning(f"Could not post {type(message).__name__}: {e}")

    def _call(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"Sync callback failed: {e}")

    def _emit_started(self, trigger: str) -> None:
        logger.info(f"Sync started ({trigger}) for creator {self.creator_id}")
        self._call(self.on_sync_started, trigger)
        self._post(SyncStarted(self.creator_id, trigger))

    def _on_progress(self, progress: SyncProgress) -> None:
        self._call(self.on_sync_progress, progress)
        self._post(SyncProgressUpdated(progress.phase, progress.current, progress.total, progress.detail))

    def _emit_finished(self, outcome: SyncOutcome) -> None:
        summary = outcome.summary
        self._call(self.on_sync_finished, outcome)
        self._post(SyncFinished(
            ok=outcome.ok,
            counts=summary.as_dict()["counts"] if summary else {},
            errors=summary.error_count if summary else 0,
            conflicts=summary.conflicts if summary else 0,
            error=outcome.error,
            reload_needed=outcome.reload_needed,
            partial=outcome.partial,
        ))

#
# End of sync_orchestrator.py
########################################################################################################################
