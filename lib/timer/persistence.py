"""
lib/timer/persistence.py

Timer state snapshots and startup reconciliation.

Provides:
- PersistedSnapshot: the durable {timeRemaining, isActive, settings,
  lastSaved} record
- SnapshotStore: JSON file storage with atomic replace
- reconcile(): decides whether a loaded snapshot resumes, expires or is
  restored inactive, based on how long the process was down
- StatePersistence: autosave loop, save hook and final save at shutdown
"""

import asyncio
import json
import logging
import math
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .engine import DEFAULT_TIME_REMAINING, TimerEngine
from .errors import SnapshotError
from .settings import Settings


logger = logging.getLogger(__name__)

# An active snapshot older than this is not trusted to resume
RESUME_WINDOW_MS = 5 * 60 * 1000

# Default autosave cadence in seconds
AUTOSAVE_INTERVAL = 30.0


def current_time_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Snapshot Model
# =============================================================================

@dataclass
class PersistedSnapshot:
    """
    Durable copy of the timer state.

    Attributes:
        time_remaining: Remaining seconds when saved.
        is_active: Whether the countdown was running when saved.
        settings: Settings when saved.
        saved_at: Epoch milliseconds of the save (lastSaved on disk).
    """

    time_remaining: int
    is_active: bool = False
    settings: Settings = field(default_factory=Settings)
    saved_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert snapshot to its on-disk form.

        Returns:
            Dictionary suitable for JSON serialization.
        """
        return {
            "timeRemaining": self.time_remaining,
            "isActive": self.is_active,
            "settings": self.settings.to_dict(),
            "lastSaved": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PersistedSnapshot":
        """
        Create a snapshot from its on-disk form.

        Missing fields take defaults; unknown fields are ignored.

        Args:
            data: Decoded JSON value.

        Returns:
            PersistedSnapshot instance.

        Raises:
            SnapshotError: If data is not an object or a field has the
                wrong type.
        """
        if not isinstance(data, Mapping):
            raise SnapshotError(f"Snapshot must be an object, got {type(data).__name__}")

        remaining = data.get("timeRemaining", DEFAULT_TIME_REMAINING)
        if (
            isinstance(remaining, bool)
            or not isinstance(remaining, (int, float))
            or not math.isfinite(remaining)
        ):
            raise SnapshotError(f"Invalid timeRemaining in snapshot: {remaining!r}")

        is_active = data.get("isActive", False)
        if not isinstance(is_active, bool):
            raise SnapshotError(f"Invalid isActive in snapshot: {is_active!r}")

        saved_at = data.get("lastSaved", 0)
        if (
            isinstance(saved_at, bool)
            or not isinstance(saved_at, (int, float))
            or not math.isfinite(saved_at)
        ):
            raise SnapshotError(f"Invalid lastSaved in snapshot: {saved_at!r}")

        return cls(
            time_remaining=max(0, int(remaining)),
            is_active=is_active,
            settings=Settings.from_dict(data.get("settings")),
            saved_at=int(saved_at),
        )

    @classmethod
    def capture(cls, engine: TimerEngine, saved_at: Optional[int] = None) -> "PersistedSnapshot":
        """
        Take a snapshot of an engine's current state.

        Args:
            engine: Engine to snapshot.
            saved_at: Epoch ms to stamp (defaults to now).
        """
        state = engine.get_state()
        return cls(
            time_remaining=state["timeRemaining"],
            is_active=state["isActive"],
            settings=Settings.from_dict(state["settings"]),
            saved_at=saved_at if saved_at is not None else current_time_ms(),
        )


# =============================================================================
# File Storage
# =============================================================================

class SnapshotStore:
    """
    Stores one snapshot as a JSON file.

    Writes go to a sibling temp file which then replaces the target, so a
    crash mid-write leaves the previous snapshot intact.

    Args:
        path: Snapshot file path.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[PersistedSnapshot]:
        """
        Read the snapshot.

        Returns:
            PersistedSnapshot, or None if no snapshot exists.

        Raises:
            SnapshotError: If the file is unreadable or corrupt.
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotError(f"Could not read snapshot {self.path}: {e}") from e

        return PersistedSnapshot.from_dict(data)

    def save(self, snapshot: PersistedSnapshot) -> None:
        """
        Write the snapshot atomically.

        Raises:
            OSError: If the file cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved timer snapshot to {self.path}")


# =============================================================================
# Reconciliation
# =============================================================================

class ReconcileOutcome(Enum):
    """What reconcile() did with a snapshot."""
    FRESH = "fresh"            # no snapshot, defaults kept
    RESUMED = "resumed"        # active snapshot resumed with elapsed time removed
    EXPIRED = "expired"        # active snapshot ran out while the process was down
    RESTORED = "restored"      # loaded as-is, left inactive


def reconcile(
    engine: TimerEngine,
    snapshot: Optional[PersistedSnapshot],
    now_ms: Optional[int] = None
) -> ReconcileOutcome:
    """
    Load a snapshot into an engine, accounting for downtime.

    An active snapshot saved less than RESUME_WINDOW_MS ago resumes with
    the downtime subtracted, as if the countdown had kept running. Anything
    older, or inactive, is restored as-is and never auto-started.

    Args:
        engine: Engine to seed.
        snapshot: Loaded snapshot, or None.
        now_ms: Current epoch ms (defaults to the wall clock).

    Returns:
        ReconcileOutcome describing the decision.
    """
    if snapshot is None:
        logger.info("No saved timer state, starting fresh")
        return ReconcileOutcome.FRESH

    if now_ms is None:
        now_ms = current_time_ms()
    # A save stamped in the future (clock skew) counts as no downtime
    elapsed_ms = max(0, now_ms - snapshot.saved_at)

    if snapshot.is_active and elapsed_ms < RESUME_WINDOW_MS:
        adjusted = max(0, snapshot.time_remaining - elapsed_ms // 1000)
        engine.load_state(adjusted, snapshot.settings)

        if adjusted > 0:
            engine.start()
            logger.info(f"Timer state restored: {adjusted}s remaining (resumed)")
            return ReconcileOutcome.RESUMED

        logger.info("Timer state restored: countdown expired while offline")
        return ReconcileOutcome.EXPIRED

    engine.load_state(snapshot.time_remaining, snapshot.settings)
    if snapshot.is_active:
        logger.info(
            f"Timer state restored: {snapshot.time_remaining}s remaining "
            f"(inactive, saved {elapsed_ms // 1000}s ago)"
        )
    else:
        logger.info(f"Timer state restored: {snapshot.time_remaining}s remaining (inactive)")
    return ReconcileOutcome.RESTORED


# =============================================================================
# Persistence Service
# =============================================================================

class StatePersistence:
    """
    Keeps the snapshot file in step with the engine.

    - restore() reconciles the stored snapshot into the engine at startup
    - request_save() is the engine's save hook (fire-and-forget)
    - start()/stop() run an autosave loop; stop() performs a final save

    Args:
        engine: Engine to persist.
        store: Snapshot storage.
        interval: Seconds between autosaves.
    """

    def __init__(
        self,
        engine: TimerEngine,
        store: SnapshotStore,
        interval: float = AUTOSAVE_INTERVAL
    ):
        self.engine = engine
        self.store = store
        self.interval = interval
        self.running = False
        self.save_count = 0
        self.failure_count = 0
        self._task: Optional[asyncio.Task] = None
        self._pending: set = set()
        self._save_lock: Optional[asyncio.Lock] = None
        self.logger = logging.getLogger(f"{__name__}.persistence")

    def restore(self, now_ms: Optional[int] = None) -> ReconcileOutcome:
        """
        Load and reconcile the stored snapshot.

        A corrupt snapshot is logged and treated as no snapshot.
        """
        try:
            snapshot = self.store.load()
        except SnapshotError as e:
            self.logger.warning(f"Could not restore timer state, starting fresh: {e}")
            snapshot = None
        return reconcile(self.engine, snapshot, now_ms=now_ms)

    async def save_now(self) -> bool:
        """
        Snapshot the engine and write it off the event loop.

        Returns:
            True if the write succeeded. Failures are logged, never raised.
        """
        # One write at a time; the snapshot is taken once the lock is held
        async with self._get_save_lock():
            try:
                snapshot = PersistedSnapshot.capture(self.engine)
                await asyncio.to_thread(self.store.save, snapshot)
            except Exception as e:
                self.failure_count += 1
                self.logger.error(f"Failed to save timer state: {e}")
                return False

        self.save_count += 1
        self.logger.debug(
            f"Timer state saved ({snapshot.time_remaining}s, active={snapshot.is_active})"
        )
        return True

    def _get_save_lock(self) -> asyncio.Lock:
        """Get the write lock, creating it inside the running loop."""
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()
        return self._save_lock

    def request_save(self) -> None:
        """Schedule a save without waiting for it (engine save hook)."""
        try:
            task = asyncio.get_running_loop().create_task(self.save_now())
        except RuntimeError:
            self.logger.warning("No running event loop, save request dropped")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def start(self) -> None:
        """Start the autosave loop."""
        if self.running:
            self.logger.warning("Autosave already running")
            return

        self.running = True
        self._task = asyncio.create_task(self._autosave_loop())
        self.logger.info(f"Autosave started (interval: {self.interval}s)")

    async def stop(self) -> None:
        """
        Stop the autosave loop and write a final snapshot.
        """
        if self.running:
            self.running = False
            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        await self.save_now()
        self.logger.info("Autosave stopped, final state saved")

    async def _autosave_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.interval)
                await self.save_now()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception(f"Error in autosave loop: {e}")
