"""
lib/timer/engine.py

Authoritative countdown state machine.

The engine never counts ticks to know how much time is left. While the
countdown runs it remembers the clock reading at start (started_at) and the
remaining seconds at that moment (base_remaining), and recomputes

    remaining = max(0, base_remaining - floor(now - started_at))

whenever anyone asks. Ticks only exist to push timer_update broadcasts and
to notice the countdown reaching zero.

All mutations happen under one re-entrant lock. Broadcasts and saves are
fire-and-forget: their failures never abort the operation that caused them.
"""

import asyncio
import logging
import math
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .broadcast import MAX_ERRORS, BroadcastGateway
from .scheduler import DriftCorrectingTicker
from .settings import STYLE_KEYS, Settings


logger = logging.getLogger(__name__)

# Used by reset() when no usable value is given, and for a fresh engine
DEFAULT_TIME_REMAINING = 3600

# Minimum seconds between recover() attempts
RECOVERY_COOLDOWN = 30.0

# Unresolved broadcast failures older than this are a health issue
BROADCAST_STALE_SECONDS = 60.0

# Broadcast message types
TIMER_STARTED = "timer_started"
TIMER_STOPPED = "timer_stopped"
TIMER_RESET = "timer_reset"
TIMER_UPDATE = "timer_update"
TIMER_ENDED = "timer_ended"
TIME_ADDED = "time_added"
SUBSCRIPTION = "subscription"
SETTINGS_UPDATED = "settings_updated"
TIMER_SIZE_UPDATE = "timer_size_update"
TIMER_STYLE_UPDATE = "timer_style_update"

MESSAGE_TYPES = (
    TIMER_STARTED,
    TIMER_STOPPED,
    TIMER_RESET,
    TIMER_UPDATE,
    TIMER_ENDED,
    TIME_ADDED,
    SUBSCRIPTION,
    SETTINGS_UPDATED,
    TIMER_SIZE_UPDATE,
    TIMER_STYLE_UPDATE,
)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


class TimerEngine:
    """
    Countdown timer with drift-corrected ticking, health checks and recovery.

    Args:
        broadcast: Transport callable for observer messages (may return an
            awaitable). None disables broadcasting.
        save_hook: Called after settings change so the owner can persist
            state. May return an awaitable.
        settings: Initial settings (defaults if None).
        time_remaining: Initial countdown value in seconds.
        clock: Monotonic clock in seconds, drives the countdown.
        wall_clock: Epoch clock in seconds, used for lastUpdate stamps.
        sleep: Awaitable sleep used by the ticker.
        tick_interval: Seconds between timer_update broadcasts.
        max_errors: Consecutive broadcast failures before disabling.

    Example:
        engine = TimerEngine(broadcast=publish, save_hook=persistence.request_save)
        engine.reset(7200)
        engine.start()
        engine.add_time(300, {"username": "viewer"})
    """

    def __init__(
        self,
        broadcast: Optional[Callable[[Dict[str, Any]], Any]] = None,
        save_hook: Optional[Callable[[], Any]] = None,
        settings: Optional[Settings] = None,
        time_remaining: int = DEFAULT_TIME_REMAINING,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_interval: float = 1.0,
        max_errors: int = MAX_ERRORS
    ):
        self.clock = clock
        self.wall_clock = wall_clock
        self.save_hook = save_hook
        self.gateway = BroadcastGateway(broadcast, clock=clock, max_errors=max_errors)
        self.ticker = DriftCorrectingTicker(
            self._on_tick, interval=tick_interval, clock=clock, sleep=sleep
        )

        self.settings = settings.copy() if settings else Settings()
        self.time_remaining = max(0, int(time_remaining))
        self.is_active = False
        self.started_at: Optional[float] = None
        self.base_remaining: Optional[int] = None
        self.last_recovery_attempt: Optional[float] = None

        self._lock = threading.RLock()

    # =========================================================================
    # Time Derivation
    # =========================================================================

    def _current_remaining(self) -> int:
        if not self.is_active or self.started_at is None:
            return self.time_remaining
        elapsed = int(math.floor(self.clock() - self.started_at))
        return max(0, self.base_remaining - elapsed)

    def _halt(self) -> None:
        """Cancel ticking and freeze the countdown, without broadcasting."""
        self.ticker.stop()
        if self.is_active:
            self.time_remaining = self._current_remaining()
        self.is_active = False
        self.started_at = None
        self.base_remaining = None

    def _state_message(self, message_type: str, **extra: Any) -> Dict[str, Any]:
        message = {
            "type": message_type,
            "timeRemaining": self.time_remaining,
            "isActive": self.is_active,
        }
        message.update(extra)
        return message

    # =========================================================================
    # Control Operations
    # =========================================================================

    def start(self) -> None:
        """
        Start (or restart) the countdown.

        Must be called from inside a running event loop.

        Raises:
            RuntimeError: If there is no running event loop.
        """
        with self._lock:
            if self.is_active or self.ticker.running:
                self._halt()

            self.is_active = True
            self.started_at = self.clock()
            self.base_remaining = self.time_remaining

            try:
                self.ticker.start()
            except RuntimeError:
                logger.error("Cannot start timer without a running event loop")
                self._halt()
                raise

            logger.info(f"Starting timer with {self.time_remaining} seconds remaining")
            self.broadcast(self._state_message(TIMER_STARTED))

    def stop(self) -> None:
        """Stop the countdown, freezing the remaining time. Safe to repeat."""
        with self._lock:
            self._halt()
            logger.info(f"Timer stopped with {self.time_remaining} seconds remaining")
            self.broadcast(self._state_message(TIMER_STOPPED))

    def reset(self, seconds: Any = DEFAULT_TIME_REMAINING) -> None:
        """
        Stop and set the countdown to a new value.

        Args:
            seconds: New remaining time. Negative values clamp to 0;
                non-numeric or non-finite values use the default.
        """
        if not _is_number(seconds):
            logger.warning(
                f"Invalid reset value {seconds!r}, using {DEFAULT_TIME_REMAINING}"
            )
            seconds = DEFAULT_TIME_REMAINING

        with self._lock:
            self._halt()
            self.time_remaining = max(0, int(math.floor(seconds)))
            logger.info(f"Timer reset to {self.time_remaining} seconds")
            self.broadcast(self._state_message(TIMER_RESET))

    def add_time(
        self,
        seconds: Any,
        subscriber_details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Extend the countdown.

        Fractions of a second are dropped. Invalid amounts are logged and
        ignored.

        Args:
            seconds: Seconds to add; must be a positive finite number.
            subscriber_details: Who triggered the extension, if anyone.

        Returns:
            True if time was added, False if the amount was rejected.
        """
        if not _is_number(seconds) or seconds <= 0:
            logger.warning(f"Invalid time addition: {seconds!r}")
            return False

        added = int(math.floor(seconds))
        if added <= 0:
            logger.warning(f"Time addition {seconds!r} rounds down to zero, ignored")
            return False

        with self._lock:
            previous = self._current_remaining()
            self.time_remaining = previous + added

            if self.is_active:
                # Keep started_at so the sub-second phase is preserved
                elapsed = int(math.floor(self.clock() - self.started_at))
                self.base_remaining = self.time_remaining + elapsed

            logger.info(
                f"Added {added} seconds to timer ({previous} -> {self.time_remaining})"
            )

            extra = {"addedTime": added, "previousTime": previous}
            if subscriber_details:
                extra["subscriber"] = subscriber_details
            self.broadcast(self._state_message(TIME_ADDED, **extra))

        return True

    def load_state(
        self,
        time_remaining: int,
        settings: Optional[Settings] = None
    ) -> None:
        """
        Seed the engine with restored state, inactive and without broadcasting.

        Args:
            time_remaining: Remaining seconds to restore.
            settings: Settings to restore (kept as-is if None).
        """
        with self._lock:
            self._halt()
            self.time_remaining = max(0, int(time_remaining))
            if settings is not None:
                self.settings = settings.copy()

    # =========================================================================
    # State and Settings
    # =========================================================================

    def get_state(self) -> Dict[str, Any]:
        """
        Get a snapshot of the timer state.

        Returns:
            Dict with timeRemaining, isActive, settings, lastUpdate (epoch
            ms) and errorCount.
        """
        with self._lock:
            if self.is_active:
                self.time_remaining = self._current_remaining()
            return {
                "timeRemaining": self.time_remaining,
                "isActive": self.is_active,
                "settings": self.settings.to_dict(),
                "lastUpdate": int(self.wall_clock() * 1000),
                "errorCount": self.gateway.error_count,
            }

    def get_settings(self) -> Settings:
        """Get a copy of the current settings."""
        with self._lock:
            return self.settings.copy()

    def update_settings(self, partial: Mapping[str, Any]) -> Settings:
        """
        Merge a partial settings update.

        Each field is validated on its own; invalid fields are ignored and
        the rest still apply.

        Args:
            partial: Mapping of wire (camelCase) keys to new values.

        Returns:
            Copy of the settings after the update.
        """
        if not isinstance(partial, Mapping):
            logger.warning(f"Ignored settings update of type {type(partial).__name__}")
            return self.get_settings()

        with self._lock:
            self.settings, applied = self.settings.merge(partial)
            logger.debug(f"Settings fields applied: {applied}")

            if "timerSize" in applied:
                self.broadcast({
                    "type": TIMER_SIZE_UPDATE,
                    "size": self.settings.timer_size,
                })

            if any(key in STYLE_KEYS for key in applied):
                self.broadcast({
                    "type": TIMER_STYLE_UPDATE,
                    "style": self.settings.style(),
                })

            self.broadcast({
                "type": SETTINGS_UPDATED,
                "settings": self.settings.to_dict(),
            })
            updated = self.settings.copy()

        self._request_save()
        logger.info("Settings updated successfully")
        return updated

    # =========================================================================
    # Broadcasting and Saving
    # =========================================================================

    def broadcast(self, message: Dict[str, Any]) -> None:
        """Send a message to observers, best effort."""
        self.gateway.send(message)

    def _request_save(self) -> None:
        if self.save_hook is None:
            return

        try:
            result = self.save_hook()
        except Exception as e:
            logger.warning(f"Failed to save state after settings update: {e}")
            return

        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError as e:
                if asyncio.iscoroutine(result):
                    result.close()
                logger.warning(f"Failed to save state after settings update: {e}")
                return
            task = asyncio.ensure_future(result, loop=loop)

            def _done(t: asyncio.Future) -> None:
                if not t.cancelled() and t.exception() is not None:
                    logger.warning(
                        f"Failed to save state after settings update: {t.exception()}"
                    )

            task.add_done_callback(_done)

    # =========================================================================
    # Ticking
    # =========================================================================

    def _on_tick(self) -> None:
        with self._lock:
            if not self.is_active:
                self.ticker.stop()
                return

            remaining = self._current_remaining()
            self.time_remaining = remaining

            if remaining > 0:
                self.broadcast(self._state_message(TIMER_UPDATE))
                return

            logger.info("Timer reached zero, stopping")
            self._halt()
            self.time_remaining = 0
            self.broadcast(self._state_message(TIMER_ENDED))

    # =========================================================================
    # Health and Recovery
    # =========================================================================

    def is_healthy(self) -> Dict[str, Any]:
        """
        Check internal consistency and broadcast health.

        Returns:
            Dict with healthy (bool), issues (list of str) and a state
            summary.
        """
        with self._lock:
            issues: List[str] = []
            has_ticker = self.ticker.is_running

            if self.is_active and not has_ticker:
                issues.append("Timer is marked active but no ticker is running")
            if not self.is_active and has_ticker:
                issues.append("Timer is marked inactive but ticker is still running")

            if self.gateway.disabled:
                issues.append("Max broadcast error count reached")

            since_success = self.gateway.seconds_since_success()
            if (
                self.gateway.error_count > 0
                and since_success is not None
                and since_success > BROADCAST_STALE_SECONDS
            ):
                issues.append("No successful broadcast in last 60 seconds")

            return {
                "healthy": not issues,
                "issues": issues,
                "state": {
                    "isActive": self.is_active,
                    "hasTicker": has_ticker,
                    "timeRemaining": self._current_remaining(),
                    "errorCount": self.gateway.error_count,
                    "secondsSinceBroadcast": since_success,
                },
            }

    def recovery_cooldown_remaining(self) -> float:
        """Seconds until recover() will accept another attempt."""
        if self.last_recovery_attempt is None:
            return 0.0
        waited = self.clock() - self.last_recovery_attempt
        return max(0.0, RECOVERY_COOLDOWN - waited)

    def recover(self) -> bool:
        """
        Try to bring the engine back to a consistent state.

        Cancels any stray ticker, re-enables broadcasting and restarts the
        countdown if it should be running. Rate limited to one attempt per
        RECOVERY_COOLDOWN seconds.

        Returns:
            True if recovery completed, False if rejected by the cooldown
            or if it failed.
        """
        cooldown = self.recovery_cooldown_remaining()
        if cooldown > 0:
            logger.warning(
                f"Recovery attempt ignored - cooldown active ({round(cooldown)}s remaining)"
            )
            return False

        self.last_recovery_attempt = self.clock()
        logger.info("Attempting timer recovery...")

        with self._lock:
            try:
                self.ticker.stop()
                self.gateway.reset()

                if self.is_active and self._current_remaining() > 0:
                    self.start()
                    logger.info("Timer recovery successful - restarted active timer")
                else:
                    self._halt()
                    logger.info("Timer recovery successful - timer is inactive")
                return True

            except Exception as e:
                logger.error(f"Timer recovery failed: {e}", exc_info=True)
                return False

    def get_stats(self) -> Dict[str, Any]:
        """Get state plus ticker and broadcast internals, for diagnostics."""
        with self._lock:
            stats = self.get_state()
            stats.update({
                "hasTicker": self.ticker.is_running,
                "tickCount": self.ticker.tick_count,
                "startedAt": self.started_at,
                "baseRemaining": self.base_remaining,
                "broadcastsSent": self.gateway.sent_count,
                "broadcastsPending": self.gateway.pending_count,
                "broadcastDisabled": self.gateway.disabled,
                "health": self.is_healthy(),
            })
            return stats

    async def close(self, drain_timeout: float = 2.0) -> None:
        """
        Shut down quietly: halt ticking and flush in-flight broadcasts.

        Args:
            drain_timeout: Seconds to wait for pending deliveries.
        """
        with self._lock:
            self._halt()
        await self.ticker.wait_stopped()

        try:
            await asyncio.wait_for(self.gateway.drain(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{self.gateway.pending_count} broadcasts still pending at shutdown"
            )
        logger.info("Timer engine closed")
