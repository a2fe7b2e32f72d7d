"""
lib/timer/broadcast.py

Best-effort delivery policy for observer broadcasts.

The transport (NATS publish, websocket fan-out, a test recorder) is an
injected callable. The gateway guarantees to its caller that:
- send() never blocks on delivery and never raises
- awaitable transports are scheduled as tasks, not awaited
- consecutive failures are counted, and after MAX_ERRORS the transport is
  no longer invoked until reset() is called
- any successful delivery resets the failure count
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set


logger = logging.getLogger(__name__)

# Consecutive failures before broadcasting is disabled
MAX_ERRORS = 10


class BroadcastGateway:
    """
    Wraps a delivery callable with error containment.

    Args:
        transport: Callable taking one JSON-able dict. May return an
            awaitable, in which case delivery completes in a task.
        clock: Monotonic clock used for success timestamps.
        max_errors: Consecutive failures before disabling delivery.
    """

    def __init__(
        self,
        transport: Optional[Callable[[Dict[str, Any]], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        max_errors: int = MAX_ERRORS
    ):
        self.transport = transport
        self.clock = clock
        self.max_errors = max_errors
        self.error_count = 0
        self.last_success: Optional[float] = None
        self.first_attempt: Optional[float] = None
        self.sent_count = 0
        self._pending: Set[asyncio.Task] = set()
        self._disabled_logged = False

    @property
    def disabled(self) -> bool:
        """True once the consecutive failure ceiling has been reached."""
        return self.error_count >= self.max_errors

    @property
    def pending_count(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def send(self, message: Dict[str, Any]) -> None:
        """
        Deliver a message without waiting for the result.

        Args:
            message: Broadcast message with a "type" discriminator.
        """
        if self.transport is None:
            return

        if self.disabled:
            if not self._disabled_logged:
                logger.error(
                    "Max broadcast errors reached, continuing without broadcasts"
                )
                self._disabled_logged = True
            return

        if self.first_attempt is None:
            self.first_attempt = self.clock()

        try:
            result = self.transport(message)
        except Exception as e:
            self._record_failure(message, e)
            return

        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            self._track(result, message)
        else:
            self._record_success()

    def reset(self) -> None:
        """Clear the failure count and re-enable delivery."""
        if self.error_count:
            logger.info(f"Broadcast error count reset (was {self.error_count})")
        self.error_count = 0
        self._disabled_logged = False

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def seconds_since_success(self) -> Optional[float]:
        """
        Seconds since the last successful delivery.

        Falls back to the first attempt when nothing has succeeded yet;
        None if nothing was ever attempted.
        """
        reference = self.last_success if self.last_success is not None else self.first_attempt
        if reference is None:
            return None
        return self.clock() - reference

    def _track(self, awaitable, message: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            # No running loop to deliver on
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self._record_failure(message, e)
            return

        task = asyncio.ensure_future(awaitable, loop=loop)

        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                self._record_failure(message, error)
            else:
                self._record_success()

        task.add_done_callback(_done)

    def _record_success(self) -> None:
        self.last_success = self.clock()
        self.sent_count += 1
        if self.error_count:
            self.reset()

    def _record_failure(self, message: Dict[str, Any], error: BaseException) -> None:
        self.error_count += 1
        logger.error(
            f"Broadcast of {message.get('type', 'unknown')} failed "
            f"({self.error_count}/{self.max_errors}): {error}"
        )
