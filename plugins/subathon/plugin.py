"""
plugins/subathon/plugin.py

Subathon timer plugin using NATS-based architecture.

NATS Subjects:
    Command Handlers (request/reply):
        subathon.command.timer.start - Start the countdown
        subathon.command.timer.stop - Stop the countdown
        subathon.command.timer.reset - Reset to a number of seconds
        subathon.command.timer.add - Add seconds
        subathon.command.timer.state - Get the current state
        subathon.command.timer.settings.get - Get settings
        subathon.command.timer.settings.update - Partially update settings
        subathon.command.timer.health - Health report and diagnostics
        subathon.command.timer.recover - Attempt recovery
        subathon.command.timer.simulate - Simulate a subscription (dev only)

    Platform Events (subscribed):
        subathon.platform.twitch.subscription - Normalized subscription event
        subathon.platform.twitch.usernotice - Raw Twitch usernotice tags

    Events (Published):
        subathon.event.timer.<type> - One subject per broadcast type
            (timer_update, time_added, subscription, ...)
"""

import json
import logging
import math
from typing import Any, Callable, Dict, Optional

from nats.aio.client import Client as NATS

from core import subjects
from lib.timer import (
    DEFAULT_TIME_REMAINING,
    RecentEventFilter,
    Settings,
    SnapshotStore,
    StatePersistence,
    SubscriptionEvent,
    SubscriptionEventError,
    TimerEngine,
    add_time_for_subscription,
)
from lib.timer.engine import MESSAGE_TYPES
from lib.timer.settings import NUMBER, RULES_BY_KEY


def _to_number(value: Any) -> Optional[float]:
    """Coerce a JSON value or numeric string to a finite number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


class SubathonPlugin:
    """
    Subathon countdown plugin.

    Owns one TimerEngine, restores it from the snapshot file at startup,
    autosaves it while running, and exposes it over NATS.

    Features:
        - Request/reply control commands
        - Time extension from Twitch subscription events
        - Duplicate delivery suppression by platform event id
        - Broadcast of every state change on per-type event subjects
        - Resume after restart (within the resume window)
    """

    # Plugin metadata
    NAMESPACE = "subathon"
    VERSION = "1.0.0"
    DESCRIPTION = "Subathon countdown extended by subscriptions"

    # NATS subjects - Commands
    SUBJECT_START = subjects.TIMER_START
    SUBJECT_STOP = subjects.TIMER_STOP
    SUBJECT_RESET = subjects.TIMER_RESET
    SUBJECT_ADD = subjects.TIMER_ADD
    SUBJECT_STATE = subjects.TIMER_STATE
    SUBJECT_SETTINGS_GET = subjects.TIMER_SETTINGS_GET
    SUBJECT_SETTINGS_UPDATE = subjects.TIMER_SETTINGS_UPDATE
    SUBJECT_HEALTH = subjects.TIMER_HEALTH
    SUBJECT_RECOVER = subjects.TIMER_RECOVER
    SUBJECT_SIMULATE = subjects.TIMER_SIMULATE

    # NATS subjects - Platform events
    SUBJECT_SUBSCRIPTION = subjects.TWITCH_SUBSCRIPTION
    SUBJECT_USERNOTICE = subjects.TWITCH_USERNOTICE

    def __init__(self, nats_client: NATS, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the subathon plugin.

        Args:
            nats_client: Connected NATS client for messaging.
            config: Optional configuration dictionary (the "subathon"
                section of the service config).
        """
        self.nats = nats_client
        self.config = config or {}
        self.logger = logging.getLogger(f"plugin.{self.NAMESPACE}")

        # Configuration with defaults
        self.state_file = self.config.get("state_file", "timer_state.json")
        self.autosave_interval = self.config.get("autosave_interval", 30)
        self.initial_time = self.config.get("initial_time", DEFAULT_TIME_REMAINING)
        self.enable_simulation = self.config.get("enable_simulation", False)
        self.dedup_capacity = self.config.get("dedup_capacity", 1000)

        self.engine: Optional[TimerEngine] = None
        self.persistence: Optional[StatePersistence] = None
        self.recent_events = RecentEventFilter(self.dedup_capacity)

        # Subscription tracking
        self._subscriptions = []
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize the plugin.

        - Builds the engine from configured settings
        - Restores and reconciles the saved snapshot
        - Starts autosave
        - Subscribes to NATS subjects

        Raises:
            SettingsValidationError: If configured settings are invalid.
        """
        self.logger.info(f"Initializing {self.NAMESPACE} plugin v{self.VERSION}")

        settings = Settings.from_config(self.config.get("settings"))
        self.engine = TimerEngine(
            broadcast=self._publish_broadcast,
            settings=settings,
            time_remaining=self.initial_time,
        )
        self.persistence = StatePersistence(
            self.engine,
            SnapshotStore(self.state_file),
            interval=self.autosave_interval,
        )
        self.engine.save_hook = self.persistence.request_save

        outcome = self.persistence.restore()
        await self.persistence.start()

        handlers = {
            self.SUBJECT_START: self._handle_start,
            self.SUBJECT_STOP: self._handle_stop,
            self.SUBJECT_RESET: self._handle_reset,
            self.SUBJECT_ADD: self._handle_add,
            self.SUBJECT_STATE: self._handle_state,
            self.SUBJECT_SETTINGS_GET: self._handle_settings_get,
            self.SUBJECT_SETTINGS_UPDATE: self._handle_settings_update,
            self.SUBJECT_HEALTH: self._handle_health,
            self.SUBJECT_RECOVER: self._handle_recover,
            self.SUBJECT_SUBSCRIPTION: self._handle_subscription,
            self.SUBJECT_USERNOTICE: self._handle_usernotice,
        }
        if self.enable_simulation:
            handlers[self.SUBJECT_SIMULATE] = self._handle_simulate

        for subject, handler in handlers.items():
            sub = await self.nats.subscribe(subject, cb=handler)
            self._subscriptions.append(sub)

        self._initialized = True
        self.logger.info(
            f"{self.NAMESPACE} plugin loaded ({outcome.value}, "
            f"{self.engine.time_remaining}s remaining)"
        )

    async def shutdown(self) -> None:
        """
        Shutdown the plugin.

        - Unsubscribes from NATS subjects
        - Stops autosave and writes a final snapshot (before the engine
          halts, so a running countdown is saved as active)
        - Closes the engine
        """
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions.clear()

        if self.persistence:
            await self.persistence.stop()

        if self.engine:
            await self.engine.close()

        self._initialized = False
        self.logger.info(f"{self.NAMESPACE} plugin unloaded")

    # =========================================================================
    # Broadcast Transport
    # =========================================================================

    def _publish_broadcast(self, message: Dict[str, Any]):
        """
        Publish a broadcast on its per-type subject.

        Returns the publish coroutine; the engine's gateway schedules it.

        Raises:
            ValueError: If the message type is not a timer broadcast type
                (the gateway logs and counts it as a failed delivery).
        """
        message_type = message.get("type")
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown broadcast type: {message_type!r}")
        subject = subjects.timer_event(message_type)
        return self.nats.publish(subject, json.dumps(message).encode())

    # =========================================================================
    # Command Handlers
    # =========================================================================

    async def _handle_start(self, msg) -> None:
        """
        Handle start command.

        Message format: {} (or {"reply_to": "..."})
        """
        await self._run_command(msg, "start", self._start)

    async def _handle_stop(self, msg) -> None:
        """Handle stop command."""
        await self._run_command(msg, "stop", self._stop)

    async def _handle_reset(self, msg) -> None:
        """
        Handle reset command.

        Message format:
        {
            "seconds": 7200
        }
        """
        await self._run_command(msg, "reset", self._reset)

    async def _handle_add(self, msg) -> None:
        """
        Handle add command.

        Message format:
        {
            "seconds": 300
        }
        """
        await self._run_command(msg, "add", self._add)

    async def _handle_state(self, msg) -> None:
        """Handle state command."""
        await self._run_command(msg, "state", self._state)

    async def _handle_settings_get(self, msg) -> None:
        """Handle settings.get command."""
        await self._run_command(msg, "settings.get", self._settings_get)

    async def _handle_settings_update(self, msg) -> None:
        """
        Handle settings.update command.

        Message format:
        {
            "settings": {"tier2SubTime": 600, "timerColor": "#ff0000"}
        }
        The settings fields may also be sent at the top level.
        """
        await self._run_command(msg, "settings.update", self._settings_update)

    async def _handle_health(self, msg) -> None:
        """Handle health command."""
        await self._run_command(msg, "health", self._health)

    async def _handle_recover(self, msg) -> None:
        """Handle recover command."""
        await self._run_command(msg, "recover", self._recover)

    async def _handle_simulate(self, msg) -> None:
        """
        Handle simulate command (development only).

        Message format:
        {
            "username": "viewer",
            "tier": "1" | "2" | "3" | "prime",
            "type": "sub" | "resub" | "gift",
            "count": 5
        }
        """
        await self._run_command(msg, "simulate", self._simulate)

    async def _run_command(
        self,
        msg,
        action: str,
        command: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> None:
        """
        Decode a command, run it and reply with its result.

        Every path produces a structured reply when the caller asked for one.
        """
        reply_to = getattr(msg, "reply", None) or None
        try:
            data = self._decode(msg)
            reply_to = reply_to or data.get("reply_to")
            response = command(data)
            await self._send_reply(reply_to, response)

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in {action} request: {e}")
            await self._send_reply(reply_to, {
                "success": False,
                "message": "Invalid JSON"
            })
        except Exception as e:
            self.logger.exception(f"Error handling {action}: {e}")
            await self._send_reply(reply_to, {
                "success": False,
                "message": f"Failed to {action}: {e}"
            })

    def _start(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.engine.start()
        self._request_save()
        return {
            "success": True,
            "message": "Timer started",
            "state": self.engine.get_state()
        }

    def _stop(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.engine.stop()
        self._request_save()
        return {
            "success": True,
            "message": "Timer stopped",
            "state": self.engine.get_state()
        }

    def _reset(self, data: Dict[str, Any]) -> Dict[str, Any]:
        raw = data.get("seconds")
        if raw is None:
            self.engine.reset()
        else:
            # Unparseable values fall through to the engine's default
            number = _to_number(raw)
            self.engine.reset(number if number is not None else raw)
        self._request_save()

        state = self.engine.get_state()
        return {
            "success": True,
            "message": f"Timer reset to {state['timeRemaining']} seconds",
            "state": state
        }

    def _add(self, data: Dict[str, Any]) -> Dict[str, Any]:
        seconds = _to_number(data.get("seconds"))
        if seconds is None or seconds <= 0 or not self.engine.add_time(seconds):
            return {"success": False, "message": "Invalid seconds value"}

        self._request_save()
        return {
            "success": True,
            "message": f"Added {int(seconds)} seconds",
            "state": self.engine.get_state()
        }

    def _state(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "state": self.engine.get_state()}

    def _settings_get(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "settings": self.engine.get_settings().to_dict()}

    def _settings_update(self, data: Dict[str, Any]) -> Dict[str, Any]:
        partial = data.get("settings")
        if partial is None:
            partial = {k: v for k, v in data.items() if k != "reply_to"}
        if not isinstance(partial, dict):
            return {"success": False, "message": "Settings must be an object"}

        updated = self.engine.update_settings(self._coerce_settings(partial))
        return {
            "success": True,
            "message": "Settings updated",
            "settings": updated.to_dict()
        }

    def _health(self, data: Dict[str, Any]) -> Dict[str, Any]:
        stats = self.engine.get_stats()
        health = stats.pop("health")
        return {"success": True, **health, "stats": stats}

    def _recover(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.engine.recover():
            return {
                "success": True,
                "message": "Timer recovered",
                "health": self.engine.is_healthy()
            }

        cooldown = self.engine.recovery_cooldown_remaining()
        if cooldown > 0:
            wait = int(math.ceil(cooldown))
            return {
                "success": False,
                "message": f"Recovery cooldown active, try again in {wait} seconds",
                "retryAfter": wait
            }
        return {"success": False, "message": "Recovery failed"}

    def _simulate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            event = SubscriptionEvent.from_payload(data, strict=True)
        except SubscriptionEventError as e:
            return {"success": False, "message": str(e)}

        extension = add_time_for_subscription(self.engine, event)
        self._request_save()
        return {
            "success": True,
            "message": f"Simulated {event.kind.value} from {event.username}",
            "timeAdded": extension.seconds,
            "state": self.engine.get_state()
        }

    # =========================================================================
    # Platform Event Handlers
    # =========================================================================

    async def _handle_subscription(self, msg) -> None:
        """
        Handle a normalized subscription event.

        Message format:
        {
            "username": "viewer",
            "tierCode": "1" | "2" | "3" | "prime",
            "eventKind": "sub" | "resub" | "gift",
            "count": 1,
            "recipient": "other_viewer",
            "months": 12,
            "eventId": "abc-123"
        }
        """
        try:
            data = self._decode(msg)
            event = SubscriptionEvent.from_payload(data)
            self._apply_subscription(event)

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in subscription event: {e}")
        except SubscriptionEventError as e:
            self.logger.warning(f"Ignored subscription event: {e}")
        except Exception as e:
            self.logger.exception(f"Error handling subscription event: {e}")

    async def _handle_usernotice(self, msg) -> None:
        """
        Handle a raw Twitch usernotice.

        Message format: the IRC tag dictionary, either at the top level or
        under "tags". Notices that are not subscriptions are ignored.
        """
        try:
            data = self._decode(msg)
            tags = data.get("tags", data)
            event = SubscriptionEvent.from_usernotice(tags)
            if event is None:
                self.logger.debug("Ignored non-subscription usernotice")
                return
            self._apply_subscription(event)

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in usernotice event: {e}")
        except Exception as e:
            self.logger.exception(f"Error handling usernotice event: {e}")

    def _apply_subscription(self, event: SubscriptionEvent) -> None:
        if self.recent_events.seen(event.event_id):
            self.logger.info(f"Duplicate subscription event {event.event_id} ignored")
            return
        add_time_for_subscription(self.engine, event)
        self._request_save()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _decode(self, msg) -> Dict[str, Any]:
        """
        Decode a JSON message body.

        An empty body is an empty request; a body that is valid JSON but
        not an object is treated the same way.

        Raises:
            json.JSONDecodeError: If the body is not valid JSON.
        """
        if not msg.data:
            return {}
        data = json.loads(msg.data.decode())
        if not isinstance(data, dict):
            self.logger.warning(f"Expected a JSON object, got {type(data).__name__}")
            return {}
        return data

    def _coerce_settings(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Convert numeric strings for numeric fields ("600" -> 600.0)."""
        coerced = {}
        for key, value in partial.items():
            rule = RULES_BY_KEY.get(key)
            if rule is not None and rule.kind == NUMBER and isinstance(value, str):
                number = _to_number(value)
                if number is not None:
                    value = number
            coerced[key] = value
        return coerced

    def _request_save(self) -> None:
        if self.persistence:
            self.persistence.request_save()

    async def _send_reply(self, reply_to: Optional[str], response: dict) -> None:
        """
        Send a reply to a command.

        Args:
            reply_to: NATS subject to reply to.
            response: Response dictionary.
        """
        if reply_to:
            await self.nats.publish(reply_to, json.dumps(response).encode())
