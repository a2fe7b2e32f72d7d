"""
lib/timer/__init__.py

Subathon countdown core.

Provides:
- TimerEngine: authoritative countdown with drift-corrected ticking,
  health checks and recovery
- Settings: tier extension policy and display parameters
- Subscription translation from normalized or Twitch usernotice events
- Snapshot persistence and startup reconciliation
- Best-effort broadcast gateway
"""

from .broadcast import MAX_ERRORS, BroadcastGateway
from .engine import DEFAULT_TIME_REMAINING, RECOVERY_COOLDOWN, TimerEngine
from .errors import (
    SettingsValidationError,
    SnapshotError,
    SubscriptionEventError,
    TimerError,
)
from .persistence import (
    PersistedSnapshot,
    ReconcileOutcome,
    SnapshotStore,
    StatePersistence,
    reconcile,
)
from .scheduler import DriftCorrectingTicker
from .settings import Settings
from .subscriptions import (
    RecentEventFilter,
    SubscriptionEvent,
    SubscriptionKind,
    Tier,
    TimeExtension,
    add_time_for_subscription,
    translate,
)

__all__ = [
    "TimerEngine",
    "DEFAULT_TIME_REMAINING",
    "RECOVERY_COOLDOWN",
    "BroadcastGateway",
    "MAX_ERRORS",
    "DriftCorrectingTicker",
    "Settings",
    "SubscriptionEvent",
    "SubscriptionKind",
    "Tier",
    "TimeExtension",
    "translate",
    "add_time_for_subscription",
    "RecentEventFilter",
    "PersistedSnapshot",
    "SnapshotStore",
    "StatePersistence",
    "ReconcileOutcome",
    "reconcile",
    "TimerError",
    "SettingsValidationError",
    "SubscriptionEventError",
    "SnapshotError",
]
