"""
lib/timer/subscriptions.py

Subscription event normalization and time-extension policy.

Provides:
- SubscriptionEvent dataclass built from normalized payloads or raw Twitch
  usernotice tags
- translate(): pure mapping from an event and Settings to a TimeExtension
- add_time_for_subscription(): applies a translated event to a TimerEngine
- RecentEventFilter for dropping repeated deliveries of one platform event
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import SubscriptionEventError
from .settings import Settings


logger = logging.getLogger(__name__)


# =============================================================================
# Tiers and Kinds
# =============================================================================

class Tier(Enum):
    """Subscription tier, valued by its normalized tier code."""
    TIER_1 = "1"
    TIER_2 = "2"
    TIER_3 = "3"
    PRIME = "prime"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return TIER_LABELS[self]

    @property
    def sub_plan(self) -> Optional[str]:
        """Twitch msg-param-sub-plan value for this tier."""
        return TIER_SUB_PLANS.get(self)


class SubscriptionKind(Enum):
    """What happened: a new sub, a resub, or gifted subs."""
    SUB = "sub"
    RESUB = "resub"
    GIFT = "gift"

    @property
    def msg_id(self) -> str:
        return KIND_MSG_IDS[self]

    @property
    def sub_type(self) -> str:
        return KIND_SUB_TYPES[self]


TIER_LABELS = {
    Tier.TIER_1: "Tier 1",
    Tier.TIER_2: "Tier 2",
    Tier.TIER_3: "Tier 3",
    Tier.PRIME: "Prime",
    Tier.UNKNOWN: "Unknown",
}

TIER_SUB_PLANS = {
    Tier.TIER_1: "1000",
    Tier.TIER_2: "2000",
    Tier.TIER_3: "3000",
    Tier.PRIME: "Prime",
}

# Accepted spellings of each tier, from normalized payloads and Twitch plans
TIER_CODES = {
    "1": Tier.TIER_1,
    "1000": Tier.TIER_1,
    "2": Tier.TIER_2,
    "2000": Tier.TIER_2,
    "3": Tier.TIER_3,
    "3000": Tier.TIER_3,
    "prime": Tier.PRIME,
}

KIND_MSG_IDS = {
    SubscriptionKind.SUB: "sub",
    SubscriptionKind.RESUB: "resub",
    SubscriptionKind.GIFT: "subgift",
}

KIND_SUB_TYPES = {
    SubscriptionKind.SUB: "subscription",
    SubscriptionKind.RESUB: "resub",
    SubscriptionKind.GIFT: "gift",
}

KIND_CODES = {
    "sub": SubscriptionKind.SUB,
    "subscription": SubscriptionKind.SUB,
    "resub": SubscriptionKind.RESUB,
    "gift": SubscriptionKind.GIFT,
    "subgift": SubscriptionKind.GIFT,
}

# Twitch usernotice msg-ids that grant time. A community gift
# (submysterygift) is followed by one subgift per recipient, so only the
# individual notices count.
USERNOTICE_KINDS = {
    "sub": SubscriptionKind.SUB,
    "resub": SubscriptionKind.RESUB,
    "subgift": SubscriptionKind.GIFT,
}

# Settings attribute holding the per-unit amount for each known tier
TIER_SETTINGS = {
    Tier.TIER_1: "regular_sub_time",
    Tier.TIER_2: "tier2_sub_time",
    Tier.TIER_3: "tier3_sub_time",
    Tier.PRIME: "prime_sub_time",
}

DEFAULT_USERNAME = "Anonymous"


def parse_tier(code: Any) -> Optional[Tier]:
    """
    Map a tier code ("1", "2000", "Prime", 3, ...) to a Tier.

    Returns:
        Tier, or None if the code is not recognized.
    """
    if code is None or isinstance(code, bool):
        return None
    return TIER_CODES.get(str(code).strip().lower())


def _positive_int(value: Any, default: int = 1) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


# =============================================================================
# Subscription Event
# =============================================================================

@dataclass
class SubscriptionEvent:
    """
    A normalized subscription notification.

    Attributes:
        username: Who subscribed (or gifted).
        tier: Subscription tier.
        kind: New sub, resub or gift.
        count: Number of gifted subs (1 for non-gifts).
        recipient: Gift recipient, when a single named gift.
        months: Cumulative months, for resubs.
        event_id: Platform message id, used to drop duplicates.
        sub_plan: Raw platform plan code, if known.
    """

    username: str
    tier: Tier
    kind: SubscriptionKind
    count: int = 1
    recipient: Optional[str] = None
    months: Optional[int] = None
    event_id: Optional[str] = None
    sub_plan: Optional[str] = None

    def __post_init__(self):
        if self.kind is not SubscriptionKind.GIFT:
            self.count = 1
        elif self.count < 1:
            self.count = 1
        if self.sub_plan is None:
            self.sub_plan = self.tier.sub_plan

    @classmethod
    def from_payload(cls, data: Mapping[str, Any], strict: bool = False) -> "SubscriptionEvent":
        """
        Build an event from a normalized payload.

        Payload fields: username, tierCode (or tier), eventKind (or kind /
        type), count, recipient, months, eventId.

        Args:
            data: Normalized event payload.
            strict: Reject unknown tiers instead of falling back. Used for
                simulated events, where a bad tier is a caller mistake.

        Returns:
            SubscriptionEvent instance.

        Raises:
            SubscriptionEventError: If the payload is not a mapping, the
                kind is unknown, or strict and the tier is unknown.
        """
        if not isinstance(data, Mapping):
            raise SubscriptionEventError("Subscription payload must be an object")

        kind_code = data.get("eventKind", data.get("kind", data.get("type", "sub")))
        kind = KIND_CODES.get(str(kind_code).strip().lower())
        if kind is None:
            raise SubscriptionEventError("Invalid type")

        tier_code = data.get("tierCode", data.get("tier", "1"))
        tier = parse_tier(tier_code)
        if tier is None:
            if strict:
                raise SubscriptionEventError("Invalid tier")
            tier = Tier.UNKNOWN

        username = data.get("username")
        if not isinstance(username, str) or not username.strip():
            username = DEFAULT_USERNAME

        recipient = data.get("recipient")
        if kind is not SubscriptionKind.GIFT or not isinstance(recipient, str) or not recipient:
            recipient = None

        months = _optional_int(data.get("months")) if kind is SubscriptionKind.RESUB else None

        event_id = data.get("eventId")
        sub_plan = None
        if tier is Tier.UNKNOWN and tier_code is not None:
            sub_plan = str(tier_code)

        return cls(
            username=username.strip(),
            tier=tier,
            kind=kind,
            count=_positive_int(data.get("count", 1)),
            recipient=recipient,
            months=months,
            event_id=str(event_id) if event_id else None,
            sub_plan=sub_plan,
        )

    @classmethod
    def from_usernotice(cls, tags: Mapping[str, Any]) -> Optional["SubscriptionEvent"]:
        """
        Build an event from raw Twitch IRC usernotice tags.

        Args:
            tags: Tag dictionary (msg-id, display-name, msg-param-*, id).

        Returns:
            SubscriptionEvent, or None if the notice is not a subscription.
        """
        if not isinstance(tags, Mapping):
            return None

        kind = USERNOTICE_KINDS.get(str(tags.get("msg-id", "")).lower())
        if kind is None:
            return None

        username = tags.get("display-name") or tags.get("login") or DEFAULT_USERNAME
        plan = tags.get("msg-param-sub-plan")
        tier = parse_tier(plan) or Tier.UNKNOWN

        count = 1
        recipient = None
        if kind is SubscriptionKind.GIFT:
            count = _positive_int(tags.get("msg-param-gift-months"))
            recipient = (
                tags.get("msg-param-recipient-display-name")
                or tags.get("msg-param-recipient-user-name")
            )

        months = None
        if kind is SubscriptionKind.RESUB:
            months = _optional_int(tags.get("msg-param-cumulative-months"))

        return cls(
            username=username,
            tier=tier,
            kind=kind,
            count=count,
            recipient=recipient or None,
            months=months,
            event_id=tags.get("id") or None,
            sub_plan=plan if plan is not None else tier.sub_plan,
        )


# =============================================================================
# Translation
# =============================================================================

@dataclass
class TimeExtension:
    """
    Result of translating a subscription event.

    Attributes:
        seconds: Total whole seconds to add.
        details: Subscriber details attached to the time_added broadcast.
        payload: The "subscription" broadcast message.
        fallback: True if an unknown tier used a fallback amount.
    """

    seconds: int
    details: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False


def seconds_per_unit(event: SubscriptionEvent, settings: Settings) -> float:
    """
    Look up the per-unit extension for an event's tier.

    Unknown tiers fall back to giftSubTime for gifts and regularSubTime
    otherwise.
    """
    attr = TIER_SETTINGS.get(event.tier)
    if attr is None:
        if event.kind is SubscriptionKind.GIFT:
            return settings.gift_sub_time
        return settings.regular_sub_time
    return getattr(settings, attr)


def translate(event: SubscriptionEvent, settings: Settings) -> TimeExtension:
    """
    Translate a subscription event into a time extension.

    Args:
        event: Normalized subscription event.
        settings: Current settings (tier amounts).

    Returns:
        TimeExtension with the seconds to add and both payloads.
    """
    per_unit = seconds_per_unit(event, settings)
    fallback = event.tier is Tier.UNKNOWN

    if fallback:
        source = "giftSubTime" if event.kind is SubscriptionKind.GIFT else "regularSubTime"
        logger.warning(
            f"Unknown sub plan {event.sub_plan!r} for {event.kind.value} "
            f"from {event.username}, using {source}"
        )

    units = event.count if event.kind is SubscriptionKind.GIFT else 1
    # Whole seconds, matching what the engine adds
    seconds = int(math.floor(per_unit * units))

    tier_name = event.tier.label
    if fallback and event.kind is SubscriptionKind.GIFT:
        tier_name = "Gift"

    details = {
        "username": event.username,
        "subCount": event.count,
        "subType": event.kind.sub_type,
        "tierName": tier_name,
        "msgId": event.kind.msg_id,
        "timeAdded": seconds,
    }

    payload = {
        "type": "subscription",
        "username": event.username,
        "msgId": event.kind.msg_id,
        "subPlan": event.sub_plan,
        "tierName": tier_name,
        "timeAdded": seconds,
        "subCount": event.count,
        "subType": event.kind.sub_type,
    }
    if event.recipient:
        payload["recipient"] = event.recipient
    if event.months:
        payload["months"] = event.months

    return TimeExtension(seconds=seconds, details=details, payload=payload, fallback=fallback)


def add_time_for_subscription(engine, event: SubscriptionEvent) -> TimeExtension:
    """
    Apply a subscription event to a timer engine.

    Adds the translated time (with subscriber details) and broadcasts the
    subscription message. A tier configured to 0 seconds still produces the
    subscription broadcast, it just adds nothing.

    Args:
        engine: TimerEngine to extend.
        event: Normalized subscription event.

    Returns:
        The TimeExtension that was applied.
    """
    extension = translate(event, engine.get_settings())

    if extension.seconds > 0:
        engine.add_time(extension.seconds, extension.details)

    engine.broadcast(extension.payload)

    if event.kind is SubscriptionKind.GIFT:
        logger.info(
            f"{event.username} gifted {event.count} {extension.details['tierName']} "
            f"sub(s) - Added {extension.seconds} seconds"
        )
    else:
        logger.info(
            f"{event.username} {event.kind.msg_id} ({extension.details['tierName']}) "
            f"- Added {extension.seconds} seconds"
        )
    return extension


# =============================================================================
# Duplicate Suppression
# =============================================================================

class RecentEventFilter:
    """
    Remembers recently seen platform event ids.

    Twitch can deliver the same notice through more than one path (IRC
    usernotice and EventSub, or a replay after reconnect). Ids are kept in
    insertion order and the oldest are forgotten past capacity.

    Args:
        capacity: Number of ids to remember.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, event_id: Optional[str]) -> bool:
        """
        Record an id and report whether it was already seen.

        Events without an id are never considered duplicates.
        """
        if not event_id:
            return False
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return True
        self._seen[event_id] = None
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return False

    def __len__(self) -> int:
        return len(self._seen)
