"""
NATS Subject Hierarchy for the Subathon Timer

This module defines the subject hierarchy used for all NATS communication.
Subjects follow a hierarchical pattern for organized routing and filtering.

Subject Structure:
    subathon.{category}.{specifics}...

Categories:
    - platform: Raw or normalized chat-platform events (twitch)
    - command: Request/reply control commands
    - event: Broadcasts to observers (overlays, websocket relays)

Examples:
    subathon.platform.twitch.subscription
    subathon.command.timer.add
    subathon.event.timer.time_added
"""

class Subjects:
    """
    NATS subject hierarchy constants

    Use these constants to ensure consistency across the codebase.
    """

    # Base subject
    BASE = "subathon"

    # Top-level categories
    PLATFORM = f"{BASE}.platform"      # Chat-platform events
    COMMAND = f"{BASE}.command"        # Request/reply commands
    EVENT = f"{BASE}.event"            # Observer broadcasts

    @staticmethod
    def platform_subject(platform: str, event: str) -> str:
        """Build platform-specific subject"""
        return f"{Subjects.PLATFORM}.{platform}.{event}"

    @staticmethod
    def command_subject(component: str, action: str) -> str:
        """Build command subject"""
        return f"{Subjects.COMMAND}.{component}.{action}"

    @staticmethod
    def event_subject(component: str, event: str) -> str:
        """Build broadcast subject"""
        return f"{Subjects.EVENT}.{component}.{event}"


# ========== Timer Subjects ==========

TIMER = "timer"

TIMER_START = Subjects.command_subject(TIMER, "start")
TIMER_STOP = Subjects.command_subject(TIMER, "stop")
TIMER_RESET = Subjects.command_subject(TIMER, "reset")
TIMER_ADD = Subjects.command_subject(TIMER, "add")
TIMER_STATE = Subjects.command_subject(TIMER, "state")
TIMER_SETTINGS_GET = Subjects.command_subject(TIMER, "settings.get")
TIMER_SETTINGS_UPDATE = Subjects.command_subject(TIMER, "settings.update")
TIMER_HEALTH = Subjects.command_subject(TIMER, "health")
TIMER_RECOVER = Subjects.command_subject(TIMER, "recover")
TIMER_SIMULATE = Subjects.command_subject(TIMER, "simulate")

TWITCH_SUBSCRIPTION = Subjects.platform_subject("twitch", "subscription")
TWITCH_USERNOTICE = Subjects.platform_subject("twitch", "usernotice")


def timer_event(message_type: str) -> str:
    """
    Get the broadcast subject for a timer message type

    Args:
        message_type: Broadcast "type" discriminator (timer_update, ...)

    Returns:
        Subject string: subathon.event.timer.{message_type}

    Example:
        >>> timer_event("timer_ended")
        'subathon.event.timer.timer_ended'
    """
    return Subjects.event_subject(TIMER, message_type)

