"""
lib/timer/errors.py

Timer-specific exceptions.

Engine operations never raise these for bad input; they are raised by the
parsing helpers (settings payloads, inbound subscription events, persisted
snapshots) so callers at the edges can turn them into structured replies.
"""


class TimerError(Exception):
    """
    Base exception for timer errors.

    All timer-related exceptions inherit from this base class,
    allowing catch-all error handling when needed.
    """
    pass


class SettingsValidationError(TimerError):
    """
    A settings value failed validation.

    Raised when:
    - A settings payload is not a mapping
    - Configured default settings contain an invalid value
    """
    pass


class SubscriptionEventError(TimerError):
    """
    An inbound subscription event could not be normalized.

    Raised when:
    - The payload is not a mapping
    - The event kind is not sub, resub or gift
    - A strict (simulated) event names an unknown tier
    """
    pass


class SnapshotError(TimerError):
    """
    A persisted snapshot could not be read.

    Raised when:
    - The snapshot file is unreadable
    - The file is not valid JSON
    - The decoded value is not a snapshot object
    """
    pass
