"""
plugins/subathon/__init__.py

Subathon timer plugin.

Exposes the countdown engine over NATS:
- Request/reply control commands (start, stop, reset, add, settings, ...)
- Time extension from Twitch subscription events
- Per-type broadcast subjects for overlays
- Snapshot restore at startup and autosave while running
"""

from .plugin import SubathonPlugin

__all__ = [
    "SubathonPlugin",
]
