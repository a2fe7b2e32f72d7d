"""
Unit tests for subject hierarchy
"""
from core.subjects import (
    Subjects,
    TIMER_ADD,
    TIMER_SETTINGS_UPDATE,
    TWITCH_USERNOTICE,
    timer_event,
)


class TestSubjects:
    """Test Subjects constants"""

    def test_base_subject(self):
        assert Subjects.BASE == "subathon"

    def test_categories(self):
        assert Subjects.PLATFORM == "subathon.platform"
        assert Subjects.COMMAND == "subathon.command"
        assert Subjects.EVENT == "subathon.event"

    def test_builders(self):
        assert Subjects.platform_subject("twitch", "raid") == "subathon.platform.twitch.raid"
        assert Subjects.command_subject("timer", "start") == "subathon.command.timer.start"
        assert Subjects.event_subject("timer", "timer_update") == "subathon.event.timer.timer_update"

    def test_timer_commands(self):
        assert TIMER_ADD == "subathon.command.timer.add"
        assert TIMER_SETTINGS_UPDATE == "subathon.command.timer.settings.update"

    def test_platform_subjects(self):
        assert TWITCH_USERNOTICE == "subathon.platform.twitch.usernotice"

    def test_timer_event(self):
        assert timer_event("timer_ended") == "subathon.event.timer.timer_ended"
