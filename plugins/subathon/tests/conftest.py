"""
plugins/subathon/tests/conftest.py

Shared fixtures for subathon plugin tests.
"""

import json
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from plugins.subathon import SubathonPlugin


@pytest.fixture
def mock_nats():
    """Create a mock NATS client for testing."""
    nats = AsyncMock()
    nats.publish = AsyncMock()

    # Track subscriptions
    nats._subscriptions = []

    async def mock_subscribe(subject, cb=None):
        sub = MagicMock()
        sub.subject = subject
        sub.callback = cb
        sub.unsubscribe = AsyncMock()
        nats._subscriptions.append(sub)
        return sub

    nats.subscribe = mock_subscribe

    def published(subject):
        """Decoded payloads published on a subject, oldest first."""
        return [
            json.loads(call.args[1].decode())
            for call in nats.publish.call_args_list
            if call.args[0] == subject
        ]

    nats.published = published
    return nats


@pytest.fixture
def mock_message():
    """Factory for creating mock NATS messages."""
    def _make_message(data=None, reply_to: str = "reply.test"):
        msg = MagicMock()
        if isinstance(data, bytes):
            msg.data = data
        else:
            msg.data = json.dumps(data if data is not None else {}).encode()
        msg.reply = reply_to
        return msg
    return _make_message


@pytest.fixture
def plugin_config(tmp_path):
    """Plugin configuration writing state into a temp directory."""
    return {
        "state_file": str(tmp_path / "timer_state.json"),
        "autosave_interval": 3600,
        "enable_simulation": True,
    }


@pytest_asyncio.fixture(scope="function")
async def initialized_plugin(mock_nats, plugin_config):
    """
    Create and initialize a SubathonPlugin.

    Shuts the plugin down after the test.
    """
    plugin = SubathonPlugin(mock_nats, plugin_config)
    await plugin.initialize()
    yield plugin
    await plugin.shutdown()
