#!/usr/bin/env python3
"""
Subathon Timer Service Orchestrator

Coordinates startup and shutdown:
1. Load configuration and configure logging
2. Connect to NATS
3. Start the subathon plugin (restores saved state, subscribes)
4. Run until SIGINT/SIGTERM, then shut down in reverse order

All timer behaviour lives in lib/timer and plugins/subathon.

Usage:
    subathon [config.yaml]
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

import nats
from nats.aio.client import Client as NATS

from common.config import get_config
from lib.timer import TimerError
from plugins.subathon import SubathonPlugin


logger = logging.getLogger(__name__)


class SubathonService:
    """
    Subathon timer service.

    Responsibilities:
    1. Own the NATS connection
    2. Start and stop the plugin
    3. Coordinate graceful shutdown

    Args:
        config: Full configuration dictionary (see common.config.DEFAULTS).
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.nats: Optional[NATS] = None
        self.plugin: Optional[SubathonPlugin] = None

    async def start(self) -> None:
        """Start all components in order"""
        nats_config = self.config.get('nats', {})
        servers = nats_config.get('servers', ['nats://localhost:4222'])

        try:
            logger.info(f"Connecting to NATS: {servers}")
            self.nats = await nats.connect(
                servers=servers,
                name=nats_config.get('name', 'subathon-timer'),
                max_reconnect_attempts=nats_config.get('max_reconnect_attempts', -1),
                reconnect_time_wait=nats_config.get('reconnect_wait', 2),
                error_cb=self._error_cb,
                disconnected_cb=self._disconnected_cb,
                reconnected_cb=self._reconnected_cb,
            )
            logger.info("Connected to NATS successfully")

            self.plugin = SubathonPlugin(self.nats, self.config.get('subathon', {}))
            await self.plugin.initialize()

            logger.info("Subathon timer service started")

        except Exception as e:
            logger.error(f"Failed to start subathon timer service: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop all components in reverse order"""
        logger.info("Shutting down subathon timer service...")

        if self.plugin:
            try:
                await self.plugin.shutdown()
            except Exception as e:
                logger.error(f"Error stopping plugin: {e}", exc_info=True)
            self.plugin = None

        if self.nats:
            try:
                await self.nats.drain()
            except Exception as e:
                logger.error(f"Error during NATS disconnect: {e}")
            self.nats = None

        logger.info("Subathon timer service stopped")

    # ========== NATS Callbacks ==========

    async def _error_cb(self, e):
        logger.error(f"NATS error: {e}")

    async def _disconnected_cb(self):
        logger.warning("Disconnected from NATS")

    async def _reconnected_cb(self):
        logger.info("Reconnected to NATS")


async def main(config: Dict[str, Any]) -> None:
    """Run the service until a shutdown signal arrives"""
    service = SubathonService(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await service.start()
    try:
        await stop_event.wait()
        logger.info("Received shutdown signal")
    finally:
        await service.stop()


def run() -> None:
    """Console script entry point"""
    config = get_config()
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass
    except TimerError as e:
        logger.error(f"Invalid timer configuration: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Subathon timer service exited: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
