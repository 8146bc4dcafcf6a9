"""
Host link - the host side of a relay deployment.

The host dials the relay over a websocket, introduces itself with
``initialize``, then answers every request the relay forwards through its
own Router. Replies go back over the same channel.
"""

import asyncio
from typing import Optional

from ..envelope import is_notification, is_request
from ..handlers import Router
from ..logger import envelope_label, get_logger
from ..utils.config import SERVER_NAME, SERVER_VERSION, HostLinkConfig
from .channels import Dialer, websocket_dialer
from .connection import ConnectionManager

logger = get_logger("vaultbridge-host-link")


class HostLink:
    """Connection Manager wired to a Router."""

    def __init__(
        self,
        router: Router,
        config: Optional[HostLinkConfig] = None,
        dial: Optional[Dialer] = None,
    ):
        self.router = router
        self.config = config or HostLinkConfig()
        self.connection = ConnectionManager(
            dial or websocket_dialer(self.config.url, extra_headers=self.config.extra_headers),
            on_message=self.on_message,
            reconnect_interval=self.config.reconnect_interval,
            max_attempts=self.config.max_reconnect_attempts,
            handshake=True,
            client_info={"name": SERVER_NAME, "version": SERVER_VERSION},
            name="host-link",
        )

    async def on_message(self, envelope: dict) -> None:
        if not (is_request(envelope) or is_notification(envelope)):
            logger.debug("Ignoring unmatched %s", envelope_label(envelope))
            return
        reply = await self.router.handle(envelope)
        if reply is not None:
            await self.connection.send(reply)

    def start(self) -> None:
        self.connection.start()

    async def stop(self) -> None:
        await self.connection.stop()

    async def run(self) -> None:
        """Stay connected until stopped or out of reconnect attempts."""
        logger.info("Connecting to relay at %s", self.config.url)
        self.start()
        try:
            await self.connection.join()
        except asyncio.CancelledError:
            logger.info("Host link cancelled")
            raise
        finally:
            await self.stop()
