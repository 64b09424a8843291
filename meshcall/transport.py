"""WebSocket signaling transport.

A thin client for the relay: sends JSON messages, feeds every received frame
to a handler, and reconnects after the connection drops. Each drop is reported
through ``on_reset`` so the core can discard sessions that were negotiated
under the old registration.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from .config import signaling_config

logger = logging.getLogger(__name__)


class SignalingTransport:
    def __init__(
        self,
        url: Optional[str] = None,
        on_message: Optional[Callable[[str], Awaitable[None]]] = None,
        on_open: Optional[Callable[[], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
        reconnect_delay: Optional[float] = None,
    ):
        self.url = url or signaling_config.SIGNAL_URL
        self.on_message = on_message
        self.on_open = on_open
        self.on_reset = on_reset
        self.reconnect_delay = (
            signaling_config.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )
        self.ws = None
        self.closed = False
        self._pending = set()

    @property
    def is_open(self) -> bool:
        return self.ws is not None and self.ws.state is State.OPEN

    def send(self, message: dict) -> bool:
        """Queue ``message`` for the relay; dropped if the channel is not open."""
        if not self.is_open:
            logger.warning(f"[Signaling] connection not open, dropping {message.get('type')} message")
            return False
        task = asyncio.get_running_loop().create_task(self._send(json.dumps(message)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.debug(f"[Signaling] sent {message.get('type')} to {message.get('target', 'relay')}")
        return True

    async def _send(self, raw: str) -> None:
        ws = self.ws
        if ws is None:
            return
        try:
            await ws.send(raw)
        except ConnectionClosed as e:
            logger.warning(f"[Signaling] send failed, connection closed: {e}")

    async def run(self) -> None:
        """Connect, pump messages, and reconnect until ``close`` is called."""
        while not self.closed:
            logger.info(f"[Signaling] connecting to {self.url}")
            try:
                async with websockets.connect(self.url) as ws:
                    self.ws = ws
                    logger.info("[Signaling] connection opened")
                    if self.on_open:
                        self.on_open()
                    async for raw in ws:
                        if self.on_message:
                            await self.on_message(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"[Signaling] connection error: {e}")
            finally:
                was_connected = self.ws is not None
                self.ws = None
                if was_connected:
                    logger.info("[Signaling] connection closed")
                    if self.on_reset:
                        self.on_reset()

            if self.closed:
                break
            logger.info(f"[Signaling] reconnecting in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def close(self) -> None:
        self.closed = True
        if self.ws is not None:
            await self.ws.close()
