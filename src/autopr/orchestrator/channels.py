"""Agent control channels and the ping-based liveness check."""

import asyncio
import logging
import threading
import time
from typing import Callable

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)

HEALTH_CHECK_PING = "health_check_ping"


class WebSocketChannel:
    """A websocket owned by the server's event loop, usable from any thread."""

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.websocket = websocket
        self.loop = loop

    def send(self, message: dict, timeout: float = 5.0) -> None:
        future = asyncio.run_coroutine_threadsafe(self.websocket.send_json(message), self.loop)
        future.result(timeout=timeout)

    def close(self) -> None:
        asyncio.run_coroutine_threadsafe(self.websocket.close(), self.loop)


class ChannelRegistry:
    """Connection table of agent id to open channel."""

    def __init__(self):
        self._channels: dict[str, object] = {}
        self._lock = threading.Lock()

    def register(self, agent_id: str, channel) -> None:
        with self._lock:
            old = self._channels.get(agent_id)
            self._channels[agent_id] = channel
        if old is not None and old is not channel:
            self._close(agent_id, old)
        logger.info("Agent %s channel registered", agent_id)

    def unregister(self, agent_id: str, channel=None) -> None:
        """Drop the agent's channel; if channel is given, only when it is still current."""
        with self._lock:
            current = self._channels.get(agent_id)
            if current is None or (channel is not None and current is not channel):
                return
            del self._channels[agent_id]
        logger.info("Agent %s channel unregistered", agent_id)

    def has(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._channels

    def send(self, agent_id: str, message: dict, timeout: float = 5.0) -> bool:
        """Send a message. A failed send closes and unregisters the channel."""
        with self._lock:
            channel = self._channels.get(agent_id)
        if channel is None:
            return False
        try:
            channel.send(message, timeout=timeout)
            return True
        except Exception as e:
            logger.warning("Send to agent %s failed, closing channel: %s", agent_id, e)
            self.unregister(agent_id, channel)
            self._close(agent_id, channel)
            return False

    def _close(self, agent_id: str, channel) -> None:
        try:
            channel.close()
        except Exception:
            logger.debug("Closing channel for agent %s failed", agent_id, exc_info=True)


def check_liveness(
    registry: ChannelRegistry,
    last_active: Callable[[str], float | None],
    agent_id: str,
    wait: float = 5.0,
    freshness: float = 10.0,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Ping the agent and confirm it answered.

    Alive iff the agent's last activity is at or after the ping and younger
    than freshness seconds. No channel or a failed send means not alive.
    """
    if not registry.has(agent_id):
        return False
    ping_ts = clock()
    if not registry.send(agent_id, {"type": HEALTH_CHECK_PING, "timestamp": ping_ts}, timeout=wait):
        return False
    sleep(wait)
    seen = last_active(agent_id)
    if seen is None:
        return False
    return seen >= ping_ts and clock() - seen < freshness
