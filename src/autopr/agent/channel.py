"""Long-lived control channel from the agent to the control plane."""

import json
import logging
import threading
import time

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

logger = logging.getLogger(__name__)


def channel_url(control_url: str, agent_id: str) -> str:
    base = control_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/agents/{agent_id}/channel"


def handle_message(raw: str | bytes, agent_id: str) -> dict | None:
    """Reply for one control message, or None if it needs no answer."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring malformed control message: %r", raw)
        return None
    if not isinstance(message, dict):
        return None
    if message.get("type") == "health_check_ping":
        return {
            "type": "heartbeat",
            "agent_id": agent_id,
            "ping_timestamp": message.get("timestamp"),
            "timestamp": time.time(),
        }
    return None


class AgentChannel:
    """Background thread that keeps the channel open and answers pings."""

    def __init__(self, control_url: str, agent_id: str, retry_interval: float = 5.0):
        self.url = channel_url(control_url, agent_id)
        self.agent_id = agent_id
        self.retry_interval = retry_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="agent-channel", daemon=True)
        self._thread.start()
        logger.info("Agent channel started for %s", self.url)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Agent channel stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self._serve_once()
            except (OSError, WebSocketException) as e:
                logger.warning("Control channel to %s lost: %s", self.url, e)
            except Exception:
                logger.exception("Error in agent channel loop")
            self._stop_event.wait(self.retry_interval)

    def _serve_once(self):
        with connect(self.url, open_timeout=10) as ws:
            logger.info("Connected control channel %s", self.url)
            ws.send(json.dumps({"type": "heartbeat", "agent_id": self.agent_id, "timestamp": time.time()}))
            while not self._stop_event.is_set():
                try:
                    raw = ws.recv(timeout=1.0)
                except TimeoutError:
                    continue
                reply = handle_message(raw, self.agent_id)
                if reply is not None:
                    ws.send(json.dumps(reply))
