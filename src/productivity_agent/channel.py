"""Real-time chat channel client with an explicit reconnect policy."""

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import quote, urlsplit, urlunsplit

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Fixed-delay reconnects. ``max_attempts=None`` retries forever."""

    delay: float = 3.0
    max_attempts: int | None = None

    def allows(self, failures: int) -> bool:
        return self.max_attempts is None or failures < self.max_attempts


def channel_url(base_url: str, user_id: str) -> str:
    """WebSocket endpoint for a user, from the server's http(s) or ws(s) base URL."""
    parts = urlsplit(base_url.rstrip("/"))
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme or "ws")
    path = parts.path if parts.path.endswith("/api/ws") else parts.path + "/api/ws"
    return urlunsplit((scheme, parts.netloc, path, f"userId={quote(user_id)}", ""))


class ChatChannel:
    """Keeps a WebSocket open to the server, reconnecting per the retry policy.

    Outgoing messages sent while disconnected are queued and flushed on the
    next successful connect.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        policy: RetryPolicy | None = None,
        on_message: Callable[[dict], None] | None = None,
        connector=connect,
    ):
        self.url = channel_url(base_url, user_id)
        self.policy = policy or RetryPolicy()
        self.on_message = on_message
        self._connector = connector
        self._conn = None
        self._pending: list[dict] = []
        self._lock = threading.Lock()
        self._closed = threading.Event()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def send(self, payload: dict) -> bool:
        """Send now if connected, otherwise queue. Returns True if sent immediately."""
        with self._lock:
            conn = self._conn
            if conn is None:
                self._pending.append(payload)
                return False
        try:
            conn.send(json.dumps(payload))
            return True
        except ConnectionClosed:
            with self._lock:
                self._pending.append(payload)
            return False

    def chat(self, content: str) -> bool:
        return self.send({"type": "chat", "content": content})

    def close(self):
        self._closed.set()
        with self._lock:
            conn = self._conn
        if conn is not None:
            conn.close()

    def run(self) -> int:
        """Receive until closed or the retry policy gives up.

        Returns the number of consecutive failed connections at exit.
        """
        failures = 0
        while not self._closed.is_set():
            try:
                with self._connector(self.url) as conn:
                    with self._lock:
                        self._conn = conn
                        pending, self._pending = self._pending, []
                    failures = 0
                    logger.info("Connected to %s", self.url)
                    for payload in pending:
                        conn.send(json.dumps(payload))
                    for raw in conn:
                        self._dispatch(raw)
            except (OSError, WebSocketException) as e:
                logger.warning("Channel error: %s", e)
            finally:
                with self._lock:
                    self._conn = None

            if self._closed.is_set():
                break
            failures += 1
            if not self.policy.allows(failures):
                logger.error("Giving up on %s after %d attempt(s)", self.url, failures)
                break
            logger.info("Disconnected; reconnecting in %ss", self.policy.delay)
            self._closed.wait(self.policy.delay)
        return failures

    def _dispatch(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-JSON frame from server")
            return
        if self.on_message is not None:
            try:
                self.on_message(message)
            except Exception:
                logger.exception("Error handling channel message")
