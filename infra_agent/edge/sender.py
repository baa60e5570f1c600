"""
Control Plane Transport.

HTTP client for heartbeats and version checks, plus the persistent
websocket used for log shipping. Failures here are never fatal: they
come back as results for the caller to log.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

HEARTBEAT_ENDPOINT = "/api/heartbeat"
LATEST_VERSION_ENDPOINT = "/api/agent/latest-version"
LOG_STREAM_ENDPOINT = "/api/logs/stream"

NO_VERSION = ("", "unknown")


@dataclass
class SendResult:
    """Result of a send operation."""
    success: bool
    status_code: int = 0
    error: Optional[str] = None


def stream_url(control_url: str) -> str:
    """Websocket URL of the log stream for a control plane base URL."""
    base = control_url.rstrip('/')
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + LOG_STREAM_ENDPOINT


class ControlPlaneClient:
    """
    Talks HTTP to the control plane.

    Features:
    - Shared aiohttp session with a bounded per-request timeout
    - Heartbeat delivery (best effort, response body ignored)
    - Latest published agent version lookup
    """

    def __init__(self, control_url: str, agent_version: str, timeout: float = 10):
        """Initialize the client."""
        self.control_url = control_url.rstrip('/')
        self.agent_version = agent_version
        self.timeout = timeout

        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def retarget(self, control_url: str):
        """Point subsequent requests at ``control_url``."""
        self.control_url = control_url.rstrip('/')

    def _get_headers(self) -> dict:
        return {
            'Content-Type': 'application/json',
            'User-Agent': f'infra-agent/{self.agent_version}',
        }

    async def send_heartbeat(self, payload: dict) -> SendResult:
        """POST one heartbeat. Any non-2xx status is a failure."""
        try:
            session = await self._get_session()
            async with session.post(
                f"{self.control_url}{HEARTBEAT_ENDPOINT}",
                data=json.dumps(payload),
                headers=self._get_headers(),
            ) as response:
                if 200 <= response.status < 300:
                    return SendResult(success=True, status_code=response.status)
                return SendResult(
                    success=False,
                    status_code=response.status,
                    error=f"server error: HTTP {response.status}",
                )

        except asyncio.TimeoutError:
            return SendResult(success=False, error="Request timeout")
        except aiohttp.ClientError as e:
            return SendResult(success=False, error=str(e))

    async def latest_version(self) -> str:
        """
        Latest published agent version.

        Returns an empty string when the lookup fails or the control
        plane does not know a version.
        """
        try:
            session = await self._get_session()
            async with session.get(
                f"{self.control_url}{LATEST_VERSION_ENDPOINT}",
                headers=self._get_headers(),
            ) as response:
                if response.status != 200:
                    logger.debug(f"Version check returned HTTP {response.status}")
                    return ""
                data = await response.json(content_type=None)

        except asyncio.TimeoutError:
            logger.debug("Version check timed out")
            return ""
        except (aiohttp.ClientError, ValueError) as e:
            logger.debug(f"Version check failed: {e}")
            return ""

        version = data.get("version") if isinstance(data, dict) else None
        if not isinstance(version, str) or version.strip() in NO_VERSION:
            return ""
        return version.strip()

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class LogStream:
    """
    The single websocket connection used for log shipping.

    Connect and send share one lock so frames never interleave and only
    one reconnect attempt runs at a time. Delivery is at most once: a
    record that cannot be sent is dropped.
    """

    def __init__(self, control_url: str, node_id: str, connect_timeout: float = 10):
        """Initialize the stream."""
        self.url = stream_url(control_url)
        self.node_id = node_id
        self.connect_timeout = connect_timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._target: Optional[tuple[str, str]] = None
        self._reader: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def retarget(self, control_url: str, node_id: str):
        """
        Use a new endpoint or node identity from the next record on.

        An open connection made with the old values is replaced on the
        next send.
        """
        self.url = stream_url(control_url)
        self.node_id = node_id

    async def _connect(self) -> bool:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, headers={'X-Node-ID': self.node_id}),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Log stream connection to {self.url} timed out")
            return False
        except (aiohttp.ClientError, OSError) as e:
            logger.warning(f"Log stream connection failed: {e}")
            return False

        self._target = (self.url, self.node_id)
        logger.info(f"Connected log stream to control plane: {self.url}")
        self._reader = asyncio.create_task(self._drain(self._ws))
        return True

    async def _drain(self, ws: aiohttp.ClientWebSocketResponse):
        # The server never sends data, but close and ping frames are only
        # processed while someone is receiving.
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.ERROR:
                break
        logger.debug(f"Log stream closed by peer (code {ws.close_code})")

    async def send(self, record: dict) -> bool:
        """Send one record as one text frame, connecting first if needed."""
        async with self._lock:
            if self.connected and self._target != (self.url, self.node_id):
                logger.info(f"Log stream target changed, reconnecting to {self.url}")
                await self._drop()
            if not self.connected:
                await self._drop()
                if not await self._connect():
                    return False

            try:
                await self._ws.send_str(json.dumps(record))
            except (ConnectionError, aiohttp.ClientError, RuntimeError) as e:
                logger.warning(f"Log stream write error: {e}, reconnecting on next record")
                await self._drop()
                return False
            return True

    async def _drop(self):
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (ConnectionError, aiohttp.ClientError) as e:
                logger.debug(f"Error closing log stream: {e}")

    async def close(self):
        """Close the websocket and its session."""
        async with self._lock:
            await self._drop()
            if self._session and not self._session.closed:
                await self._session.close()
