"""
Journal Log Shipper.

Follows the systemd journal, normalizes each entry into a structured
record and forwards it over the control plane log stream.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Optional, Protocol, Sequence, Union

logger = logging.getLogger(__name__)

JOURNAL_COMMAND = ("journalctl", "-f", "-o", "json", "-n", "0")

# syslog priority -> level name
PRIORITY_LEVELS = {
    "0": "emergency",
    "1": "alert",
    "2": "critical",
    "3": "error",
    "4": "warning",
    "5": "notice",
    "6": "info",
    "7": "debug",
}

# Journal JSON lines can be large (stack traces, structured payloads)
LINE_LIMIT = 4 * 1024 * 1024


class RecordSink(Protocol):
    async def send(self, record: dict) -> bool: ...


class ShipperState(str, Enum):
    """Phases of the follow loop."""
    STARTING = "starting"
    STREAMING = "streaming"
    BACKOFF = "backoff"


def normalize_entry(entry: dict) -> Optional[dict]:
    """
    Turn one journal entry into the record shipped to the control plane.

    Entries without a string MESSAGE are dropped. A MESSAGE holding a JSON
    object is expanded into the record; anything else becomes ``message``.
    The unit name fills ``logger`` and the priority fills ``level`` only
    when the record does not carry its own.
    """
    raw_message = entry.get("MESSAGE")
    if not isinstance(raw_message, str):
        return None

    try:
        parsed = json.loads(raw_message)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        record = parsed
    else:
        record = {"message": raw_message}

    unit = entry.get("_SYSTEMD_UNIT")
    if isinstance(unit, str):
        record["unit"] = unit
        if "logger" not in record:
            record["logger"] = unit.removesuffix(".service")

    priority = entry.get("PRIORITY")
    if isinstance(priority, str) and priority in PRIORITY_LEVELS:
        if record.get("level") is None:
            record["level"] = PRIORITY_LEVELS[priority]

    return record


def normalize_line(line: Union[bytes, str]) -> Optional[dict]:
    """Parse one line of ``journalctl -o json`` output."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    if not isinstance(entry, dict):
        return None
    return normalize_entry(entry)


class LogShipper:
    """
    Ships journal entries for the lifetime of the agent.

    The follow loop is a small state machine: STARTING spawns the journal
    reader, STREAMING forwards entries until it exits, BACKOFF waits a
    fixed delay before starting again. Nothing here ever gives up.
    """

    def __init__(
        self,
        sink: RecordSink,
        command: Sequence[str] = JOURNAL_COMMAND,
        restart_delay: float = 2.0,
        spawn_failure_delay: float = 5.0,
    ):
        """Initialize the shipper."""
        self.sink = sink
        self.command = tuple(command)
        self.restart_delay = restart_delay
        self.spawn_failure_delay = spawn_failure_delay

        self.state = ShipperState.STARTING
        self.shipped = 0
        self.dropped = 0

    async def run(self):
        """Follow the journal forever."""
        while True:
            started = await self.follow_once()

            self.state = ShipperState.BACKOFF
            delay = self.restart_delay if started else self.spawn_failure_delay
            await asyncio.sleep(delay)

    async def follow_once(self) -> bool:
        """
        Run one journal reader until it exits.

        Returns False if the reader could not be started at all.
        """
        self.state = ShipperState.STARTING
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=LINE_LIMIT,
            )
        except OSError as e:
            logger.error(f"Failed to start {self.command[0]}: {e}")
            return False

        self.state = ShipperState.STREAMING
        logger.info("Started streaming from system journal")

        overrun = False
        try:
            while True:
                try:
                    line = await proc.stdout.readline()
                except ValueError as e:
                    # Line longer than the reader limit; the stream is unusable
                    logger.warning(f"Journal reader overrun: {e}")
                    overrun = True
                    break
                if not line:
                    break
                await self._forward(line)
        except asyncio.CancelledError:
            _kill(proc)
            await proc.wait()
            raise

        if overrun:
            _kill(proc)
        await proc.wait()

        logger.warning(f"{self.command[0]} exited (code {proc.returncode}), restarting")
        return True

    async def _forward(self, line: bytes):
        record = normalize_line(line)
        if record is None:
            return
        if await self.sink.send(record):
            self.shipped += 1
        else:
            self.dropped += 1


def _kill(proc: asyncio.subprocess.Process):
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
