"""Line-oriented request/response links between the scanner and the devices."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol, TextIO

if TYPE_CHECKING:
    from .device import DeviceSimulator

logger = logging.getLogger(__name__)

TX = "tx"
RX = "rx"

TrafficListener = Callable[[str, str | None], None]


class LineBus(Protocol):
    async def send(self, line: str) -> None: ...

    async def read_line(self, timeout: float) -> str | None: ...


class StreamBus:
    """Async context manager driving a line link over an asyncio stream.

    Incoming lines are pumped into a queue by a background task so a reply
    that arrives after its read window expired can be discarded before the
    next probe goes out instead of being mistaken for that probe's answer.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        write: Callable[[str], None],
    ) -> None:
        self._reader = reader
        self._write = write
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None
        self._eof = False

    async def __aenter__(self) -> "StreamBus":
        self._pump_task = asyncio.create_task(self._pump())
        return self

    async def __aexit__(self, *_: object) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    @property
    def at_eof(self) -> bool:
        return self._eof and self._queue.empty()

    async def _pump(self) -> None:
        while True:
            raw = await self._reader.readline()
            if not raw:
                self._eof = True
                logger.warning("link closed by peer")
                return
            self._queue.put_nowait(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def _drain(self) -> int:
        dropped = 0
        while not self._queue.empty():
            stale = self._queue.get_nowait()
            logger.debug("dropping late reply %r", stale)
            dropped += 1
        return dropped

    async def send(self, line: str) -> None:
        """Write one line, discarding replies left over from earlier probes."""
        if self._pump_task is None:
            raise RuntimeError("Bus not open")
        self._drain()
        self._write(line + "\n")

    async def read_line(self, timeout: float) -> str | None:
        """Next line from the peer, or None if nothing arrives within ``timeout``."""
        if self._pump_task is None:
            raise RuntimeError("Bus not open")
        if self.at_eof:
            return None
        try:
            async with asyncio.timeout(timeout):
                return await self._queue.get()
        except TimeoutError:
            return None


@asynccontextmanager
async def open_stdio_bus(
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> AsyncIterator[StreamBus]:
    """Bind a StreamBus to the process's standard input and output."""
    loop = asyncio.get_running_loop()
    source = stdin if stdin is not None else sys.stdin
    sink = stdout if stdout is not None else sys.stdout

    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    transport, _ = await loop.connect_read_pipe(lambda: protocol, source)

    def write(text: str) -> None:
        sink.write(text)
        sink.flush()

    try:
        async with StreamBus(reader, write) as bus:
            yield bus
    finally:
        transport.close()


class LoopbackBus:
    """In-process link wired straight to a DeviceSimulator.

    The simulator answers synchronously while handling ``send``, so a read
    finding no queued reply is a definitive silence and returns at once.
    A non-zero ``delay`` paces every read so observers can keep up.
    """

    def __init__(self, simulator: "DeviceSimulator", delay: float = 0.0) -> None:
        self.simulator = simulator
        self.delay = delay
        self.transcript: list[tuple[str, str | None]] = []
        self._pending: deque[str] = deque()
        self._listeners: list[TrafficListener] = []

    async def __aenter__(self) -> "LoopbackBus":
        return self

    async def __aexit__(self, *_: object) -> None:
        self._pending.clear()

    def add_listener(self, listener: TrafficListener) -> None:
        self._listeners.append(listener)

    def _record(self, direction: str, line: str | None) -> None:
        self.transcript.append((direction, line))
        for listener in self._listeners:
            listener(direction, line)

    def sent_lines(self) -> list[str]:
        return [line for direction, line in self.transcript if direction == TX and line is not None]

    async def send(self, line: str) -> None:
        self._pending.clear()
        self._record(TX, line)
        reply = self.simulator.handle_line(line)
        if reply is not None:
            self._pending.append(reply)

    async def read_line(self, timeout: float = 0.0) -> str | None:
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self._pending.popleft() if self._pending else None
        self._record(RX, reply)
        return reply
