"""Tests for the stream and loopback line links."""

from __future__ import annotations

import asyncio
import io
import os

import pytest

from uid_bus.bus import RX, TX, LoopbackBus, StreamBus, open_stdio_bus
from uid_bus.device import DeviceSimulator

UID_1 = "AB11111111111111111"
UID_2 = "AB22222222222222222"


def test_stream_bus_reply_then_silence():
    async def _run():
        reader = asyncio.StreamReader()
        written: list[str] = []
        async with StreamBus(reader, written.append) as bus:
            await bus.send("AB1")
            reader.feed_data(f"{UID_1}\r\n".encode())
            reply = await bus.read_line(1.0)
            silence = await bus.read_line(0.01)
        return written, reply, silence

    written, reply, silence = asyncio.run(_run())
    assert written == ["AB1\n"]
    assert reply == UID_1
    assert silence is None


def test_stream_bus_empty_line_is_not_silence():
    async def _run():
        reader = asyncio.StreamReader()
        async with StreamBus(reader, lambda _text: None) as bus:
            await bus.send("AB")
            reader.feed_data(b"\n")
            return await bus.read_line(1.0)

    assert asyncio.run(_run()) == ""


def test_stream_bus_drops_late_replies_before_next_send():
    async def _run():
        reader = asyncio.StreamReader()
        async with StreamBus(reader, lambda _text: None) as bus:
            await bus.send("AB1")
            assert await bus.read_line(0.01) is None
            # the answer to AB1 shows up after its window closed
            reader.feed_data(f"{UID_1}\n".encode())
            await asyncio.sleep(0.01)
            await bus.send("AB2")
            reader.feed_data(f"{UID_2}\n".encode())
            return await bus.read_line(1.0)

    assert asyncio.run(_run()) == UID_2


def test_stream_bus_eof_reads_as_silence():
    async def _run():
        reader = asyncio.StreamReader()
        async with StreamBus(reader, lambda _text: None) as bus:
            reader.feed_eof()
            await asyncio.sleep(0.01)
            return bus.at_eof, await bus.read_line(5.0)

    assert asyncio.run(_run()) == (True, None)


def test_stream_bus_requires_open():
    async def _run():
        bus = StreamBus(asyncio.StreamReader(), lambda _text: None)
        with pytest.raises(RuntimeError):
            await bus.send("AB")
        with pytest.raises(RuntimeError):
            await bus.read_line(0.01)

    asyncio.run(_run())


def test_open_stdio_bus_over_pipe():
    read_fd, write_fd = os.pipe()
    stdin = os.fdopen(read_fd, "r")
    stdout = io.StringIO()

    async def _run():
        async with open_stdio_bus(stdin=stdin, stdout=stdout) as bus:
            await bus.send("AB")
            os.write(write_fd, b"\n")
            return await bus.read_line(1.0)

    try:
        assert asyncio.run(_run()) == ""
    finally:
        os.close(write_fd)
    assert stdout.getvalue() == "AB\n"


def test_loopback_transcript_and_listeners():
    seen = []

    async def _run():
        async with LoopbackBus(DeviceSimulator([UID_1, UID_2])) as bus:
            bus.add_listener(lambda direction, line: seen.append((direction, line)))
            await bus.send("AB1")
            first = await bus.read_line()
            await bus.send("AB")
            second = await bus.read_line()
            await bus.send("AB3")
            third = await bus.read_line()
        return bus, (first, second, third)

    bus, replies = asyncio.run(_run())
    assert replies == (UID_1, "", None)
    assert bus.transcript == [
        (TX, "AB1"), (RX, UID_1),
        (TX, "AB"), (RX, ""),
        (TX, "AB3"), (RX, None),
    ]
    assert seen == bus.transcript
    assert bus.sent_lines() == ["AB1", "AB", "AB3"]


def test_loopback_unread_reply_does_not_leak_into_next_send():
    async def _run():
        bus = LoopbackBus(DeviceSimulator([UID_1, UID_2]))
        await bus.send("AB1")
        await bus.send("AB9")
        return await bus.read_line()

    assert asyncio.run(_run()) is None
