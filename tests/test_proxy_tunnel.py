"""Proxy engine and local endpoint, end to end over loopback."""

from __future__ import annotations

import asyncio
import contextlib
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from agent import socks5
from agent.endpoint import LocalEndpoint
from agent.proxy import ProxyTunnelEngine
from agent.tunnel import TunnelError
from common.config import TunnelConfig
from common.model import ControlState, DeviceLocator

SVC = "https://cloud.example.com/v1"
LOCATOR = DeviceLocator(SVC, "host-1", "dev-7")


@pytest.fixture
def short_dir():
    # AF_UNIX paths are short, pytest's tmp_path can be too long.
    with tempfile.TemporaryDirectory(prefix="cvd") as d:
        yield Path(d)


async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()


async def _hang_up(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.close()


class FakeSocksServer:
    """No-auth SOCKS5 server that answers CONNECT and then echoes."""

    def __init__(self, reply_code: int = 0x00):
        self.reply_code = reply_code
        self.targets: list[tuple[str, int]] = []
        self.server: asyncio.AbstractServer | None = None
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, host="127.0.0.1", port=0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server:
            self.server.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.server.wait_closed(), timeout=1.0)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        ver, nm = await reader.readexactly(2)
        await reader.readexactly(nm)
        writer.write(b"\x05\x00")
        await writer.drain()
        head = await reader.readexactly(4)
        atyp = head[3]
        if atyp == 0x01:
            host = ".".join(str(b) for b in await reader.readexactly(4))
        else:
            n = (await reader.readexactly(1))[0]
            host = (await reader.readexactly(n)).decode("utf-8")
        port = int.from_bytes(await reader.readexactly(2), "big")
        self.targets.append((host, port))
        writer.write(bytes([0x05, self.reply_code, 0x00, 0x01, 0, 0, 0, 0, 0, 0]))
        await writer.drain()
        if self.reply_code != 0x00:
            writer.close()
            return
        await _echo(reader, writer)


def _config(short_dir: Path, proxy: str = "") -> TunnelConfig:
    return TunnelConfig(
        service_url="https://cloud.example.com",
        control_dir=str(short_dir),
        adb_base_port=0,
        proxy=proxy,
    )


def _engine(short_dir: Path, target_port: int, host: str = "127.0.0.1", proxy: str = "") -> ProxyTunnelEngine:
    endpoint = LocalEndpoint(short_dir / "t.sock", base_port=0)
    lookup = AsyncMock(return_value=(host, target_port))
    return ProxyTunnelEngine(_config(short_dir, proxy), LOCATOR, endpoint, lookup)


async def _round_trip(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, payload: bytes) -> bytes:
    writer.write(payload)
    await writer.drain()
    return await asyncio.wait_for(reader.readexactly(len(payload)), timeout=5)


class TestProxyEngine:
    @pytest.mark.asyncio
    async def test_pumps_over_domain_socket(self, short_dir):
        server = await asyncio.start_server(_echo, host="127.0.0.1", port=0)
        engine = _engine(short_dir, server.sockets[0].getsockname()[1])
        try:
            status = await engine.negotiate()
            assert status.control_state == ControlState.CONNECTED
            assert status.control_port
            serve = asyncio.create_task(engine.serve())

            reader, writer = await asyncio.open_unix_connection(str(short_dir / "t.sock"))
            assert await _round_trip(reader, writer, b"host:version") == b"host:version"
            assert await _round_trip(reader, writer, b"x" * 200000) == b"x" * 200000

            await engine.stop()
            await asyncio.wait_for(serve, timeout=5)
            writer.close()
        finally:
            server.close()
        assert not (short_dir / "t.sock").exists()

    @pytest.mark.asyncio
    async def test_pumps_over_loopback_port(self, short_dir):
        server = await asyncio.start_server(_echo, host="127.0.0.1", port=0)
        engine = _engine(short_dir, server.sockets[0].getsockname()[1])
        try:
            status = await engine.negotiate()
            serve = asyncio.create_task(engine.serve())
            reader, writer = await asyncio.open_connection("127.0.0.1", status.control_port)
            assert await _round_trip(reader, writer, b"CNXN") == b"CNXN"
            await engine.stop()
            await asyncio.wait_for(serve, timeout=5)
            writer.close()
        finally:
            server.close()

    @pytest.mark.asyncio
    async def test_second_client_is_rejected(self, short_dir):
        server = await asyncio.start_server(_echo, host="127.0.0.1", port=0)
        engine = _engine(short_dir, server.sockets[0].getsockname()[1])
        try:
            status = await engine.negotiate()
            serve = asyncio.create_task(engine.serve())
            reader, writer = await asyncio.open_unix_connection(str(short_dir / "t.sock"))
            assert await _round_trip(reader, writer, b"first") == b"first"

            r2, w2 = await asyncio.open_connection("127.0.0.1", status.control_port)
            assert await asyncio.wait_for(r2.read(), timeout=5) == b""
            w2.close()

            assert await _round_trip(reader, writer, b"still here") == b"still here"
            await engine.stop()
            await asyncio.wait_for(serve, timeout=5)
            writer.close()
        finally:
            server.close()

    @pytest.mark.asyncio
    async def test_stop_before_any_client(self, short_dir):
        server = await asyncio.start_server(_echo, host="127.0.0.1", port=0)
        engine = _engine(short_dir, server.sockets[0].getsockname()[1])
        try:
            await engine.negotiate()
            serve = asyncio.create_task(engine.serve())
            await asyncio.sleep(0.05)
            await engine.stop()
            await asyncio.wait_for(serve, timeout=5)
        finally:
            server.close()
        assert not (short_dir / "t.sock").exists()

    @pytest.mark.asyncio
    async def test_remote_hang_up_ends_tunnel(self, short_dir):
        server = await asyncio.start_server(_hang_up, host="127.0.0.1", port=0)
        engine = _engine(short_dir, server.sockets[0].getsockname()[1])
        try:
            await engine.negotiate()
            serve = asyncio.create_task(engine.serve())
            reader, writer = await asyncio.open_unix_connection(str(short_dir / "t.sock"))
            with pytest.raises(TunnelError):
                await asyncio.wait_for(serve, timeout=5)
            writer.close()
        finally:
            server.close()
        assert not (short_dir / "t.sock").exists()

    @pytest.mark.asyncio
    async def test_unreachable_device(self, short_dir):
        server = await asyncio.start_server(_echo, host="127.0.0.1", port=0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()
        engine = _engine(short_dir, port)
        with pytest.raises(TunnelError):
            await engine.negotiate()
        assert not (short_dir / "t.sock").exists()


class TestSocks5:
    @pytest.mark.asyncio
    async def test_dial_through_proxy(self, short_dir):
        socks = FakeSocksServer()
        await socks.start()
        engine = _engine(short_dir, 6520, host="device.internal", proxy=f"socks5://127.0.0.1:{socks.port}")
        try:
            await engine.negotiate()
            serve = asyncio.create_task(engine.serve())
            reader, writer = await asyncio.open_unix_connection(str(short_dir / "t.sock"))
            assert await _round_trip(reader, writer, b"OKAY") == b"OKAY"
            assert socks.targets == [("device.internal", 6520)]
            await engine.stop()
            await asyncio.wait_for(serve, timeout=5)
            writer.close()
        finally:
            await socks.stop()

    @pytest.mark.asyncio
    async def test_ip_target(self):
        socks = FakeSocksServer()
        await socks.start()
        try:
            reader, writer = await socks5.open_connection("10.1.2.3", 6520, proxy=("127.0.0.1", socks.port))
            writer.close()
        finally:
            await socks.stop()
        assert socks.targets == [("10.1.2.3", 6520)]

    @pytest.mark.asyncio
    async def test_refused_by_proxy(self):
        socks = FakeSocksServer(reply_code=0x05)
        await socks.start()
        try:
            with pytest.raises(TunnelError, match="connection refused"):
                await socks5.open_connection("device.internal", 6520, proxy=("127.0.0.1", socks.port))
        finally:
            await socks.stop()


class TestLocalEndpoint:
    @pytest.mark.asyncio
    async def test_scans_past_busy_port(self, short_dir):
        busy = await asyncio.start_server(_echo, host="127.0.0.1", port=0)
        busy_port = busy.sockets[0].getsockname()[1]
        endpoint = LocalEndpoint(short_dir / "e.sock", base_port=busy_port, port_range=20)
        try:
            port = await endpoint.open()
            assert busy_port < port < busy_port + 20
        finally:
            await endpoint.close()
            busy.close()

    @pytest.mark.asyncio
    async def test_replaces_stale_socket_file(self, short_dir):
        stale = short_dir / "e.sock"
        stale.write_text("", encoding="utf-8")
        endpoint = LocalEndpoint(stale, base_port=0)
        await endpoint.open()
        assert stale.is_socket()
        await endpoint.close()
        await endpoint.close()
        assert not stale.exists()
