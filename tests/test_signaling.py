"""Signaling engine against an in-test aiohttp peer."""

from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path

import aiohttp
import pytest
from aiohttp import web

from agent.endpoint import LocalEndpoint
from agent.signaling import CHANNEL_KEY_INFO, SignalingTunnelEngine, load_signaling_config
from agent.tunnel import TunnelError
from common.config import ConfigurationError, TunnelConfig
from common.crypto import (
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64d,
    b64e,
    derive_key,
    exchange,
    generate_keypair,
    public_key_bytes,
    random_bytes,
)
from common.model import ControlState, DeviceLocator
from common.protocol import MsgType, ProtocolError, build_message, encode_message, parse_message

LOCATOR = DeviceLocator("http://127.0.0.1/v1", "host-1", "dev-7")


class DevicePeer:
    """Device side of the channel: answers the offer and echoes decrypted data."""

    def __init__(self, reject: str = "", drop_after: int = 0):
        self.reject = reject
        self.drop_after = drop_after
        self.offers: list[dict] = []
        self.received: list[bytes] = []
        self.got_bye = asyncio.Event()
        self.runner: web.AppRunner | None = None
        self.port = 0

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/v1/hosts/{host}/devices/{device}/adb", self._handle)
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "127.0.0.1", 0)
        await site.start()
        self.port = self.runner.addresses[0][1]

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.port}/v1/hosts/host-1/devices/dev-7/adb"

    async def _handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        offer = parse_message((await ws.receive()).data)
        self.offers.append(offer)
        if self.reject:
            await ws.send_str(encode_message(build_message(MsgType.REJECT, reason=self.reject)))
            await ws.close()
            return ws

        key = generate_keypair()
        nonce = random_bytes(16)
        shared = exchange(key, b64d(offer["public_key"]))
        data_key = derive_key(shared, salt=b64d(offer["nonce"]) + nonce, info=CHANNEL_KEY_INFO)
        await ws.send_str(
            encode_message(build_message(MsgType.ANSWER, public_key=b64e(public_key_bytes(key)), nonce=b64e(nonce)))
        )
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.BINARY:
                data = aes_gcm_decrypt(data_key, msg.data)
                self.received.append(data)
                await ws.send_bytes(aes_gcm_encrypt(data_key, data))
                if self.drop_after and len(self.received) >= self.drop_after:
                    await ws.close()
                    break
            elif msg.type == aiohttp.WSMsgType.TEXT and parse_message(msg.data)["type"] == MsgType.BYE.value:
                self.got_bye.set()
        return ws


@pytest.fixture
def short_dir():
    with tempfile.TemporaryDirectory(prefix="cvd") as d:
        yield Path(d)


def _engine(short_dir: Path, url: str, ice: dict | None = None) -> SignalingTunnelEngine:
    config = TunnelConfig(service_url="http://127.0.0.1", control_dir=str(short_dir), adb_base_port=0)
    endpoint = LocalEndpoint(short_dir / "s.sock", base_port=0)
    return SignalingTunnelEngine(config, LOCATOR, endpoint, url, ice, negotiate_timeout=5.0)


class TestSignalingEngine:
    @pytest.mark.asyncio
    async def test_offer_answer_and_echo(self, short_dir):
        peer = DevicePeer()
        await peer.start()
        ice = {"ice_servers": [{"urls": ["stun:stun.example.com:19302"]}]}
        engine = _engine(short_dir, peer.url, ice)
        try:
            status = await engine.negotiate()
            assert status.control_state == ControlState.CONNECTED
            offer = peer.offers[0]
            assert offer["type"] == "OFFER"
            assert offer["device_id"] == "dev-7"
            assert offer["channel"] == "adb"
            assert offer["ice_servers"] == ice["ice_servers"]

            serve = asyncio.create_task(engine.serve())
            reader, writer = await asyncio.open_unix_connection(str(short_dir / "s.sock"))
            writer.write(b"host:devices")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(12), timeout=5) == b"host:devices"
            assert peer.received == [b"host:devices"]

            await engine.stop()
            await asyncio.wait_for(serve, timeout=5)
            await asyncio.wait_for(peer.got_bye.wait(), timeout=5)
            writer.close()
        finally:
            await peer.stop()
        assert not (short_dir / "s.sock").exists()

    @pytest.mark.asyncio
    async def test_rejected(self, short_dir):
        peer = DevicePeer(reject="device busy")
        await peer.start()
        engine = _engine(short_dir, peer.url)
        try:
            with pytest.raises(TunnelError, match="device busy"):
                await engine.negotiate()
        finally:
            await peer.stop()
        assert not (short_dir / "s.sock").exists()

    @pytest.mark.asyncio
    async def test_dropped_session_is_terminal(self, short_dir):
        peer = DevicePeer(drop_after=1)
        await peer.start()
        engine = _engine(short_dir, peer.url)
        try:
            await engine.negotiate()
            serve = asyncio.create_task(engine.serve())
            reader, writer = await asyncio.open_unix_connection(str(short_dir / "s.sock"))
            writer.write(b"ping")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(4), timeout=5) == b"ping"
            with pytest.raises(TunnelError):
                await asyncio.wait_for(serve, timeout=5)
            writer.close()
        finally:
            await peer.stop()
        assert not (short_dir / "s.sock").exists()

    @pytest.mark.asyncio
    async def test_no_signaling_server(self, short_dir):
        peer = DevicePeer()
        await peer.start()
        url = peer.url
        await peer.stop()
        with pytest.raises(TunnelError):
            await _engine(short_dir, url).negotiate()


class TestSignalingConfig:
    def test_empty_path(self):
        assert load_signaling_config("") == {"ice_servers": []}

    def test_urls_string_is_normalized(self, tmp_path):
        path = tmp_path / "ice.json"
        path.write_text(json.dumps({"ice_servers": [{"urls": "turn:turn.example.com", "username": "u"}]}))
        cfg = load_signaling_config(str(path))
        assert cfg["ice_servers"] == [{"urls": ["turn:turn.example.com"], "username": "u"}]

    @pytest.mark.parametrize("content", ["not json", "[]", '{"ice_servers": {}}', '{"ice_servers": [{"username": "u"}]}'])
    def test_invalid(self, tmp_path, content):
        path = tmp_path / "ice.json"
        path.write_text(content)
        with pytest.raises(ConfigurationError):
            load_signaling_config(str(path))

    def test_missing(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_signaling_config(str(tmp_path / "nope.json"))


class TestMessages:
    def test_answer_needs_key_material(self):
        with pytest.raises(ProtocolError, match="public_key"):
            parse_message('{"type": "ANSWER", "nonce": "AAAA"}')

    def test_unknown_type(self):
        with pytest.raises(ProtocolError):
            parse_message(b'{"type": "HELLO"}')

    def test_not_json(self):
        with pytest.raises(ProtocolError):
            parse_message(b"\xff\xfe")

    def test_bye_round_trip(self):
        assert parse_message(encode_message(build_message(MsgType.BYE))) == {"type": "BYE"}
