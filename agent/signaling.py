from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any

import aiohttp
from cryptography.exceptions import InvalidTag

from agent.endpoint import LocalEndpoint
from agent.tunnel import Pump, TunnelEngine, TunnelError, stream_sink, stream_source
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
from common.model import AgentKind, ConnectionStatus, ControlState, DeviceLocator
from common.protocol import (
    ADB_CHANNEL,
    MAX_FRAME_SIZE,
    PROTOCOL_VERSION,
    MsgType,
    ProtocolError,
    build_message,
    encode_message,
    parse_message,
)

CHANNEL_KEY_INFO = b"cvdr-adb-channel"
_CLOSED_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR)


def load_signaling_config(path: str) -> dict[str, Any]:
    if not path:
        return {"ice_servers": []}
    p = Path(path).expanduser()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"signaling config file does not exist: {path}") from exc
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"invalid signaling config {path}: {exc}") from exc
    servers = data.get("ice_servers") if isinstance(data, dict) else None
    if not isinstance(servers, list):
        raise ConfigurationError(f"signaling config {path} requires an 'ice_servers' list")
    for server in servers:
        urls = server.get("urls") if isinstance(server, dict) else None
        if isinstance(urls, str):
            server["urls"] = [urls]
        elif not isinstance(urls, list) or not urls:
            raise ConfigurationError(f"signaling config {path}: every ICE server needs 'urls'")
    return {"ice_servers": servers}


class SignalingTunnelEngine(TunnelEngine):
    kind = AgentKind.SIGNALING

    def __init__(
        self,
        config: TunnelConfig,
        locator: DeviceLocator,
        endpoint: LocalEndpoint,
        url: str,
        signaling_config: dict[str, Any] | None = None,
        negotiate_timeout: float = 30.0,
    ):
        super().__init__(config, locator, endpoint)
        self.url = url
        self.signaling_config = signaling_config or {"ice_servers": []}
        self.negotiate_timeout = negotiate_timeout
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._data_key: bytes | None = None

    async def negotiate(self) -> ConnectionStatus:
        try:
            self._data_key = await self._handshake()
            local_port = await self.endpoint.open()
        except BaseException:
            await self._close_remote()
            raise
        return ConnectionStatus(control_port=local_port, control_state=ControlState.CONNECTED)

    async def _handshake(self) -> bytes:
        self._session = aiohttp.ClientSession(trust_env=True)
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                heartbeat=30.0,
                max_msg_size=MAX_FRAME_SIZE,
            )
        except aiohttp.ClientError as exc:
            raise TunnelError(f"failed to open signaling session {self.url}: {exc}") from exc

        key = generate_keypair()
        nonce = random_bytes(16)
        await self._ws.send_str(
            encode_message(
                build_message(
                    MsgType.OFFER,
                    version=PROTOCOL_VERSION,
                    device_id=self.locator.device_id,
                    channel=ADB_CHANNEL,
                    public_key=b64e(public_key_bytes(key)),
                    nonce=b64e(nonce),
                    ice_servers=self.signaling_config.get("ice_servers", []),
                )
            )
        )
        try:
            msg = await self._ws.receive(timeout=self.negotiate_timeout)
        except asyncio.TimeoutError as exc:
            raise TunnelError("timed out waiting for signaling answer") from exc
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise TunnelError(f"signaling session closed during negotiation ({msg.type.name})")
        try:
            reply = parse_message(msg.data)
        except ProtocolError as exc:
            raise TunnelError(f"invalid signaling answer: {exc}") from exc
        if reply["type"] == MsgType.REJECT.value:
            raise TunnelError(f"device {self.locator.device_id} rejected the connection: {reply.get('reason', 'unknown')}")
        if reply["type"] != MsgType.ANSWER.value:
            raise TunnelError(f"expected ANSWER, got {reply['type']}")
        try:
            peer_public = b64d(str(reply["public_key"]))
            peer_nonce = b64d(str(reply["nonce"]))
            shared = exchange(key, peer_public)
        except (KeyError, ValueError) as exc:
            raise TunnelError(f"invalid signaling answer: {exc}") from exc
        self.logger.info("signaling session for %s negotiated", self.locator)
        return derive_key(shared, salt=nonce + peer_nonce, info=CHANNEL_KEY_INFO)

    async def _channel_recv(self) -> bytes:
        ws, key = self._ws, self._data_key
        if ws is None or key is None:
            raise TunnelError("data channel is not open")
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.BINARY:
                try:
                    return aes_gcm_decrypt(key, msg.data)
                except (InvalidTag, ValueError) as exc:
                    raise TunnelError(f"corrupt data channel frame: {exc}") from exc
            if msg.type == aiohttp.WSMsgType.TEXT:
                with contextlib.suppress(ProtocolError):
                    if parse_message(msg.data)["type"] == MsgType.BYE.value:
                        return b""
                self.logger.debug("ignoring signaling message on open channel: %s", msg.data)
                continue
            if msg.type in _CLOSED_TYPES:
                raise TunnelError(f"signaling session dropped ({msg.type.name})")

    async def _channel_send(self, data: bytes) -> None:
        ws, key = self._ws, self._data_key
        if ws is None or key is None:
            raise TunnelError("data channel is not open")
        try:
            await ws.send_bytes(aes_gcm_encrypt(key, data))
        except aiohttp.ClientError as exc:
            raise TunnelError(f"signaling session dropped: {exc}") from exc

    async def _pump(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        pump = Pump(
            local_src=stream_source(reader),
            local_dst=stream_sink(writer),
            remote_src=self._channel_recv,
            remote_dst=self._channel_send,
        )
        await pump.run()

    async def _close_remote(self) -> None:
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None and not ws.closed:
            with contextlib.suppress(Exception):
                await ws.send_str(encode_message(build_message(MsgType.BYE)))
            with contextlib.suppress(Exception):
                await ws.close()
        if session is not None:
            await session.close()
