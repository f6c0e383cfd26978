from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from agent import socks5
from agent.endpoint import LocalEndpoint
from agent.tunnel import Pump, TunnelEngine, stream_sink, stream_source
from common.config import TunnelConfig
from common.model import AgentKind, ConnectionStatus, ControlState, DeviceLocator

AddressLookup = Callable[[DeviceLocator], Awaitable[tuple[str, int]]]


class ProxyTunnelEngine(TunnelEngine):
    kind = AgentKind.PROXY

    def __init__(
        self,
        config: TunnelConfig,
        locator: DeviceLocator,
        endpoint: LocalEndpoint,
        lookup_address: AddressLookup,
    ):
        super().__init__(config, locator, endpoint)
        self.lookup_address = lookup_address
        self.remote_reader: asyncio.StreamReader | None = None
        self.remote_writer: asyncio.StreamWriter | None = None

    async def negotiate(self) -> ConnectionStatus:
        host, port = await self.lookup_address(self.locator)
        proxy = self.config.proxy_address()
        if proxy:
            self.logger.info("dialing %s:%s through socks5 proxy %s:%s", host, port, *proxy)
        else:
            self.logger.info("dialing %s:%s", host, port)
        self.remote_reader, self.remote_writer = await socks5.open_connection(host, port, proxy=proxy)
        try:
            local_port = await self.endpoint.open()
        except BaseException:
            await self._close_remote()
            raise
        return ConnectionStatus(control_port=local_port, control_state=ControlState.CONNECTED)

    async def _pump(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.remote_reader is None or self.remote_writer is None:
            raise RuntimeError("negotiate() must succeed before serving")
        pump = Pump(
            local_src=stream_source(reader),
            local_dst=stream_sink(writer),
            remote_src=stream_source(self.remote_reader),
            remote_dst=stream_sink(self.remote_writer),
        )
        await pump.run()

    async def _close_remote(self) -> None:
        writer, self.remote_writer = self.remote_writer, None
        self.remote_reader = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await writer.wait_closed()
