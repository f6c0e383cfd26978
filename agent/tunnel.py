from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from agent.endpoint import LocalEndpoint
from common.config import TunnelConfig
from common.model import AgentKind, ConnectionStatus, DeviceLocator

CHUNK_SIZE = 65536


class TunnelError(ConnectionError):
    pass


Source = Callable[[], Awaitable[bytes]]
Sink = Callable[[bytes], Awaitable[None]]


def stream_source(reader: asyncio.StreamReader) -> Source:
    async def read() -> bytes:
        return await reader.read(CHUNK_SIZE)

    return read


def stream_sink(writer: asyncio.StreamWriter) -> Sink:
    async def write(data: bytes) -> None:
        writer.write(data)
        await writer.drain()

    return write


class Pump:
    def __init__(self, local_src: Source, local_dst: Sink, remote_src: Source, remote_dst: Sink):
        self.local_src = local_src
        self.local_dst = local_dst
        self.remote_src = remote_src
        self.remote_dst = remote_dst
        self._tasks: list[asyncio.Task[None]] = []

    @staticmethod
    async def _copy(src: Source, dst: Sink, direction: str) -> None:
        while True:
            try:
                chunk = await src()
            except (OSError, asyncio.IncompleteReadError) as exc:
                raise TunnelError(f"no longer able to copy data from {direction}: {exc}") from exc
            if not chunk:
                raise TunnelError(f"peer closed while copying data from {direction}")
            try:
                await dst(chunk)
            except OSError as exc:
                raise TunnelError(f"no longer able to copy data from {direction}: {exc}") from exc

    async def run(self) -> None:
        self._tasks = [
            asyncio.create_task(self._copy(self.local_src, self.remote_dst, "local to remote"), name="pump-l2r"),
            asyncio.create_task(self._copy(self.remote_src, self.local_dst, "remote to local"), name="pump-r2l"),
        ]
        try:
            done, pending = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
            for task in self._tasks:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        for task in done:
            exc = task.exception() if not task.cancelled() else None
            if exc is not None:
                raise exc


class TunnelEngine(ABC):
    kind: AgentKind

    def __init__(self, config: TunnelConfig, locator: DeviceLocator, endpoint: LocalEndpoint):
        self.logger = logging.getLogger(f"agent.{self.kind.value}")
        self.config = config
        self.locator = locator
        self.endpoint = endpoint
        self._stopped = asyncio.Event()
        self._serve_task: asyncio.Task[Any] | None = None

    @abstractmethod
    async def negotiate(self) -> ConnectionStatus: ...

    @abstractmethod
    async def _pump(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None: ...

    async def _close_remote(self) -> None:
        return None

    async def serve(self) -> None:
        if self._stopped.is_set():
            await self._shutdown()
            return
        self._serve_task = asyncio.current_task()
        try:
            reader, writer = await self.endpoint.accept()
            self.logger.info("local client attached to %s", self.locator)
            try:
                await self._pump(reader, writer)
            finally:
                writer.close()
                with contextlib.suppress(ConnectionError, OSError):
                    await writer.wait_closed()
        except asyncio.CancelledError:
            if not self._stopped.is_set():
                raise
            self.logger.info("tunnel to %s stopped", self.locator)
        finally:
            self._serve_task = None
            await self._shutdown()

    async def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        task = self._serve_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        else:
            await self._shutdown()

    async def _shutdown(self) -> None:
        with contextlib.suppress(Exception):
            await self._close_remote()
        await self.endpoint.close()
