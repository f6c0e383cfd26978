from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import os
from pathlib import Path


class LocalEndpoint:
    def __init__(self, socket_path: str | Path, base_port: int = 5555, port_range: int = 100, bind: str = "127.0.0.1"):
        self.logger = logging.getLogger("agent.endpoint")
        self.socket_path = Path(socket_path)
        self.base_port = base_port
        self.port_range = port_range
        self.bind = bind
        self.port: int | None = None
        self._servers: list[asyncio.AbstractServer] = []
        self._client: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]] | None = None
        self._closed = False

    async def open(self) -> int:
        self._client = asyncio.get_running_loop().create_future()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        # A crashed engine may have left its socket behind.
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
        unix_server = await asyncio.start_unix_server(self._handle_client, path=str(self.socket_path))
        self._servers.append(unix_server)
        os.chmod(self.socket_path, 0o600)
        try:
            tcp_server = await self._start_tcp()
        except BaseException:
            await self.close()
            raise
        self._servers.append(tcp_server)
        self.port = int(tcp_server.sockets[0].getsockname()[1])
        self.logger.debug("listening on %s and %s:%s", self.socket_path, self.bind, self.port)
        return self.port

    async def _start_tcp(self) -> asyncio.AbstractServer:
        if self.base_port == 0:
            return await asyncio.start_server(self._handle_client, host=self.bind, port=0)
        last_error: OSError | None = None
        for port in range(self.base_port, min(self.base_port + self.port_range, 65536)):
            try:
                return await asyncio.start_server(self._handle_client, host=self.bind, port=port)
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE:
                    raise
                last_error = exc
        raise OSError(
            errno.EADDRINUSE,
            f"no free local port in {self.base_port}-{self.base_port + self.port_range - 1}: {last_error}",
        )

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._client is None or self._client.done():
            self.logger.warning("rejecting extra local connection, tunnel already in use")
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()
            return
        self._client.set_result((reader, writer))

    async def accept(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if self._client is None:
            raise RuntimeError("endpoint not open")
        return await asyncio.shield(self._client)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for server in self._servers:
            server.close()
        for server in self._servers:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(server.wait_closed(), timeout=1.0)
        self._servers.clear()
        if self._client is not None and not self._client.done():
            self._client.cancel()
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()
