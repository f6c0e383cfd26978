from __future__ import annotations

import asyncio
import contextlib
import ipaddress

from agent.tunnel import TunnelError

SOCKS_VERSION = 0x05
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

_REPLY_MESSAGES = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


def _encode_address(host: str) -> bytes:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raw = host.encode("idna")
        if len(raw) > 255:
            raise TunnelError(f"host name too long for SOCKS5: {host!r}")
        return bytes([ATYP_DOMAIN, len(raw)]) + raw
    if ip.version == 4:
        return bytes([ATYP_IPV4]) + ip.packed
    return bytes([ATYP_IPV6]) + ip.packed


async def _handshake(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, host: str, port: int) -> None:
    # No-authentication only.
    writer.write(bytes([SOCKS_VERSION, 1, 0x00]))
    await writer.drain()
    ver, method = await reader.readexactly(2)
    if ver != SOCKS_VERSION or method != 0x00:
        raise TunnelError(f"SOCKS5 proxy refused no-auth method (ver={ver}, method={method})")

    writer.write(bytes([SOCKS_VERSION, CMD_CONNECT, 0x00]) + _encode_address(host) + port.to_bytes(2, "big"))
    await writer.drain()
    head = await reader.readexactly(4)
    if head[0] != SOCKS_VERSION:
        raise TunnelError(f"unexpected SOCKS version in reply: {head[0]}")
    if head[1] != 0x00:
        reason = _REPLY_MESSAGES.get(head[1], f"reply code {head[1]}")
        raise TunnelError(f"SOCKS5 proxy failed to connect to {host}:{port}: {reason}")
    atyp = head[3]
    if atyp == ATYP_IPV4:
        await reader.readexactly(4)
    elif atyp == ATYP_IPV6:
        await reader.readexactly(16)
    elif atyp == ATYP_DOMAIN:
        n = (await reader.readexactly(1))[0]
        await reader.readexactly(n)
    else:
        raise TunnelError(f"unsupported address type in SOCKS5 reply: {atyp}")
    await reader.readexactly(2)


async def open_connection(
    host: str,
    port: int,
    proxy: tuple[str, int] | None = None,
    timeout: float = 30.0,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Dial ``host:port`` directly, or through a SOCKS5 proxy when given."""
    dial_host, dial_port = proxy if proxy else (host, port)
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(dial_host, dial_port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        what = "proxy" if proxy else "remote port"
        raise TunnelError(f"failed to dial {what} {dial_host}:{dial_port}: {exc}") from exc
    if proxy is None:
        return reader, writer
    try:
        await asyncio.wait_for(_handshake(reader, writer, host, port), timeout=timeout)
    except BaseException as exc:
        writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await writer.wait_closed()
        if isinstance(exc, (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError)):
            raise TunnelError(f"SOCKS5 handshake with {dial_host}:{dial_port} failed: {exc}") from exc
        raise
    return reader, writer
