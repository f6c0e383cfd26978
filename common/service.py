from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from common.config import TunnelConfig
from common.model import DeviceLocator


class ServiceError(RuntimeError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass(slots=True)
class HostReachability:
    host: str
    directly_reachable: bool
    address: str | None = None


def _split_host_port(serial: str) -> tuple[str, int]:
    if ":" not in serial:
        raise ServiceError(f"failed to parse port from ADB serial: {serial!r}")
    host, port = serial.rsplit(":", 1)
    try:
        return host, int(port)
    except ValueError as exc:
        raise ServiceError(f"failed to parse port from ADB serial: {serial!r}") from exc


class ServiceClient:
    def __init__(self, config: TunnelConfig, timeout: float = 30.0):
        self.logger = logging.getLogger("common.service")
        self.config = config
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, locator: DeviceLocator, *parts: str) -> str:
        return "/".join([locator.service_endpoint.rstrip("/"), "hosts", locator.host, *parts])

    async def _get_json(self, url: str) -> Any:
        self.logger.debug("GET %s", url)
        async with aiohttp.ClientSession(timeout=self.timeout, trust_env=True) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status >= 300:
                        body = await resp.text()
                        raise ServiceError(f"GET {url} failed with {resp.status}: {body.strip()}", resp.status)
                    return await resp.json(content_type=None)
            except aiohttp.ClientError as exc:
                raise ServiceError(f"GET {url} failed: {exc}") from exc

    async def resolve(self, locator: DeviceLocator) -> HostReachability:
        data = await self._get_json(self._url(locator))
        if not isinstance(data, dict):
            raise ServiceError(f"unexpected host payload for {locator.host}")
        docker = data.get("docker") or {}
        address = str(docker.get("ip_address", "")).strip() if isinstance(docker, dict) else ""
        return HostReachability(host=locator.host, directly_reachable=bool(address), address=address or None)

    async def device_debug_endpoint(self, locator: DeviceLocator) -> tuple[str, int]:
        reach = await self.resolve(locator)
        if not reach.directly_reachable or not reach.address:
            raise ServiceError(f"host {locator.host} is not directly reachable, instance type should be Docker")
        data = await self._get_json(self._url(locator, "cvds"))
        cvds = data.get("cvds", []) if isinstance(data, dict) else []
        for cvd in cvds:
            if isinstance(cvd, dict) and str(cvd.get("webrtc_device_id", "")) == locator.device_id:
                _, port = _split_host_port(str(cvd.get("adb_serial", "")))
                return reach.address, port
        raise ServiceError(f"device {locator.device_id} not found on host {locator.host}")

    def signaling_url(self, locator: DeviceLocator) -> str:
        parts = urlsplit(self._url(locator, "devices", locator.device_id, "adb"))
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
        return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))
