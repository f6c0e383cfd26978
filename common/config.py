from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

DEFAULT_CONFIG_PATH = "~/.config/cvdr/cvdr.yaml"
DEFAULT_CONTROL_DIR = "~/.cvdr/connections"


class ConfigurationError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigurationError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"invalid yaml in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("config root must be a mapping")
    return data


def require_keys(cfg: dict[str, Any], keys: list[str], where: str = "config") -> None:
    missing = [k for k in keys if not cfg.get(k)]
    if missing:
        raise ConfigurationError(f"{where} missing required keys: {', '.join(missing)}")


def parse_socks5_url(url: str) -> tuple[str, int]:
    u = urlparse(url)
    if u.scheme != "socks5":
        raise ConfigurationError(f"scheme of proxy URL is not socks5. actual: {u.scheme or '<empty>'}")
    try:
        port = u.port
    except ValueError as exc:
        raise ConfigurationError(f"invalid proxy port in {url!r}") from exc
    if not u.hostname:
        raise ConfigurationError(f"proxy URL has no host: {url!r}")
    return u.hostname, port or 1080


@dataclass(slots=True)
class TunnelConfig:
    service_url: str = ""
    zone: str = ""
    proxy: str = ""
    control_dir: str = DEFAULT_CONTROL_DIR
    log_files_delete_threshold_hours: int = 24 * 7
    adb_base_port: int = 5555
    adb_port_range: int = 100
    adb_binary: str = "adb"
    agent_start_timeout: float = 120.0
    agent_stop_timeout: float = 8.0
    signaling_config: str = ""
    connect_agent: str = ""
    log_level: str = "info"

    @classmethod
    def from_mapping(cls, data: dict[str, Any], where: str = "config") -> "TunnelConfig":
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, raw in data.items():
            if key not in known or raw is None:
                continue
            values[key] = raw
        cfg = cls(**values)
        try:
            cfg.log_files_delete_threshold_hours = int(cfg.log_files_delete_threshold_hours)
            cfg.adb_base_port = int(cfg.adb_base_port)
            cfg.adb_port_range = max(1, int(cfg.adb_port_range))
            cfg.agent_start_timeout = float(cfg.agent_start_timeout)
            cfg.agent_stop_timeout = float(cfg.agent_stop_timeout)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{where} has an invalid numeric value: {exc}") from exc
        if not 0 <= cfg.adb_base_port <= 65535:
            raise ConfigurationError(f"{where} adb_base_port out of range: {cfg.adb_base_port}")
        if cfg.proxy:
            parse_socks5_url(cfg.proxy)
        return cfg

    def merged(self, **overrides: Any) -> "TunnelConfig":
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update({k: v for k, v in overrides.items() if v not in (None, "")})
        return TunnelConfig.from_mapping(data, where="command line")

    @property
    def control_dir_path(self) -> Path:
        return Path(self.control_dir).expanduser()

    @property
    def log_files_max_age(self) -> float:
        return self.log_files_delete_threshold_hours * 3600.0

    def proxy_address(self) -> tuple[str, int] | None:
        if not self.proxy:
            return None
        return parse_socks5_url(self.proxy)

    def service_root_endpoint(self) -> str:
        require_keys({"service_url": self.service_url}, ["service_url"])
        root = self.service_url.rstrip("/") + "/v1"
        if self.zone:
            root += f"/zones/{self.zone}"
        return root


def load_config(path: str | None = None) -> TunnelConfig:
    if path:
        return TunnelConfig.from_mapping(load_yaml(path), where=path)
    default = Path(DEFAULT_CONFIG_PATH).expanduser()
    if not default.exists():
        return TunnelConfig()
    return TunnelConfig.from_mapping(load_yaml(str(default)), where=str(default))
