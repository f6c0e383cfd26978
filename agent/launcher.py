from __future__ import annotations

import logging
import os
from typing import Any

from agent.endpoint import LocalEndpoint
from agent.proxy import ProxyTunnelEngine
from agent.signaling import SignalingTunnelEngine
from agent.tunnel import TunnelEngine
from common.config import TunnelConfig
from common.connection import ConnectResult
from common.model import AgentKind, ConnectionRecord, ControlState
from common.registry import ConnectionRegistry
from common.service import ServiceClient


class EngineFactory:
    def __init__(self, config: TunnelConfig, service: ServiceClient, signaling_config: dict[str, Any] | None = None):
        self.config = config
        self.service = service
        self.signaling_config = signaling_config

    def __call__(self, record: ConnectionRecord) -> TunnelEngine:
        endpoint = LocalEndpoint(
            record.socket_path,
            base_port=self.config.adb_base_port,
            port_range=self.config.adb_port_range,
        )
        if record.agent_kind == AgentKind.PROXY:
            return ProxyTunnelEngine(self.config, record.locator, endpoint, self.service.device_debug_endpoint)
        return SignalingTunnelEngine(
            self.config,
            record.locator,
            endpoint,
            self.service.signaling_url(record.locator),
            self.signaling_config,
        )


class InProcessLauncher:
    def __init__(self, registry: ConnectionRegistry, engine_factory):
        self.logger = logging.getLogger("agent.launcher")
        self.registry = registry
        self.engine_factory = engine_factory

    async def launch(self, record: ConnectionRecord) -> ConnectResult:
        record.agent_pid = os.getpid()
        self.registry.put(record)
        engine = self.engine_factory(record)
        status = await engine.negotiate()
        record.transition(ControlState.CONNECTED)
        record.status.control_port = status.control_port
        self.registry.put(record)
        self.logger.info("%s %s ready on %s", record.agent_kind.value, record.locator, status.describe())
        return ConnectResult(status=status, controller=engine)
