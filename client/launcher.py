from __future__ import annotations

import asyncio
import logging
import subprocess
import sys

from common.config import TunnelConfig
from common.connection import AgentUnresponsive, ConnectResult, parse_agent_report
from common.model import ConnectionRecord


class CommandRunner:
    def __init__(self, timeout: float = 120.0, command: list[str] | None = None):
        self.logger = logging.getLogger("client.launcher")
        self.timeout = timeout
        self.command = command or [sys.executable, "-m", "client.main"]

    async def start_bg_command(self, *args: str) -> tuple[int, bytes]:
        cmd = [*self.command, *args]
        self.logger.debug("starting agent: %s", " ".join(cmd))
        # Not an asyncio subprocess: closing the loop must not take the agent with it.
        # stderr is inherited so agent failures before the report reach the user.
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            start_new_session=True,
        )
        assert proc.stdout is not None
        try:
            output = await asyncio.wait_for(asyncio.to_thread(proc.stdout.read), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await asyncio.to_thread(proc.wait)
            raise AgentUnresponsive(f"agent did not report within {self.timeout:g}s") from exc
        proc.stdout.close()
        return proc.pid, output


class SubprocessLauncher:
    def __init__(
        self,
        config: TunnelConfig,
        runner: CommandRunner | None = None,
        signaling_config: str = "",
        config_path: str = "",
        verbose: bool = False,
    ):
        self.config = config
        self.runner = runner or CommandRunner(timeout=config.agent_start_timeout)
        self.signaling_config = signaling_config or config.signaling_config
        self.config_path = config_path
        self.verbose = verbose

    def build_agent_args(self, record: ConnectionRecord) -> list[str]:
        args = [
            record.agent_kind.value,
            record.locator.device_id,
            "--host",
            record.locator.host,
            "--service_url",
            self.config.service_url,
        ]
        if self.config.zone:
            args += ["--zone", self.config.zone]
        if self.config.proxy:
            args += ["--proxy", self.config.proxy]
        if self.signaling_config:
            args += ["--signaling_config", self.signaling_config]
        if self.config_path:
            args += ["--config", self.config_path]
        if self.verbose:
            args.append("-v")
        return args

    async def launch(self, record: ConnectionRecord) -> ConnectResult:
        _, output = await self.runner.start_bg_command(*self.build_agent_args(record))
        return parse_agent_report(output)
