from __future__ import annotations

import asyncio
import logging

ADB_TIMEOUT = 15.0


class AdbBridgeError(RuntimeError):
    pass


class AdbServerProxy:
    def __init__(self, adb_binary: str = "adb", timeout: float = ADB_TIMEOUT):
        self.adb_binary = adb_binary
        self.timeout = timeout
        self.logger = logging.getLogger("agent.adb")

    async def _run(self, *args: str) -> str:
        cmd = [self.adb_binary, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise AdbBridgeError(f"failed to run {self.adb_binary}: {exc}") from exc
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise AdbBridgeError(f"'{' '.join(cmd)}' timed out after {self.timeout:g}s") from exc
        output = stdout.decode(errors="replace").strip()
        if proc.returncode != 0:
            raise AdbBridgeError(f"'{' '.join(cmd)}' exited with {proc.returncode}: {output}")
        return output

    async def connect(self, port: int) -> None:
        serial = f"127.0.0.1:{port}"
        output = await self._run("connect", serial)
        # adb exits 0 even when the connect itself fails.
        if "connected" not in output or "cannot" in output or "failed" in output:
            raise AdbBridgeError(f"adb failed to connect to {serial}: {output}")
        self.logger.info("adb connected to %s", serial)

    async def disconnect(self, port: int) -> None:
        serial = f"127.0.0.1:{port}"
        await self._run("disconnect", serial)
        self.logger.info("adb disconnected from %s", serial)
