from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TextIO

from common.connection import ConnectionProtocol, Controller
from common.model import AgentKind, ConnectionRecord, ConnectionStatus, ControlState, DeviceLocator
from common.registry import ConnectionRegistry, StorageError, pid_alive


class ConnectionNotFound(LookupError):
    def __init__(self, locator: DeviceLocator):
        super().__init__(f"connection not found: {locator}")
        self.locator = locator


class NoConnections(LookupError):
    def __init__(self, host: str | None = None):
        super().__init__(f"no connections found on {host}" if host else "no connections found")
        self.host = host


@dataclass(slots=True)
class DeviceFailure:
    locator: DeviceLocator
    cause: BaseException

    def __str__(self) -> str:
        return f"{self.locator}: {self.cause}"


class AggregatedError(Exception):
    def __init__(self, failures: list[DeviceFailure]):
        self.failures = list(failures)
        super().__init__("\n".join(str(f) for f in self.failures))


@dataclass(slots=True)
class DeviceOutcome:
    locator: DeviceLocator
    status: ConnectionStatus | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class FanOutResult:
    outcomes: list[DeviceOutcome] = field(default_factory=list)
    error: AggregatedError | None = None

    def raise_for_failures(self) -> None:
        if self.error is not None:
            raise self.error


class AgentStopper:
    def __init__(self, stop_timeout: float = 8.0, poll_interval: float = 0.1):
        self.logger = logging.getLogger("client.stopper")
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.controllers: dict[DeviceLocator, Controller] = {}

    async def stop(self, record: ConnectionRecord) -> None:
        controller = self.controllers.pop(record.locator, None)
        if controller is not None:
            await controller.stop()
            return
        pid = record.agent_pid
        if pid is None or pid == os.getpid() or not pid_alive(pid):
            return
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGTERM)
        if await self._wait_exit(pid):
            return
        self.logger.warning("agent %s for %s ignored SIGTERM, killing it", pid, record.locator)
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGKILL)
        await self._wait_exit(pid)

    async def _wait_exit(self, pid: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stop_timeout
        while loop.time() < deadline:
            if not pid_alive(pid):
                return True
            await asyncio.sleep(self.poll_interval)
        return not pid_alive(pid)


Job = Callable[[DeviceLocator], Awaitable[Any]]


class Orchestrator:
    def __init__(
        self,
        protocol: ConnectionProtocol,
        registry: ConnectionRegistry,
        stopper: AgentStopper | None = None,
        out: TextIO | None = None,
        err: TextIO | None = None,
    ):
        self.logger = logging.getLogger("client.orchestrator")
        self.protocol = protocol
        self.registry = registry
        self.stopper = stopper or AgentStopper(protocol.config.agent_stop_timeout)
        self.out = out or sys.stdout
        self.err = err or sys.stderr

    async def _fan_out(
        self,
        locators: Sequence[DeviceLocator],
        job: Job,
        on_success: Callable[[DeviceLocator, Any], ConnectionStatus | None],
    ) -> FanOutResult:
        loop = asyncio.get_running_loop()
        pairs: list[tuple[asyncio.Future[Any], asyncio.Future[BaseException]]] = []
        tasks: list[asyncio.Task[None]] = []

        async def run(locator: DeviceLocator, ok: asyncio.Future[Any], failed: asyncio.Future[BaseException]) -> None:
            try:
                value = await job(locator)
            except Exception as exc:
                failed.set_result(exc)
            else:
                ok.set_result(value)

        for locator in locators:
            pair = (loop.create_future(), loop.create_future())
            pairs.append(pair)
            tasks.append(asyncio.create_task(run(locator, *pair), name=f"device-{locator}"))

        result = FanOutResult()
        failures: list[DeviceFailure] = []
        try:
            for locator, (ok, failed) in zip(locators, pairs):
                done, _ = await asyncio.wait((ok, failed), return_when=asyncio.FIRST_COMPLETED)
                if ok in done:
                    status = on_success(locator, ok.result())
                    result.outcomes.append(DeviceOutcome(locator, status=status))
                else:
                    cause = failed.result()
                    self.logger.debug("%s failed: %r", locator, cause)
                    failures.append(DeviceFailure(locator, cause))
                    result.outcomes.append(DeviceOutcome(locator, error=cause))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        if failures:
            result.error = AggregatedError(failures)
        return result

    def _prune_logs(self) -> None:
        try:
            count = self.registry.prune_stale_logs(self.protocol.config.log_files_max_age)
        except StorageError as exc:
            print(f"warning: failed to delete old log files: {exc}", file=self.err)
            return
        if count:
            print(f"deleted {count} old log file(s)", file=self.err)

    async def connect_many(self, locators: Sequence[DeviceLocator], preference: AgentKind | None = None) -> FanOutResult:
        self._prune_logs()

        async def connect(locator: DeviceLocator):
            return await self.protocol.find_or_connect(locator, preference)

        def reported(locator: DeviceLocator, result) -> ConnectionStatus:
            if result.controller is not None:
                self.stopper.controllers[locator] = result.controller
            print(f"{locator}: {result.status.describe()}", file=self.out)
            if result.error is not None:
                print(f"warning: {locator}: {result.error}", file=self.err)
            return result.status

        return await self._fan_out(locators, connect, reported)

    def _disconnect_targets(self, locators: Sequence[DeviceLocator] | None, host: str | None) -> list[DeviceLocator]:
        if locators:
            return list(locators)
        if host:
            return [r.locator for r in self.registry.list_by_host(host)]
        return [r.locator for r in self.registry.list_all()]

    async def disconnect(self, locator: DeviceLocator) -> None:
        record = self.registry.get(locator)
        if record is None:
            raise ConnectionNotFound(locator)
        if record.status.control_state == ControlState.CONNECTED:
            record.transition(ControlState.DISCONNECTING)
            self.registry.put(record)
        await self.stopper.stop(record)
        self.registry.discard(record)
        self.logger.info("disconnected %s", locator)

    async def disconnect_many(
        self,
        locators: Sequence[DeviceLocator] | None = None,
        host: str | None = None,
    ) -> FanOutResult:
        targets = self._disconnect_targets(locators, host)
        if not targets:
            raise NoConnections(host)

        def reported(locator: DeviceLocator, _: Any) -> ConnectionStatus:
            print(f"{locator}: disconnected", file=self.out)
            return ConnectionStatus(control_state=ControlState.DISCONNECTED)

        return await self._fan_out(targets, self.disconnect, reported)
