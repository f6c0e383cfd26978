from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path

from common.model import ConnectionRecord, ConnectionStatus, ControlState, DeviceLocator

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class StorageError(RuntimeError):
    pass


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


class ConnectionRegistry:
    def __init__(self, control_dir: Path, pending_grace: float = 120.0):
        self.logger = logging.getLogger("common.registry")
        self.control_dir = Path(control_dir)
        self.records_dir = self.control_dir / "records"
        self.sockets_dir = self.control_dir / "sockets"
        self.logs_dir = self.control_dir / "logs"
        self.pending_grace = pending_grace

    def ensure_dirs(self) -> None:
        try:
            for d in (self.records_dir, self.sockets_dir, self.logs_dir):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"unable to create control directory {self.control_dir}: {exc}") from exc

    def record_path(self, locator: DeviceLocator) -> Path:
        return self.records_dir / f"{locator.key[:32]}.json"

    def socket_path(self, locator: DeviceLocator) -> Path:
        # AF_UNIX paths are limited to ~108 bytes, keep the name short.
        return self.sockets_dir / f"{locator.key[:16]}.sock"

    def new_log_path(self, locator: DeviceLocator) -> Path:
        stamp = time.strftime("%Y%m%d-%H%M%S")
        host = _UNSAFE_CHARS.sub("_", locator.host)
        device = _UNSAFE_CHARS.sub("_", locator.device_id)
        return self.logs_dir / f"{host}_{device}_{stamp}.log"

    def put(self, record: ConnectionRecord) -> None:
        self.ensure_dirs()
        target = self.record_path(record.locator)
        payload = json.dumps(record.to_dict(), ensure_ascii=False, indent=2)
        tmp_name = ""
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=self.records_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            if tmp_name:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise StorageError(f"unable to write connection record {target}: {exc}") from exc

    def _read(self, path: Path) -> ConnectionRecord:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ConnectionRecord.from_dict(data)
        except FileNotFoundError:
            raise
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"unreadable connection record {path}: {exc}") from exc

    def get(self, locator: DeviceLocator) -> ConnectionRecord | None:
        try:
            record = self._read(self.record_path(locator))
        except FileNotFoundError:
            return None
        if record.locator != locator:
            # Digest collision on the truncated key, treat as absent.
            return None
        return record

    def update_status(self, locator: DeviceLocator, status: ConnectionStatus) -> ConnectionRecord | None:
        record = self.get(locator)
        if record is None:
            return None
        record.status = ConnectionStatus(status.control_port, status.control_state)
        self.put(record)
        return record

    def remove(self, locator: DeviceLocator) -> bool:
        try:
            self.record_path(locator).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"unable to remove connection record for {locator}: {exc}") from exc
        return True

    def is_stale(self, record: ConnectionRecord) -> bool:
        if record.agent_pid is not None:
            return not pid_alive(record.agent_pid)
        if record.status.control_state == ControlState.CONNECTING:
            return time.time() - record.created_at > self.pending_grace
        # Only a pending record may lack an owner.
        return True

    def discard(self, record: ConnectionRecord) -> None:
        self.remove(record.locator)
        if record.socket_path:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(record.socket_path)

    def _scan(self) -> list[ConnectionRecord]:
        if not self.records_dir.is_dir():
            return []
        try:
            paths = sorted(self.records_dir.glob("*.json"))
        except OSError as exc:
            raise StorageError(f"unable to list connection records: {exc}") from exc
        records: dict[DeviceLocator, ConnectionRecord] = {}
        for path in paths:
            if path.name.startswith(".tmp-"):
                continue
            try:
                record = self._read(path)
            except FileNotFoundError:
                continue
            except StorageError as exc:
                self.logger.warning("skipping connection record: %s", exc)
                continue
            records[record.locator] = record
        return sorted(records.values(), key=lambda r: (r.locator.host, r.locator.device_id))

    def _drop_if_stale(self, record: ConnectionRecord) -> bool:
        # Failed attempts stay visible until the next connect or disconnect.
        if record.status.control_state == ControlState.ERROR or not self.is_stale(record):
            return False
        self.logger.info("removing stale connection record for %s", record.locator)
        self.discard(record)
        return True

    def reconcile(self) -> int:
        return sum(1 for record in self._scan() if self._drop_if_stale(record))

    def list_all(self, reconcile: bool = True) -> list[ConnectionRecord]:
        records = self._scan()
        if reconcile:
            records = [r for r in records if not self._drop_if_stale(r)]
        return records

    def list_by_host(self, host: str, reconcile: bool = True) -> list[ConnectionRecord]:
        return [r for r in self.list_all(reconcile=reconcile) if r.locator.host == host]

    def prune_stale_logs(self, max_age: float) -> int:
        if not self.logs_dir.is_dir():
            return 0
        cutoff = time.time() - max_age
        try:
            entries = list(os.scandir(self.logs_dir))
        except OSError as exc:
            raise StorageError(f"unable to list log directory {self.logs_dir}: {exc}") from exc
        in_use = {r.log_path for r in self.list_all(reconcile=False)}
        count = 0
        for entry in entries:
            if not entry.is_file() or entry.path in in_use:
                continue
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                os.unlink(entry.path)
                count += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                self.logger.warning("failed to delete old log %s: %s", entry.path, exc)
        return count
