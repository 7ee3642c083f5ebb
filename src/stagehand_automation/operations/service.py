from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable) is not None

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def daemon_reload(self, executor: Executor) -> None:
        executor.run([self.executable, "daemon-reload"])

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])


class ServiceOperation(Operation):
    """Manage systemd services."""

    action = "service"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.name = str(raw_name)
        self._enabled = coerce_bool(spec.get("enabled"))
        self._state = spec.get("state")
        if self._state not in {None, "running", "stopped"}:
            raise ValueError("service state must be 'running' or 'stopped'")
        if self._enabled is None and self._state is None:
            raise ValueError("service operation needs 'enabled' and/or 'state'")
        self.daemon_reload = bool(coerce_bool(spec.get("daemon_reload", False)))
        self.systemctl = SystemCtl()

    def _pending(self, executor: Executor) -> list[str]:
        if not self.systemctl.available(executor):
            raise RuntimeError("systemctl is not available on this host")
        pending: list[str] = []
        if self._enabled is not None:
            enabled = self.systemctl.is_enabled(executor, self.name)
            if self._enabled and not enabled:
                pending.append("enabled")
            elif not self._enabled and enabled:
                pending.append("disabled")
        if self._state is not None:
            active = self.systemctl.is_active(executor, self.name)
            if self._state == "running" and not active:
                pending.append("started")
            elif self._state == "stopped" and active:
                pending.append("stopped")
        return pending

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        return not self._pending(executor)

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        changes = self._pending(executor)
        if self.daemon_reload:
            self.systemctl.daemon_reload(executor)
        actions = {
            "enabled": self.systemctl.enable,
            "disabled": self.systemctl.disable,
            "started": self.systemctl.start,
            "stopped": self.systemctl.stop,
        }
        for change in changes:
            logger.debug("service=%s host=%s change=%s", self.name, host.name, change)
            actions[change](executor, self.name)
        return ", ".join(changes)
