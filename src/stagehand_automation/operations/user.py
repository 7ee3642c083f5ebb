from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class UserInfo:
    name: str
    shell: str
    home: str
    groups: list[str] = field(default_factory=list)


class UserManager:
    """Reads and changes accounts on the target through the shadow-utils CLI."""

    def get(self, executor: Executor, username: str) -> UserInfo | None:
        result = executor.run(["getent", "passwd", username], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        fields = result.stdout.strip().split(":")
        if len(fields) < 7:
            raise ValueError(f"Malformed passwd entry for {username}: {result.stdout.strip()}")
        groups = executor.run(["id", "-nG", username], check=False, mutable=False)
        return UserInfo(
            name=fields[0],
            home=fields[5],
            shell=fields[6],
            groups=groups.stdout.split() if groups.returncode == 0 else [],
        )

    def add(
        self,
        executor: Executor,
        name: str,
        *,
        shell: str | None,
        system: bool,
        create_home: bool,
        comment: str | None,
        groups: list[str],
    ) -> None:
        cmd = ["useradd"]
        if shell:
            cmd += ["--shell", shell]
        if create_home:
            cmd.append("--create-home")
        if system:
            cmd.append("--system")
        if comment:
            cmd += ["--comment", comment]
        if groups:
            cmd += ["--groups", ",".join(groups)]
        cmd.append(name)
        executor.run(cmd)

    def delete(self, executor: Executor, name: str, *, remove_home: bool) -> None:
        cmd = ["userdel"]
        if remove_home:
            cmd.append("--remove")
        cmd.append(name)
        executor.run(cmd)

    def set_shell(self, executor: Executor, name: str, shell: str) -> None:
        executor.run(["usermod", "--shell", shell, name])

    def add_groups(self, executor: Executor, name: str, groups: list[str]) -> None:
        executor.run(["usermod", "--append", "--groups", ",".join(groups), name])

    def lock(self, executor: Executor, name: str) -> None:
        executor.run(["passwd", "-l", name])

    def unlock(self, executor: Executor, name: str) -> None:
        executor.run(["passwd", "-u", name])

    def is_locked(self, executor: Executor, name: str) -> bool:
        result = executor.run(["passwd", "-S", name], check=False, mutable=False)
        if result.returncode != 0:
            return False
        parts = result.stdout.strip().split()
        if len(parts) < 2:
            return False
        return parts[1].upper().startswith("L")


class UserOperation(Operation):
    """Ensure user accounts exist with the requested shell, groups and lock state."""

    action = "user"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("user operation requires a name")
        self.name = str(raw_name)
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("user operation state must be 'present' or 'absent'")
        self.shell = str(spec["shell"]) if spec.get("shell") else None
        self.system = bool(coerce_bool(spec.get("system", False)))
        create_home = coerce_bool(spec.get("create_home"))
        self.create_home = True if create_home is None else create_home
        self.remove_home = bool(coerce_bool(spec.get("remove_home", False)))
        self.locked: Optional[bool] = coerce_bool(spec.get("locked"))
        self.comment = str(spec["comment"]) if spec.get("comment") else None
        raw_groups = spec.get("groups") or []
        if isinstance(raw_groups, str):
            raw_groups = [g.strip() for g in raw_groups.split(",") if g.strip()]
        self.groups = [str(g) for g in raw_groups]
        self.manager = UserManager()

    def _pending(self, executor: Executor) -> list[str]:
        info = self.manager.get(executor, self.name)
        if self.state == "absent":
            return ["removed"] if info else []
        if not info:
            pending = ["created"]
            if self.locked:
                pending.append("locked")
            return pending
        pending: list[str] = []
        if self.shell and info.shell != self.shell:
            pending.append("shell")
        if any(group not in info.groups for group in self.groups):
            pending.append("groups")
        if self.locked is not None:
            locked = self.manager.is_locked(executor, self.name)
            if self.locked and not locked:
                pending.append("locked")
            elif not self.locked and locked:
                pending.append("unlocked")
        return pending

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        return not self._pending(executor)

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        changes = self._pending(executor)
        for change in changes:
            logger.debug("user=%s host=%s change=%s", self.name, host.name, change)
            if change == "created":
                self.manager.add(
                    executor,
                    self.name,
                    shell=self.shell,
                    system=self.system,
                    create_home=self.create_home,
                    comment=self.comment,
                    groups=self.groups,
                )
            elif change == "removed":
                self.manager.delete(executor, self.name, remove_home=self.remove_home)
            elif change == "shell":
                self.manager.set_shell(executor, self.name, str(self.shell))
            elif change == "groups":
                self.manager.add_groups(executor, self.name, self.groups)
            elif change == "locked":
                self.manager.lock(executor, self.name)
            elif change == "unlocked":
                self.manager.unlock(executor, self.name)
        return ", ".join(changes)
