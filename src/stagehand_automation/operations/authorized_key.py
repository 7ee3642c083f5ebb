from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import HostConfig


@dataclass
class UserRecord:
    name: str
    home: Path
    group: str


class AuthorizedKeyManager:
    def get_user(self, executor: Executor, username: str) -> UserRecord:
        result = executor.run(["getent", "passwd", username], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            raise ValueError(f"User '{username}' does not exist")
        fields = result.stdout.strip().split(":")
        group = executor.run(["id", "-gn", username], mutable=False).stdout.strip()
        return UserRecord(name=username, home=Path(fields[5]), group=group)

    def read(self, executor: Executor, path: Path) -> str:
        return executor.read_file(path) or ""

    def write(self, executor: Executor, record: UserRecord, path: Path, content: str) -> None:
        executor.ensure_directory(path.parent, mode=0o700)
        executor.set_ownership(path.parent, owner=record.name, group=record.group)
        executor.write_file(path, content=content, mode=0o600)
        executor.set_ownership(path, owner=record.name, group=record.group)


class AuthorizedKeyOperation(Operation):
    """Ensure SSH authorized keys are present for a user."""

    action = "authorized_key"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_user = spec.get("user")
        if not raw_user:
            raise ValueError("authorized_key operation requires a user")
        self.user = str(raw_user)
        raw_key = spec.get("key")
        if not raw_key:
            raise ValueError("authorized_key operation requires a key")
        self.key = self._normalize_key(str(raw_key))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("authorized_key state must be 'present' or 'absent'")
        self.manager = AuthorizedKeyManager()

    @staticmethod
    def _normalize_key(raw: str) -> str:
        text = raw.strip()
        if text.startswith(("ssh-", "ecdsa-", "sk-")):
            return text
        try:
            decoded = base64.b64decode(text, validate=True).decode().strip()
        except (binascii.Error, UnicodeDecodeError):
            return text
        return decoded or text

    def _auth_file(self, record: UserRecord) -> Path:
        return record.home / ".ssh" / "authorized_keys"

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        record = self.manager.get_user(executor, self.user)
        keys = self._split_keys(self.manager.read(executor, self._auth_file(record)))
        return (self.key in keys) == (self.state == "present")

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        record = self.manager.get_user(executor, self.user)
        auth_file = self._auth_file(record)
        keys = self._split_keys(self.manager.read(executor, auth_file))
        if self.state == "present":
            keys.append(self.key)
        else:
            keys.remove(self.key)
        new_content = "\n".join(keys) + ("\n" if keys else "")
        self.manager.write(executor, record, auth_file, new_content)
        return "added" if self.state == "present" else "removed"

    @staticmethod
    def _split_keys(content: str) -> list[str]:
        if not content:
            return []
        lines = [line.strip() for line in content.splitlines() if line.strip()]
        seen: list[str] = []
        for line in lines:
            if line not in seen:
                seen.append(line)
        return seen
