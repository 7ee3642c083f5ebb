from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Credential:
    kind: str = "agent"
    value: Any = None


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    port: int = 22
    user: Optional[str] = None
    credential: Credential = field(default_factory=Credential)
    become: bool = False
    groups: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionSpec:
    type: str
    data: dict[str, Any]
    best_effort: bool = False


@dataclass
class TaskSpec:
    name: str
    hosts: list[str]
    actions: list[ActionSpec]


@dataclass
class Plan:
    hosts: dict[str, HostConfig]
    tasks: list[TaskSpec]
    groups: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    error: Optional[str] = None
    output: Optional[str] = None

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        return "changed" if self.changed else "unchanged"
