from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .types import ActionSpec, Credential, HostConfig, Plan, TaskSpec

CONNECTIONS = {"local", "ssh"}
ACTION_KEYS = {"type", "best_effort"}


class InventoryLoader:
    """Loads plan definitions (inventory plus tasks) from TOML files."""

    def __init__(self, template_dir: Optional[Path] = None):
        self.template_dir = template_dir

    def load(self, path: Path) -> Plan:
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"{path}: {exc}") from None
        except UnicodeDecodeError:
            raise ValueError(f"{path}: plan file is not valid UTF-8") from None
        except FileNotFoundError:
            raise ValueError(f"{path}: plan file not found") from None
        try:
            plan = self.parse(data)
        except ValueError as exc:
            raise ValueError(f"{path}: {exc}") from None
        self._attach_plan_dir(plan, path.parent)
        return plan

    def parse(self, data: dict[str, Any]) -> Plan:
        hosts = self._parse_hosts(_expect(data.get("hosts", {}), dict, "hosts must be a table"))
        groups = self._parse_groups(_expect(data.get("groups", {}), dict, "groups must be a table"), hosts)
        if not hosts:
            hosts["local"] = HostConfig(name="local")
        raw_tasks = _expect(data.get("tasks", []), list, "tasks must be an array of tables")
        tasks = self._parse_tasks(raw_tasks, hosts, groups)
        return Plan(hosts=hosts, tasks=tasks, groups=groups)

    @classmethod
    def _parse_hosts(cls, host_data: dict[str, Any]) -> dict[str, HostConfig]:
        hosts: dict[str, HostConfig] = {}
        for name, payload in host_data.items():
            if not isinstance(payload, dict):
                raise ValueError(f"Host '{name}' must be a table")
            hosts[name] = cls._parse_host(name, payload)
        return hosts

    @classmethod
    def _parse_host(cls, name: str, payload: dict[str, Any]) -> HostConfig:
        address = payload.get("address")
        connection = str(payload.get("connection") or ("ssh" if address else "local"))
        if connection not in CONNECTIONS:
            raise ValueError(f"Host '{name}' has unknown connection '{connection}'")
        if connection == "ssh" and not address:
            raise ValueError(f"Host '{name}' uses ssh but has no address")
        variables = payload.get("variables", {})
        if not isinstance(variables, dict):
            raise ValueError(f"Host '{name}' variables must be a table")
        return HostConfig(
            name=name,
            connection=connection,
            address=str(address) if address else None,
            port=int(payload.get("port", 22)),
            user=str(payload["user"]) if payload.get("user") else None,
            credential=cls._parse_credential(name, payload.get("credential")),
            become=bool(payload.get("become", False)),
            variables=dict(variables),
        )

    @staticmethod
    def _parse_credential(host_name: str, raw: Any) -> Credential:
        if raw is None or raw == "agent":
            return Credential()
        if isinstance(raw, str):
            return Credential(kind="key_file", value=raw)
        if isinstance(raw, dict):
            if "key_file" in raw:
                return Credential(kind="key_file", value=str(raw["key_file"]))
            if "password" in raw:
                return Credential(kind="password", value=raw["password"])
            if raw.get("agent"):
                return Credential()
        raise ValueError(
            f"Host '{host_name}' credential must be 'agent', a key path, "
            "or a table with key_file or password"
        )

    @classmethod
    def _parse_groups(
        cls, group_data: dict[str, Any], hosts: dict[str, HostConfig]
    ) -> dict[str, list[str]]:
        groups: dict[str, list[str]] = {}
        for group, payload in group_data.items():
            group_vars: dict[str, Any] = {}
            if isinstance(payload, dict):
                group_vars = dict(
                    _expect(payload.get("variables", {}), dict, f"Group '{group}' variables must be a table")
                )
                entries = payload.get("hosts", [])
            else:
                entries = payload
            if not isinstance(entries, list):
                raise ValueError(f"Group '{group}' must list its hosts")
            members: list[str] = []
            for entry in entries:
                name = cls._group_member(group, entry, hosts)
                host = hosts[name]
                if group not in host.groups:
                    host.groups.append(group)
                # Host-level variables win over group variables.
                host.variables = {**group_vars, **host.variables}
                if name not in members:
                    members.append(name)
            groups[group] = members
        return groups

    @classmethod
    def _group_member(cls, group: str, entry: Any, hosts: dict[str, HostConfig]) -> str:
        if isinstance(entry, str):
            if entry not in hosts:
                raise ValueError(f"Group '{group}' references undefined host '{entry}'")
            return entry
        if isinstance(entry, dict):
            name = str(entry.get("name") or entry.get("address") or "")
            if not name:
                raise ValueError(f"Group '{group}' has a host without name or address")
            payload = {k: v for k, v in entry.items() if k != "name"}
            host = cls._parse_host(name, payload)
            existing = hosts.get(name)
            if existing is not None:
                if (existing.address, existing.user, existing.port) != (host.address, host.user, host.port):
                    raise ValueError(f"Host '{name}' is defined more than once with different settings")
                return name
            hosts[name] = host
            return name
        raise ValueError(f"Group '{group}' entries must be host names or tables")

    @staticmethod
    def _parse_tasks(
        raw_tasks: list[dict[str, Any]], hosts: dict[str, HostConfig], groups: dict[str, list[str]]
    ) -> list[TaskSpec]:
        tasks: list[TaskSpec] = []
        for index, task in enumerate(raw_tasks, start=1):
            if not isinstance(task, dict):
                raise ValueError(f"Task {index} must be a table")
            name = task.get("name", f"task-{index}")
            target_hosts = task.get("hosts") or []
            if isinstance(target_hosts, str):
                target_hosts = [target_hosts]
            if not isinstance(target_hosts, list) or not all(isinstance(s, str) for s in target_hosts):
                raise ValueError(f"Task '{name}' hosts must be a name or a list of names")
            for selector in target_hosts:
                if selector not in hosts and selector not in groups:
                    raise ValueError(f"Task '{name}' targets unknown host or group '{selector}'")
            raw_actions = _expect(
                task.get("actions", []), list, f"Task '{name}' actions must be an array of tables"
            )
            actions = [
                InventoryLoader._parse_action(action, f"{index}.{pos}")
                for pos, action in enumerate(raw_actions, start=1)
            ]
            tasks.append(TaskSpec(name=name, hosts=list(target_hosts), actions=actions))
        return tasks

    @staticmethod
    def _parse_action(action: dict[str, Any], action_index: str) -> ActionSpec:
        if not isinstance(action, dict):
            raise ValueError(f"Action {action_index} must be a table")
        action_type = action.get("type")
        if not action_type:
            raise ValueError(f"Action {action_index} is missing a type")
        best_effort = action.get("best_effort", False)
        if not isinstance(best_effort, bool):
            raise ValueError(f"Action {action_index} best_effort must be true or false")
        data = {k: v for k, v in action.items() if k not in ACTION_KEYS}
        return ActionSpec(type=str(action_type), data=data, best_effort=best_effort)

    def _attach_plan_dir(self, plan: Plan, base_dir: Path) -> None:
        for task in plan.tasks:
            for action in task.actions:
                action.data.setdefault("_plan_dir", str(base_dir))
                if self.template_dir is not None:
                    action.data.setdefault("_template_dir", str(self.template_dir))


def _expect(value: Any, kind: type, message: str) -> Any:
    if not isinstance(value, kind):
        raise ValueError(message)
    return value
