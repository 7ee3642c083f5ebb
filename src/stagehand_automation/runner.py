from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from .errors import ConnectionFailure, MutationError, StagehandError, ValidationError
from .executors import Executor, LocalExecutor, SshExecutor
from .operations import OPERATION_REGISTRY, Operation
from .secrets import SecretResolver
from .types import ActionResult, ActionSpec, HostConfig, Plan

logger = logging.getLogger(__name__)


class TaskRunner:
    """Coordinates the execution of provisioning steps across hosts.

    Every host gets its own worker thread and its own connection. Inside a host
    the steps run in declaration order and the first failure that is not marked
    ``best_effort`` ends that host's run; other hosts are unaffected.
    """

    def __init__(
        self,
        plan: Plan,
        *,
        dry_run: bool = False,
        forks: Optional[int] = None,
        ssh_timeout: Optional[float] = None,
        secret_resolver: Optional[SecretResolver] = None,
        limit: Optional[list[str]] = None,
    ):
        if forks is not None and forks < 1:
            raise ValueError("forks must be at least 1")
        self.plan = plan
        self.dry_run = dry_run
        self.forks = forks
        self.ssh_timeout = ssh_timeout
        self.secret_resolver = secret_resolver or SecretResolver()
        self.limit = list(limit or [])

    def run(self) -> list[ActionResult]:
        schedule = self.schedule()
        if not schedule:
            logger.info("Nothing to do: no host is targeted by any task")
            return []
        workers = min(self.forks or len(schedule), len(schedule))
        logger.debug("hosts=%s workers=%d dry_run=%s", ",".join(schedule), workers, self.dry_run)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stagehand") as pool:
            futures = {
                name: pool.submit(self._run_host, self.plan.hosts[name], actions)
                for name, actions in schedule.items()
            }
            results: list[ActionResult] = []
            for name in schedule:
                results.extend(futures[name].result())
        return results

    def schedule(self) -> dict[str, list[ActionSpec]]:
        """Return each targeted host's ordered steps, hosts in inventory order."""

        allowed = self.select_hosts(self.limit)
        per_host: dict[str, list[ActionSpec]] = {name: [] for name in self.plan.hosts}
        for task in self.plan.tasks:
            selected = self.select_hosts(task.hosts)
            logger.debug("task=%s hosts=%s", task.name, ",".join(selected))
            for host_name in selected:
                per_host[host_name].extend(task.actions)
        return {
            name: actions for name, actions in per_host.items() if actions and name in allowed
        }

    def select_hosts(self, selectors: list[str]) -> list[str]:
        if not selectors:
            return list(self.plan.hosts)
        selected: list[str] = []
        for selector in selectors:
            if selector in self.plan.hosts:
                names = [selector]
            elif selector in self.plan.groups:
                names = self.plan.groups[selector]
            else:
                raise KeyError(f"Host or group '{selector}' is not defined")
            for name in names:
                if name not in selected:
                    selected.append(name)
        return selected

    def _run_host(self, host: HostConfig, actions: list[ActionSpec]) -> list[ActionResult]:
        results: list[ActionResult] = []
        try:
            with self._executor_for(host) as executor:
                for position, action in enumerate(actions, start=1):
                    result = self._apply(host, executor, action)
                    results.append(result)
                    if result.failed and not action.best_effort:
                        remaining = len(actions) - position
                        if remaining:
                            logger.warning(
                                "host=%s aborting %d remaining action(s) after %s failed",
                                host.name,
                                remaining,
                                action.type,
                            )
                        break
        except ConnectionFailure as exc:
            logger.error("host=%s unreachable: %s", host.name, exc)
            results.append(self._connect_failure(host, str(exc)))
        except Exception as exc:  # noqa: BLE001
            # Building or opening the executor failed in an unexpected way;
            # only this host is affected.
            logger.error("host=%s executor failed: %s", host.name, exc, exc_info=True)
            results.append(self._connect_failure(host, str(exc)))
        return results

    @staticmethod
    def _connect_failure(host: HostConfig, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name,
            action="connect",
            changed=False,
            details=detail,
            failed=True,
            resource=host.address,
            error=ConnectionFailure.kind,
        )

    def _apply(self, host: HostConfig, executor: Executor, action: ActionSpec) -> ActionResult:
        resource = self._resource_name(action.data)
        operation_cls = OPERATION_REGISTRY.get(action.type)
        if not operation_cls:
            detail = f"unknown operation '{action.type}'"
            logger.warning("host=%s %s", host.name, detail)
            return self._failure(host, action, resource, detail, ValidationError.kind)

        try:
            operation: Operation = operation_cls(action.data)
        except Exception as exc:  # noqa: BLE001
            logger.error("action=%s host=%s invalid: %s", action.type, host.name, exc)
            return self._failure(host, action, resource, str(exc), ValidationError.kind)

        try:
            result = operation.apply(host, executor)
        except StagehandError as exc:
            logger.error(
                "action=%s host=%s failed (%s): %s",
                action.type,
                host.name,
                exc.kind,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return self._failure(host, action, resource, str(exc), exc.kind)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "action=%s host=%s failed: %s", action.type, host.name, exc, exc_info=True
            )
            return self._failure(host, action, resource, str(exc), MutationError.kind)

        logger.debug(
            "action=%s host=%s changed=%s failed=%s",
            action.type,
            host.name,
            result.changed,
            result.failed,
        )
        if result.resource is None:
            result.resource = resource
        return result

    @staticmethod
    def _failure(
        host: HostConfig, action: ActionSpec, resource: Optional[str], detail: str, kind: str
    ) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=action.type,
            changed=False,
            details=detail,
            failed=True,
            resource=resource,
            error=kind,
        )

    def _executor_for(self, host: HostConfig) -> Executor:
        if host.connection == "local":
            return LocalExecutor(host, dry_run=self.dry_run)
        if host.connection == "ssh":
            return SshExecutor(
                host,
                dry_run=self.dry_run,
                timeout=self.ssh_timeout,
                secret_resolver=self.secret_resolver,
            )
        raise ValueError(f"Unknown connection type '{host.connection}'")

    @staticmethod
    def _resource_name(data: dict[str, Any]) -> Optional[str]:
        for key in ("resource", "name", "path", "dest", "user"):
            value = data.get(key)
            if value:
                return str(value)
        pkgs = data.get("packages")
        if isinstance(pkgs, (list, tuple)) and pkgs:
            rendered = ", ".join(str(p) for p in pkgs[:3])
            if len(pkgs) > 3:
                rendered += ", ..."
            return rendered
        return None
