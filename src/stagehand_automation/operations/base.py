from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional
import subprocess

from ..errors import MutationError, PreconditionError, StagehandError
from ..executors import Executor
from ..types import ActionResult, HostConfig


class Operation(ABC):
    """Shared surface for runnable provisioning steps.

    Subclasses describe a target state: ``is_satisfied`` reports whether the
    host already matches it and ``mutate`` brings the host into it. A
    ``mutate`` that produces command output worth showing stores it on
    ``output``; it is carried into the result.
    """

    action = "operation"
    skip_reason: Optional[str] = None
    output: Optional[str] = None

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        """Return ``True`` when ``host`` already holds the target state."""

    @abstractmethod
    def mutate(self, host: HostConfig, executor: Executor) -> str:
        """Change ``host`` into the target state and describe what changed."""

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        try:
            satisfied = self.is_satisfied(host, executor)
        except StagehandError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PreconditionError(_describe(exc)) from exc
        if satisfied:
            return ActionResult(
                host=host.name, action=self.action, changed=False, details=self.skip_reason or "noop"
            )

        try:
            detail = self.mutate(host, executor)
        except StagehandError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise MutationError(_describe(exc)) from exc
        if executor.dry_run:
            detail = f"{detail} (dry-run)"
        return ActionResult(
            host=host.name, action=self.action, changed=True, details=detail, output=self.output
        )


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        command = " ".join(str(part) for part in exc.cmd)
        output = (exc.stderr or exc.output or "").strip()
        line = output.splitlines()[0] if output else ""
        return f"'{command}' rc={exc.returncode}" + (f": {line}" if line else "")
    return str(exc) or exc.__class__.__name__


def coerce_bool(value: Any | None) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)


def parse_mode(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    # Modes written as strings are always octal ("644", "0644", "0o644").
    return int(text.removeprefix("0o"), 8)
