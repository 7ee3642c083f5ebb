from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional, Sequence
from string import Template
import logging

from .base import Operation
from ..errors import MutationError
from ..executors import CommandResult, Executor
from ..secrets import SecretResolver
from ..types import HostConfig

logger = logging.getLogger(__name__)


class ExecOperation(Operation):
    """Run a command on the host, optionally guarded.

    The guards decide whether the command is already done:

    * ``creates``: a path; when it exists the command is skipped.
    * ``only_if``: a command; the exec runs only when it exits 0.
    * ``unless``: a command; the exec is skipped when it exits 0.

    Guards run even during dry-run. An exec without guards is not idempotent:
    it runs, and reports a change, on every pass. Trimmed stdout (or stderr
    when stdout is empty) of a real run is kept on the result's ``output``.
    """

    action = "exec"
    secret_resolver = SecretResolver()

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("exec operation requires a name")
        self.name = str(raw_name)

        raw_command = spec.get("command") or spec.get("cmd")
        if raw_command is None:
            raise ValueError("exec operation requires a command")
        self.raw_command = raw_command

        self.only_if = spec.get("only_if")
        self.unless = spec.get("unless")

        self.creates = Path(str(spec["creates"])) if "creates" in spec else None
        self.cwd = Path(str(spec["cwd"])) if "cwd" in spec else None

        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))
        raw_vars = spec.get("variables", {})
        if raw_vars is not None and not isinstance(raw_vars, dict):
            raise ValueError("exec variables must be a mapping")
        self.variables = dict(raw_vars or {})

        self.allowed_returns = self._normalize_returns(spec.get("returns", [0]))
        self.timeout = self._normalize_timeout(spec.get("timeout"))

    def _context(self, host: HostConfig) -> dict[str, Any]:
        return self.secret_resolver.resolve({**host.variables, **self.variables})

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        self.skip_reason = self._guard_verdict(host, executor)
        return self.skip_reason is not None

    def _guard_verdict(self, host: HostConfig, executor: Executor) -> Optional[str]:
        """Return why the command can be skipped, or ``None`` when it must run."""
        if self.creates and executor.path_exists(self._resolve_path(self.creates)):
            return f"skipped (creates {self._resolve_path(self.creates)})"

        context = self._context(host)
        # (guard, keyword, skip when the guard exits 0)
        checks = ((self.only_if, "only_if", False), (self.unless, "unless", True))
        for guard, keyword, skip_on_success in checks:
            if not guard:
                continue
            rc = self._run_guard(self._render_and_normalize(guard, context), executor).returncode
            if (rc == 0) == skip_on_success:
                return f"skipped ({keyword} rc={rc})"
        return None

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        command = self._render_and_normalize(self.raw_command, self._context(host))
        result = executor.run(
            command,
            check=False,
            mutable=True,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )

        if result.returncode not in self.allowed_returns:
            logger.debug("exec failed name=%s host=%s rc=%s", self.name, host.name, result.returncode)
            raise MutationError(self._error_detail(result))

        if executor.dry_run:
            return "ran"
        self.output = result.stdout.strip() or result.stderr.strip() or None
        return f"ran (rc={result.returncode})"

    def _run_guard(self, command: Sequence[str], executor: Executor) -> CommandResult:
        return executor.run(
            command,
            check=False,
            mutable=False,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )

    def _render_and_normalize(self, value: Any, context: dict[str, Any]) -> list[str]:
        if isinstance(value, str):
            rendered = Template(value).safe_substitute(context)
            return self._normalize_command(rendered)
        if isinstance(value, Sequence):
            rendered = [Template(str(v)).safe_substitute(context) for v in value]
            return self._normalize_command(rendered)
        raise ValueError("exec command/guard must be a string or list")

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute() or self.cwd is None:
            return path
        return self.cwd / path

    @staticmethod
    def _normalize_command(value: Any) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", value]
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError("exec command must be a string or list")

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("exec env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("exec returns must be an int or list of ints")

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("exec timeout must be numeric") from exc

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        prefix = f"rc={result.returncode}"
        for text in (result.stderr, result.stdout):
            stripped = (text or "").strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            line = (line[:157] + "...") if len(line) > 160 else line
            return f"{prefix}: {line}"
        return prefix
