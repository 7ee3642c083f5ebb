from __future__ import annotations

import argparse
import importlib
import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG, StagehandConfig, load_config
from .inventory import InventoryLoader
from .operations import OPERATION_REGISTRY
from .runner import TaskRunner
from .types import ActionResult

logger = logging.getLogger(__name__)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stagehand provisioning runner")
    parser.add_argument(
        "plan",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a plan file (default from config or /etc/stagehand/plan.toml)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to stagehand config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Calculate changes without executing")
    parser.add_argument(
        "--forks",
        type=int,
        default=None,
        help="Maximum number of hosts provisioned in parallel (default: all)",
    )
    parser.add_argument(
        "--limit",
        action="append",
        default=[],
        metavar="HOST_OR_GROUP",
        help="Only run against these hosts or groups (repeatable)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s [%(threadName)s] - %(message)s",
    )
    # paramiko logs every transport negotiation at INFO.
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        print(colorize(f"Config load failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    _apply_aws_env(cfg)
    try:
        _load_plugins(cfg)
    except (ImportError, OSError, AttributeError) as exc:
        print(colorize(f"Plugin load failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    plan_path = args.plan or cfg.plan
    loader = InventoryLoader(template_dir=cfg.template_dir)
    try:
        plan = loader.load(plan_path)
    except ValueError as exc:
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    try:
        runner = TaskRunner(
            plan,
            dry_run=args.dry_run,
            forks=args.forks or cfg.forks,
            ssh_timeout=cfg.ssh_timeout,
            limit=args.limit,
        )
        results = runner.run()
    except (KeyError, ValueError) as exc:
        message = exc.args[0] if exc.args else exc
        print(colorize(f"Plan validation failed: {message}", Ansi.RED), file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for result in results:
        summary.add(result)
        if not should_display_result(result, effective_level):
            continue
        print(format_result(result))
        if result.output and effective_level <= logging.DEBUG:
            print(format_output(result.output))

    if summary.per_host:
        print(summary.render_hosts())
    print(summary.render())
    if args.dry_run:
        print(colorize("Dry run: no changes were applied", Ansi.YELLOW))

    return 1 if summary.failures else 0


def format_result(result: ActionResult) -> str:
    status = result.status
    color: Optional[str] = None
    if result.failed:
        if "unknown operation" in result.details.lower():
            status = "unknown"
            color = Ansi.ORANGE
        else:
            color = Ansi.RED
        if result.error:
            status = f"{status} ({result.error})"
    elif result.changed:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{result.action}{resource} {status} - {result.details}"
    return colorize(line, color)


def format_output(output: str) -> str:
    return "\n".join(f"    | {line}" for line in output.splitlines())


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def _load_plugins(cfg: StagehandConfig) -> None:
    for plugin_dir in cfg.plugin_dirs:
        directory = Path(plugin_dir)
        if not directory.is_dir():
            raise OSError(f"plugin directory {directory} does not exist")
        for path in sorted(directory.glob("*.py")):
            module_name = f"stagehand_plugins.{path.stem}"
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                raise ImportError(f"cannot load plugin {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            _register(module, str(path))
    for module_name in cfg.plugin_modules:
        _register(importlib.import_module(module_name), module_name)


def _register(module, origin: str) -> None:
    register = getattr(module, "register_operations", None)
    if register is None:
        raise AttributeError(f"plugin {origin} has no register_operations()")
    before = set(OPERATION_REGISTRY)
    register(OPERATION_REGISTRY)
    added = sorted(set(OPERATION_REGISTRY) - before)
    logger.debug("plugin=%s registered=%s", origin, ",".join(added) or "-")


def _apply_aws_env(cfg: StagehandConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


class Summary:
    def __init__(self) -> None:
        self.changes = 0
        self.unchanged = 0
        self.failures = 0
        self.per_host: dict[str, dict[str, int]] = {}

    def add(self, result: ActionResult) -> None:
        counts = self.per_host.setdefault(result.host, {"changed": 0, "unchanged": 0, "failed": 0})
        counts[result.status] += 1
        if result.failed:
            self.failures += 1
        elif result.changed:
            self.changes += 1
        else:
            self.unchanged += 1

    def render_hosts(self) -> str:
        lines = []
        for host, counts in self.per_host.items():
            line = (
                f"{host} : changed={counts['changed']} "
                f"unchanged={counts['unchanged']} failed={counts['failed']}"
            )
            lines.append(colorize(line, Ansi.RED if counts["failed"] else Ansi.GREEN))
        return "\n".join(lines)

    def render(self) -> str:
        parts = [
            f"Hosts: {len(self.per_host)}",
            f"Changes: {self.changes}",
            f"Unchanged: {self.unchanged}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
