"""
Example plugin module for Stagehand.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and it registers an operation called `motd` that
keeps /etc/motd holding a single greeting line.
"""

from pathlib import Path

from stagehand_automation.operations.base import Operation


class MotdOperation(Operation):
    action = "motd"

    def __init__(self, spec: dict):
        super().__init__(spec)
        self.message = str(spec.get("message", "hello"))
        self.path = Path(spec.get("path", "/etc/motd"))

    def is_satisfied(self, host, executor) -> bool:
        return executor.read_file(self.path) == f"{self.message}\n"

    def mutate(self, host, executor) -> str:
        _, detail = executor.write_file(self.path, content=f"{self.message}\n", mode=0o644)
        return detail


def register_operations(registry) -> None:
    registry["motd"] = MotdOperation
