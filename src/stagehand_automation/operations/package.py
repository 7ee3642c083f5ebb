from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
import logging

from .base import Operation, coerce_bool
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class PackageOperation(Operation):
    """Install or remove packages using the package manager found on the host."""

    action = "package"

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("packages") or spec.get("name")
        if isinstance(packages, str):
            self.packages = [packages]
        else:
            self.packages = [str(p) for p in (packages or [])]
        if not self.packages:
            raise ValueError("package operation requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("package operation state must be 'present' or 'absent'")
        self.preferred_manager = spec.get("manager")
        self.update_cache = bool(coerce_bool(spec.get("update_cache", False)))

    def _outstanding(self, manager: "PackageManager", executor: Executor) -> list[str]:
        if self.state == "present":
            return [pkg for pkg in self.packages if not manager.is_installed(executor, pkg)]
        return [pkg for pkg in self.packages if manager.is_installed(executor, pkg)]

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        manager = PackageManagerFactory.create(self.preferred_manager, executor)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages
        )
        return not self._outstanding(manager, executor)

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        manager = PackageManagerFactory.create(self.preferred_manager, executor)
        outstanding = self._outstanding(manager, executor)
        if self.state == "present":
            if self.update_cache:
                manager.refresh(executor)
            manager.install(executor, outstanding)
            return f"manager={manager.name} installed={','.join(outstanding)}"
        manager.remove(executor, outstanding)
        return f"manager={manager.name} removed={','.join(outstanding)}"


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
    ]

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            if executor.which(binary):
                return factory()
        raise RuntimeError(f"No supported package manager found on {executor.host.name}")


class PackageManager:
    name = "generic"

    def refresh(self, executor: Executor) -> None:
        pass

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: Iterable[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
            mutable=False,
        )
        return result.returncode == 0 and result.stdout.strip().endswith(" installed")


APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class AptPackageManager(PackageManager):
    name = "apt"

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def refresh(self, executor: Executor) -> None:
        executor.run(["apt-get", "update"], env=APT_ENV)

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run(["apt-get", "install", "-y", *packages], env=APT_ENV)

    def remove(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run(["apt-get", "remove", "-y", *packages], env=APT_ENV)

    def is_installed(self, executor: Executor, package: str) -> bool:
        return self.query.check(executor, package)


class DnfPackageManager(PackageManager):
    name = "dnf"

    def refresh(self, executor: Executor) -> None:
        executor.run([self.name, "makecache"])

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run([self.name, "install", "-y", *packages])

    def remove(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run([self.name, "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["rpm", "-q", package], check=False, mutable=False)
        return result.returncode == 0


class YumPackageManager(DnfPackageManager):
    name = "yum"
