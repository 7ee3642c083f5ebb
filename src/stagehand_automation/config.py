from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
DEFAULT_PLAN = Path("/etc/stagehand/plan.toml")


@dataclass
class StagehandConfig:
    plan: Path = DEFAULT_PLAN
    forks: Optional[int] = None
    ssh_timeout: Optional[float] = None
    template_dir: Optional[Path] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)


def load_config(path: Path) -> StagehandConfig:
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    forks = defaults.get("forks")
    if forks is not None and (not isinstance(forks, int) or forks < 1):
        raise ValueError(f"{path}: forks must be a positive integer")
    ssh_timeout = defaults.get("ssh_timeout")
    template_dir = defaults.get("template_dir")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    return StagehandConfig(
        plan=Path(defaults.get("plan", DEFAULT_PLAN)),
        forks=forks,
        ssh_timeout=float(ssh_timeout) if ssh_timeout is not None else None,
        template_dir=Path(template_dir) if template_dir else None,
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
        plugin_dirs=[Path(p) for p in defaults.get("plugin_dirs", [])],
        plugin_modules=[str(m) for m in defaults.get("plugin_modules", [])],
    )
