from __future__ import annotations

from pathlib import Path
from string import Template
import re

from .base import Operation, parse_mode
from ..executors import Executor
from ..secrets import SecretResolver
from ..types import HostConfig

# Optional dependency; resolved at render time if Jinja syntax is detected
try:  # pragma: no cover
    import jinja2
except Exception:  # pragma: no cover
    jinja2 = None


class FileOperation(Operation):
    """Ensure files, directories and symlinks exist with the requested contents.

    ``validate`` names a command run against a staged copy before it replaces
    the real file; ``%s`` is substituted with the staged path, so sudoers
    drop-ins can be guarded with ``visudo -cf %s``.
    """

    action = "file"
    secret_resolver = SecretResolver()

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("name")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(str(raw_path))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent", "directory", "link"}:
            raise ValueError(
                "file operation state must be 'present', 'absent', 'directory' or 'link'"
            )
        raw_content = spec.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.mode = parse_mode(spec.get("mode"))
        self.template = str(spec["template"]) if spec.get("template") is not None else None
        self.variables = spec.get("variables", {})
        if not isinstance(self.variables, dict):
            raise ValueError("file operation variables must be a mapping")
        self.plan_dir = Path(str(spec["_plan_dir"])) if spec.get("_plan_dir") else None
        self.template_dir = Path(str(spec["_template_dir"])) if spec.get("_template_dir") else None
        raw_target = spec.get("link_target") or spec.get("target")
        self.link_target = str(raw_target) if raw_target else None
        if self.state == "link" and not self.link_target:
            raise ValueError("file operation with state 'link' requires a link_target")
        if self.link_target and self.state == "present":
            self.state = "link"
        self.owner = str(spec["owner"]) if spec.get("owner") is not None else None
        self.group = str(spec["group"]) if spec.get("group") is not None else None
        self.validate = str(spec["validate"]) if spec.get("validate") else None
        if self.validate and self.state != "present":
            raise ValueError("file validate only applies to state 'present'")
        self._rendered: dict[str, str] = {}

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        if self.state == "absent":
            return not executor.path_exists(self.path)
        if self.state == "link":
            return executor.read_link(self.path) == self.link_target
        if self.state == "directory":
            if not executor.is_directory(self.path):
                return False
        elif executor.read_file(self.path) != self._render_content(host):
            return False
        if self.mode is not None and executor.file_mode(self.path) != self.mode:
            return False
        return self._ownership_matches(executor)

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        if self.state == "absent":
            executor.remove_path(self.path)
            return "removed"
        if self.state == "link":
            executor.make_symlink(self.path, str(self.link_target))
            return f"link->{self.link_target}"
        if self.state == "directory":
            _, detail = executor.ensure_directory(self.path, mode=self.mode)
        else:
            _, detail = executor.write_file(
                self.path,
                content=self._render_content(host),
                mode=self.mode,
                validate=self.validate,
            )
        if self.owner is not None or self.group is not None:
            chown_changed, chown_detail = executor.set_ownership(
                self.path, owner=self.owner, group=self.group
            )
            if chown_changed:
                detail = f"{detail}, {chown_detail}" if detail != "noop" else chown_detail
        return detail

    def _ownership_matches(self, executor: Executor) -> bool:
        if self.owner is None and self.group is None:
            return True
        current = executor.file_owner(self.path)
        if current is None:
            return False
        owner, group = current
        if self.owner is not None and owner != self.owner:
            return False
        return self.group is None or group == self.group

    def _render_content(self, host: HostConfig) -> str:
        if host.name in self._rendered:
            return self._rendered[host.name]
        if not self.template:
            return self.content
        template_text = self._template_path().read_text()
        context: dict[str, object] = dict(host.variables)
        context.update(self.variables)
        context = self.secret_resolver.resolve(context)
        if self._looks_like_jinja(template_text):
            if jinja2 is None:
                raise RuntimeError("Jinja2 is required to render this template (pip install Jinja2)")
            env = jinja2.Environment(
                undefined=jinja2.Undefined, autoescape=False, keep_trailing_newline=True
            )
            rendered = env.from_string(template_text).render(**context)
        else:
            rendered = Template(template_text).safe_substitute(context)
        self._rendered[host.name] = rendered
        return rendered

    def _template_path(self) -> Path:
        template_path = Path(str(self.template)).expanduser()
        if template_path.is_absolute():
            return template_path
        for base in (self.plan_dir, self.template_dir):
            if base is not None and (base / template_path).exists():
                return base / template_path
        if self.plan_dir is not None:
            return self.plan_dir / template_path
        return template_path

    @staticmethod
    def _looks_like_jinja(template_text: str) -> bool:
        return bool(re.search(r"{[{%]", template_text))
