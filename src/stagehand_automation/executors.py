from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Union
import grp
import logging
import os
import pwd
import shlex
import shutil
import socket
import stat
import subprocess
import tempfile

import paramiko

from .errors import ConnectionFailure, ValidationError
from .secrets import SecretResolver
from .types import HostConfig

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".stagehand."


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Base executor abstraction used by operations.

    Executors are context managers: the connection to the host is opened on
    ``__enter__`` and released on ``__exit__`` regardless of how the block ends.

    The file primitives here are POSIX shell commands issued through
    :meth:`run`, so they see the host with the same privileges as every other
    command. ``mutable`` only decides whether a command is skipped during a
    dry run; privilege comes from the host's ``become`` setting.
    """

    def __init__(self, host: HostConfig, *, dry_run: bool = False):
        self.host = host
        self.dry_run = dry_run

    def __enter__(self) -> "Executor":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def open(self) -> None:
        """Acquire whatever the transport needs; local execution needs nothing."""

    def close(self) -> None:
        """Release the transport."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        raise NotImplementedError

    def which(self, binary: str) -> Optional[str]:
        result = self.run(
            ["sh", "-c", f"command -v {shlex.quote(binary)}"], check=False, mutable=False
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # File primitives -----------------------------------------------------
    def _inspect(self, *command: str) -> CommandResult:
        # Read-only, so these also run in dry-run.
        return self.run(list(command), check=False, mutable=False)

    def read_file(self, path: Path) -> Optional[str]:
        if not self.path_exists(path):
            return None
        return self.run(["cat", str(path)], mutable=False).stdout

    def path_exists(self, path: Path) -> bool:
        return self._inspect("sh", "-c", f"test -e {_q(path)} || test -L {_q(path)}").returncode == 0

    def is_directory(self, path: Path) -> bool:
        return self._inspect("sh", "-c", f"test -d {_q(path)} && ! test -L {_q(path)}").returncode == 0

    def read_link(self, path: Path) -> Optional[str]:
        result = self._inspect("readlink", str(path))
        if result.returncode != 0:
            return None
        return result.stdout.rstrip("\n")

    def file_mode(self, path: Path) -> Optional[int]:
        result = self._inspect("stat", "-c", "%a", str(path))
        if result.returncode != 0:
            return None
        return int(result.stdout.strip(), 8)

    def file_owner(self, path: Path) -> Optional[tuple[str, str]]:
        result = self._inspect("stat", "-c", "%U %G", str(path))
        if result.returncode != 0:
            return None
        owner, _, group = result.stdout.strip().partition(" ")
        return owner, group

    def write_file(
        self,
        path: Path,
        *,
        content: str,
        mode: Optional[int],
        validate: Optional[str] = None,
    ) -> tuple[bool, str]:
        current = self.read_file(path)
        changed = False
        reasons: list[str] = []

        if current != content:
            changed = True
            reasons.append("content")
            if not self.dry_run:
                self._commit(path, content, mode, validate)
        # A file that does not exist yet gets its mode together with its content.
        if mode is not None and (current is not None or not self.dry_run):
            if self.file_mode(path) != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                self.run(["chmod", f"{mode:04o}", str(path)])
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def _commit(self, path: Path, content: str, mode: Optional[int], validate: Optional[str]) -> None:
        parent = str(path.parent)
        self.run(["mkdir", "-p", parent])
        staged = self.run(["mktemp", f"{parent}/{STAGING_PREFIX}XXXXXX"]).stdout.strip()
        try:
            self.run(["sh", "-c", f"cat > {_q(staged)}"], input=content)
            self.run(["chmod", f"{mode if mode is not None else 0o644:04o}", staged])
            if validate:
                self._validate_staged(staged, validate)
            self.run(["mv", "-f", staged, str(path)])
        except BaseException:
            self.run(["rm", "-f", staged], check=False)
            raise

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        reason: Optional[str] = None
        if not self.path_exists(path):
            reason = "created"
        elif not self.is_directory(path):
            reason = "replaced-non-dir"
            self.run(["rm", "-f", str(path)])
        if reason is not None:
            self.run(["mkdir", "-p", str(path)])
            if mode is not None:
                self.run(["chmod", f"{mode:04o}", str(path)])
            return True, reason
        if mode is not None and self.file_mode(path) != mode:
            self.run(["chmod", f"{mode:04o}", str(path)])
            return True, f"mode->{mode:04o}"
        return False, "noop"

    def make_symlink(self, path: Path, target: str) -> None:
        self.run(["mkdir", "-p", str(path.parent)])
        self.run(["ln", "-sfn", target, str(path)])

    def remove_path(self, path: Path) -> bool:
        if not self.path_exists(path):
            return False
        self.run(["rm", "-rf", str(path)])
        return True

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        current = self.file_owner(path)
        reasons: list[str] = []
        if owner is not None and (current is None or current[0] != owner):
            reasons.append(f"owner->{owner}")
        if group is not None and (current is None or current[1] != group):
            reasons.append(f"group->{group}")
        if not reasons:
            return False, "noop"
        spec = owner or ""
        if group is not None:
            spec = f"{spec}:{group}"
        self.run(["chown", spec, str(path)])
        return True, ", ".join(reasons)

    def _validate_staged(self, staged: str, validate: str) -> None:
        command = validate.replace("%s", shlex.quote(staged))
        result = self.run(["sh", "-c", command], check=False, mutable=False)
        if result.returncode != 0:
            message = (result.stderr or result.stdout).strip()
            raise ValidationError(f"validation failed rc={result.returncode}: {message}")


class LocalExecutor(Executor):
    """Executor that acts directly on the local host.

    With ``become`` set and no root privileges, every command runs through
    ``sudo -n`` and the file primitives use the shell versions, so privileged
    paths are read the same way they are written.
    """

    @property
    def escalate(self) -> bool:
        return self.host.become and os.geteuid() != 0

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = list(command)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)
        if self.escalate:
            cmd_list = ["sudo", "-n", *cmd_list]

        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            check=False,
            env=exec_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
            input=input,
        )
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode,
                cmd_list,
                proc.stdout,
                proc.stderr,
            )
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def which(self, binary: str) -> Optional[str]:
        return shutil.which(binary)

    def read_file(self, path: Path) -> Optional[str]:
        if self.escalate:
            return super().read_file(path)
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def path_exists(self, path: Path) -> bool:
        if self.escalate:
            return super().path_exists(path)
        return path.exists() or path.is_symlink()

    def is_directory(self, path: Path) -> bool:
        if self.escalate:
            return super().is_directory(path)
        return path.is_dir() and not path.is_symlink()

    def read_link(self, path: Path) -> Optional[str]:
        if self.escalate:
            return super().read_link(path)
        try:
            return os.readlink(path)
        except OSError:
            return None

    def file_mode(self, path: Path) -> Optional[int]:
        if self.escalate:
            return super().file_mode(path)
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None

    def file_owner(self, path: Path) -> Optional[tuple[str, str]]:
        if self.escalate:
            return super().file_owner(path)
        try:
            info = path.stat()
        except FileNotFoundError:
            return None
        try:
            owner = pwd.getpwuid(info.st_uid).pw_name
        except KeyError:
            owner = str(info.st_uid)
        try:
            group = grp.getgrgid(info.st_gid).gr_name
        except KeyError:
            group = str(info.st_gid)
        return owner, group

    def write_file(
        self,
        path: Path,
        *,
        content: str,
        mode: Optional[int],
        validate: Optional[str] = None,
    ) -> tuple[bool, str]:
        if self.escalate:
            return super().write_file(path, content=content, mode=mode, validate=validate)
        current = self.read_file(path)
        changed = False
        reasons: list[str] = []

        if current != content:
            changed = True
            reasons.append("content")
            if not self.dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, staged = tempfile.mkstemp(prefix=STAGING_PREFIX, dir=str(path.parent))
                try:
                    with os.fdopen(fd, "w") as handle:
                        handle.write(content)
                    os.chmod(staged, mode if mode is not None else 0o644)
                    if validate:
                        self._validate_staged(staged, validate)
                    os.replace(staged, path)
                except BaseException:
                    Path(staged).unlink(missing_ok=True)
                    raise

        if mode is not None and (current is not None or not self.dry_run):
            existing_mode = self.file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                if not self.dry_run:
                    os.chmod(path, mode)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        if self.escalate:
            return super().ensure_directory(path, mode=mode)
        reason: Optional[str] = None
        if not self.path_exists(path):
            reason = "created"
        elif not self.is_directory(path):
            reason = "replaced-non-dir"
        if reason is not None:
            if not self.dry_run:
                if reason == "replaced-non-dir":
                    self.remove_path(path)
                path.mkdir(parents=True, exist_ok=True)
                if mode is not None:
                    os.chmod(path, mode)
            return True, reason

        if mode is not None and self.file_mode(path) != mode:
            if not self.dry_run:
                os.chmod(path, mode)
            return True, f"mode->{mode:04o}"
        return False, "noop"

    def make_symlink(self, path: Path, target: str) -> None:
        if self.escalate:
            return super().make_symlink(path, target)
        if self.dry_run:
            return
        self.remove_path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, path)

    def remove_path(self, path: Path) -> bool:
        if self.escalate:
            return super().remove_path(path)
        if not self.path_exists(path):
            return False
        if self.dry_run:
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        if self.escalate:
            return super().set_ownership(path, owner=owner, group=group)
        current = self.file_owner(path)
        reasons: list[str] = []
        if owner is not None and (current is None or current[0] != owner):
            reasons.append(f"owner->{owner}")
        if group is not None and (current is None or current[1] != group):
            reasons.append(f"group->{group}")
        if not reasons:
            return False, "noop"
        if not self.dry_run:
            shutil.chown(path, user=owner, group=group)
        return True, ", ".join(reasons)


class SshExecutor(Executor):
    """Executor that drives a remote host over SSH with paramiko.

    Every command, read-only checks included, runs through ``sudo -n`` when
    the host has ``become`` set.
    """

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        timeout: Optional[float] = None,
        secret_resolver: Optional[SecretResolver] = None,
    ):
        super().__init__(host, dry_run=dry_run)
        if not host.address:
            raise ValueError(f"Host '{host.name}' has no address to connect to")
        self.timeout = timeout
        self.secret_resolver = secret_resolver or SecretResolver()
        self._client: Optional[paramiko.SSHClient] = None

    def __repr__(self) -> str:
        user = f"{self.host.user}@" if self.host.user else ""
        return f"<SshExecutor {user}{self.host.address}:{self.host.port}>"

    def open(self) -> None:
        if self._client is not None:
            return
        try:
            auth = self._auth_kwargs()
        except Exception as exc:
            # Secret backends raise their own types (botocore, LookupError, ...).
            raise ConnectionFailure(f"cannot resolve credentials for {self.host.name}: {exc}") from exc
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.WarningPolicy())
        try:
            client.connect(
                self.host.address,
                port=self.host.port,
                username=self.host.user,
                timeout=self.timeout,
                **auth,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise ConnectionFailure(f"authentication to {self.host.address} failed: {exc}") from exc
        except (paramiko.SSHException, socket.error) as exc:
            client.close()
            raise ConnectionFailure(f"cannot connect to {self.host.address}: {exc}") from exc
        logger.debug("connected host=%s address=%s", self.host.name, self.host.address)
        self._client = client

    def close(self) -> None:
        if self._client is None:
            return
        self._client.close()
        self._client = None
        logger.debug("disconnected host=%s", self.host.name)

    def _auth_kwargs(self) -> dict[str, Any]:
        credential = self.host.credential
        if credential.kind == "key_file":
            return {
                "key_filename": os.path.expanduser(str(credential.value)),
                "look_for_keys": False,
                "allow_agent": False,
            }
        if credential.kind == "password":
            password = self.secret_resolver.resolve({"password": credential.value})["password"]
            return {"password": str(password), "look_for_keys": False, "allow_agent": False}
        return {"look_for_keys": True, "allow_agent": True}

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        cmd_list = [str(part) for part in command]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)
        if self._client is None:
            raise ConnectionFailure(f"{self!r} is not connected")

        script = build_script(cmd_list, privileged=self.host.become, env=env, cwd=cwd)
        # Arguments may carry rendered secrets, so only the program is logged.
        logger.debug("host=%s run=%s mutable=%s", self.host.name, cmd_list[0], mutable)
        stdin, stdout, stderr = self._client.exec_command(script, timeout=timeout)
        if input is not None:
            stdin.write(input)
        stdin.channel.shutdown_write()
        out = stdout.read().decode(errors="replace")
        err = stderr.read().decode(errors="replace")
        returncode = stdout.channel.recv_exit_status()
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd_list, out, err)
        return CommandResult(cmd_list, out, err, returncode)


def build_script(
    cmd_list: list[str],
    *,
    privileged: bool,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Union[str, Path]] = None,
) -> str:
    """Fold privilege, environment and working directory into one shell line."""
    parts: list[str] = []
    if privileged:
        parts += ["sudo", "-n"]
    if env:
        parts.append("env")
        parts += [f"{key}={value}" for key, value in env.items()]
    parts += cmd_list
    script = shlex.join(parts)
    if cwd is not None:
        script = f"cd {shlex.quote(str(cwd))} && {script}"
    return script


def _q(path: Union[str, Path]) -> str:
    return shlex.quote(str(path))
