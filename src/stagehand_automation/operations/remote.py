from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .base import Operation, parse_mode
from ..errors import ValidationError
from ..executors import Executor
from ..types import HostConfig

DIGEST_TOOLS = {
    "md5": "md5sum",
    "sha1": "sha1sum",
    "sha256": "sha256sum",
    "sha512": "sha512sum",
}


class RemoteFetcher:
    """Downloads a source URL onto the target host itself."""

    def __init__(self, executor: Executor):
        self.executor = executor

    def fetch(self, source: str, destination: str) -> None:
        if source.startswith("s3://"):
            self.executor.run(["aws", "s3", "cp", "--only-show-errors", source, destination])
        elif source.startswith(("http://", "https://")):
            self.executor.run(["curl", "-fsSL", "-o", destination, source])
        else:
            raise ValueError(f"Unsupported remote_file source '{source}'")

    def digest(self, path: str, algorithm: str) -> Optional[str]:
        result = self.executor.run([DIGEST_TOOLS[algorithm], path], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0].lower()

    def cleanup(self, path: str) -> None:
        self.executor.run(["rm", "-f", path], check=False)


class RemoteFileOperation(Operation):
    """Place a downloaded artifact (GPG key, release binary, ...) on the host.

    Without a checksum the file is considered in place once it exists; with one,
    the digest of the current file must match and downloads are verified before
    they replace anything.
    """

    action = "remote_file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.source = spec.get("source") or spec.get("url")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("remote_file state must be 'present' or 'absent'")
        if not self.source and self.state == "present":
            raise ValueError("remote_file requires a source")
        raw_dest = spec.get("dest") or spec.get("path")
        if not raw_dest:
            raise ValueError("remote_file requires a dest/path")
        self.dest = Path(str(raw_dest))
        self.mode = parse_mode(spec.get("mode"))
        checksum = spec.get("checksum")
        self.checksum_algo: Optional[str] = None
        self.checksum_value: Optional[str] = None
        if checksum:
            text = str(checksum)
            if ":" in text:
                algo, value = text.split(":", 1)
                self.checksum_algo = algo.lower()
                self.checksum_value = value.strip().lower()
            else:
                self.checksum_algo = "sha256"
                self.checksum_value = text.strip().lower()
            if self.checksum_algo not in DIGEST_TOOLS:
                raise ValueError(f"Unsupported checksum algorithm '{self.checksum_algo}'")

    def is_satisfied(self, host: HostConfig, executor: Executor) -> bool:
        exists = executor.path_exists(self.dest)
        if self.state == "absent":
            return not exists
        if not exists:
            return False
        if self.checksum_algo:
            fetcher = RemoteFetcher(executor)
            if fetcher.digest(str(self.dest), self.checksum_algo) != self.checksum_value:
                return False
        return self.mode is None or executor.file_mode(self.dest) == self.mode

    def mutate(self, host: HostConfig, executor: Executor) -> str:
        if self.state == "absent":
            executor.remove_path(self.dest)
            return "removed"

        fetcher = RemoteFetcher(executor)
        if executor.path_exists(self.dest) and self._content_matches(fetcher):
            # The content is in place, so only the mode drifted.
            executor.run(["chmod", f"{self.mode:04o}", str(self.dest)])
            return f"mode->{self.mode:04o}"

        staging = f"{self.dest}.stagehand-download"
        executor.run(["mkdir", "-p", str(self.dest.parent)])
        try:
            fetcher.fetch(str(self.source), staging)
            if self.checksum_algo and not executor.dry_run:
                actual = fetcher.digest(staging, self.checksum_algo)
                if actual != self.checksum_value:
                    raise ValidationError(
                        f"checksum mismatch for {self.source}: expected {self.checksum_value}, got {actual}"
                    )
            if self.mode is not None:
                executor.run(["chmod", f"{self.mode:04o}", staging])
            executor.run(["mv", "-f", staging, str(self.dest)])
        except BaseException:
            fetcher.cleanup(staging)
            raise
        return f"downloaded {self.source}"

    def _content_matches(self, fetcher: RemoteFetcher) -> bool:
        if not self.checksum_algo:
            return True
        return fetcher.digest(str(self.dest), self.checksum_algo) == self.checksum_value
