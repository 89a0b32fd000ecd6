"""Local node access: commands, files and downloads.

Everything the provisioning steps do to the machine goes through NodeHost so
that a step can be exercised against a fake host in tests. ``root`` prefixes
every filesystem path, which also allows staging a node image in a directory.
"""

import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

import requests

from ...config import Config
from ...errors import CommandError

logger = logging.getLogger("kubejoin.provision.host")


class NodeHost:
    """The machine being provisioned."""

    def __init__(self, root: Union[str, Path] = "/", download_timeout: Optional[int] = None):
        self.root = Path(root)
        self.download_timeout = download_timeout or Config.DOWNLOAD_TIMEOUT

    def path(self, path: str) -> Path:
        """Map an absolute node path under ``root``."""
        return self.root / str(path).lstrip("/")

    def run(
        self,
        args: List[str],
        check: bool = True,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> str:
        """Run a command and return its stdout.

        Raises:
            CommandError: If ``check`` is set and the command exits non-zero
        """
        logger.debug(f"$ {' '.join(args)}")
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)
        result = subprocess.run(args, capture_output=True, text=True, env=full_env, timeout=timeout)
        if check and result.returncode != 0:
            raise CommandError(args, result.returncode, result.stderr)
        return result.stdout

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def exists(self, path: str) -> bool:
        return self.path(path).exists()

    def is_executable(self, path: str) -> bool:
        target = self.path(path)
        return target.is_file() and os.access(target, os.X_OK)

    def read_bytes(self, path: str) -> Optional[bytes]:
        target = self.path(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    def read_text(self, path: str) -> Optional[str]:
        data = self.read_bytes(path)
        return data.decode("utf-8") if data is not None else None

    def mode(self, path: str) -> Optional[int]:
        target = self.path(path)
        if not target.exists():
            return None
        return target.stat().st_mode & 0o777

    def makedirs(self, path: str, mode: int = 0o755) -> None:
        self.path(path).mkdir(parents=True, exist_ok=True, mode=mode)

    def write_file(self, path: str, content: Union[str, bytes], mode: int = 0o644) -> None:
        """Atomically replace ``path``: temp file in the same directory, fsync, rename."""
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content

        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        try:
            os.fchmod(fd, mode)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        os.chmod(target, mode)
        logger.debug(f"Wrote {target} ({len(data)} bytes, mode {mode:o})")

    def remove(self, path: str) -> bool:
        target = self.path(path)
        if target.exists() or target.is_symlink():
            target.unlink()
            return True
        return False

    def _stream(self, url: str, f) -> None:
        logger.info(f"⬇️  Downloading {url}")
        with requests.get(url, stream=True, timeout=self.download_timeout) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                f.write(chunk)

    def download(self, url: str, path: str, mode: int = 0o755) -> None:
        """Stream ``url`` into ``path``, replacing it atomically."""
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                self._stream(url, f)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def fetch_archive(self, url: str, dest_dir: str) -> None:
        """Download a tarball and unpack its regular files into ``dest_dir``."""
        target = self.path(dest_dir)
        target.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile() as f:
            self._stream(url, f)
            f.seek(0)
            with tarfile.open(fileobj=f) as tar:
                members = []
                for member in tar.getmembers():
                    if member.issym() or member.islnk():
                        continue
                    if member.name.startswith("/") or ".." in Path(member.name).parts:
                        raise tarfile.TarError(f"Refusing unsafe archive member: {member.name}")
                    members.append(member)
                tar.extractall(target, members=members)

    def service_active(self, unit: str) -> bool:
        return self.run(["systemctl", "is-active", unit], check=False).strip() == "active"

    def service_enabled(self, unit: str) -> bool:
        return self.run(["systemctl", "is-enabled", unit], check=False).strip() == "enabled"

    def swap_active(self) -> bool:
        return bool(self.run(["swapon", "--show", "--noheadings"], check=False).strip())
