"""Launching the Remote Desktop client against the local tunnel endpoint."""

import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

from rdpssh_app.errors import ProcessError

RDP_FILE_TEMPLATE = "full address:s:{address}\nusername:s:{username}\n"
DEFAULT_VIEWER_COMMAND = "mstsc.exe {rdp_file}"
TERMINATE_TIMEOUT = 5.0


class ViewerProcess:
    """Running viewer together with the connection file it was given."""

    def __init__(self, process: subprocess.Popen, rdp_file: Optional[Path] = None) -> None:
        self.process = process
        self.rdp_file = rdp_file
        self.logger = logging.getLogger(__name__)

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> Optional[int]:
        return self.process.poll()

    def terminate(self, timeout: float = TERMINATE_TIMEOUT) -> None:
        """Stop the viewer if it is still running, killing it if it lingers."""
        if self.process.poll() is not None:
            return
        self.logger.info("Terminating viewer process %s", self.pid)
        self.process.terminate()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning("Viewer process %s ignored terminate; killing", self.pid)
            self.process.kill()
            self.process.wait()

    def cleanup(self) -> None:
        if self.rdp_file is None:
            return
        try:
            self.rdp_file.unlink(missing_ok=True)
        except OSError as exc:
            self.logger.warning("Failed to remove %s: %s", self.rdp_file, exc)


class ViewerLauncher:
    """Start the configured RDP client for a tunnel address.

    ``command`` is split like a shell command line; the placeholders
    ``{rdp_file}``, ``{address}`` and ``{username}`` are substituted in
    each argument.
    """

    def __init__(
        self,
        command: str = DEFAULT_VIEWER_COMMAND,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        tmp_dir: Optional[str] = None,
    ) -> None:
        self.command = command
        self.popen = popen
        self.tmp_dir = tmp_dir
        self.logger = logging.getLogger(__name__)

    def build_args(self, address: str, username: str, rdp_file: Path) -> List[str]:
        posix = os.name != "nt"
        tokens = shlex.split(self.command, posix=posix)
        if not tokens:
            raise ProcessError("viewer command is empty")
        if not posix:
            tokens = [t.strip('"') for t in tokens]
        return [
            t.format(rdp_file=str(rdp_file), address=address, username=username)
            for t in tokens
        ]

    def write_rdp_file(self, address: str, username: str) -> Path:
        fd, name = tempfile.mkstemp(prefix="rdpssh-", suffix=".rdp", dir=self.tmp_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(RDP_FILE_TEMPLATE.format(address=address, username=username))
        return Path(name)

    def launch(self, address: str, username: str) -> ViewerProcess:
        try:
            rdp_file = self.write_rdp_file(address, username)
        except OSError as exc:
            raise ProcessError(f"failed to create temp rdp file: {exc}") from exc
        try:
            args = self.build_args(address, username, rdp_file)
            self.logger.info("Launching Remote Desktop Client: %s", " ".join(args))
            process = self.popen(args)
        except ProcessError:
            rdp_file.unlink(missing_ok=True)
            raise
        except (OSError, ValueError, KeyError, IndexError) as exc:
            rdp_file.unlink(missing_ok=True)
            raise ProcessError(f"failed to start viewer: {exc}") from exc
        return ViewerProcess(process, rdp_file)
