"""Tests for starting and stopping the Remote Desktop client."""

from pathlib import Path
import subprocess
import sys

import pytest

# Ensure application importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from rdpssh_app.errors import ProcessError
from rdpssh_app.viewer import ViewerLauncher, ViewerProcess


class DummyPopen:
    def __init__(self, args):
        self.args = args
        self.pid = 4242
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.ignore_terminate:
            self.returncode = 1

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


def _recording_popen(calls):
    def popen(args):
        proc = DummyPopen(args)
        calls.append(proc)
        return proc

    return popen


def test_launch_writes_rdp_file_and_substitutes_placeholders(tmp_path) -> None:
    calls = []
    launcher = ViewerLauncher(
        "xfreerdp {rdp_file} /v:{address} /u:{username}",
        popen=_recording_popen(calls),
        tmp_dir=str(tmp_path),
    )

    viewer = launcher.launch("127.0.0.1:33890", "jdoe")

    rdp_file = viewer.rdp_file
    assert rdp_file.parent == tmp_path
    assert rdp_file.suffix == ".rdp"
    assert rdp_file.read_text(encoding="utf-8") == (
        "full address:s:127.0.0.1:33890\nusername:s:jdoe\n"
    )
    assert calls[0].args == [
        "xfreerdp",
        str(rdp_file),
        "/v:127.0.0.1:33890",
        "/u:jdoe",
    ]
    assert viewer.pid == 4242

    viewer.cleanup()
    assert not rdp_file.exists()
    viewer.cleanup()


def test_missing_executable_reports_process_error(tmp_path) -> None:
    def popen(args):
        raise FileNotFoundError(2, "No such file or directory", args[0])

    launcher = ViewerLauncher("no-such-viewer {rdp_file}", popen=popen, tmp_dir=str(tmp_path))

    with pytest.raises(ProcessError, match="failed to start viewer"):
        launcher.launch("127.0.0.1:33890", "jdoe")
    assert list(tmp_path.iterdir()) == []


def test_empty_command_is_rejected(tmp_path) -> None:
    launcher = ViewerLauncher("   ", popen=_recording_popen([]), tmp_dir=str(tmp_path))

    with pytest.raises(ProcessError, match="empty"):
        launcher.launch("127.0.0.1:33890", "jdoe")
    assert list(tmp_path.iterdir()) == []


def test_unknown_placeholder_is_a_process_error(tmp_path) -> None:
    launcher = ViewerLauncher("viewer {display}", popen=_recording_popen([]), tmp_dir=str(tmp_path))

    with pytest.raises(ProcessError):
        launcher.launch("127.0.0.1:33890", "jdoe")


def test_unwritable_temp_dir_is_a_process_error(tmp_path) -> None:
    launcher = ViewerLauncher(popen=_recording_popen([]), tmp_dir=str(tmp_path / "missing"))

    with pytest.raises(ProcessError, match="temp rdp file"):
        launcher.launch("127.0.0.1:33890", "jdoe")


def test_terminate_stops_running_viewer() -> None:
    proc = DummyPopen(["viewer"])
    viewer = ViewerProcess(proc)

    viewer.terminate(timeout=0.1)

    assert proc.terminated is True
    assert proc.killed is False
    viewer.cleanup()


def test_terminate_kills_stubborn_viewer() -> None:
    proc = DummyPopen(["viewer"])
    proc.ignore_terminate = True
    viewer = ViewerProcess(proc)

    viewer.terminate(timeout=0.1)

    assert proc.terminated is True
    assert proc.killed is True


def test_terminate_skips_exited_viewer() -> None:
    proc = DummyPopen(["viewer"])
    proc.returncode = 0
    ViewerProcess(proc).terminate()

    assert proc.terminated is False
