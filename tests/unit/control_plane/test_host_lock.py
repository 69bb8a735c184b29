"""
sitebox-orchestrator — unit tests for the state directory host lock

File: tests/unit/control_plane/test_host_lock.py

Purpose
- Validate exclusive ownership, refusal while another live process holds the lock and
  takeover of stale lock files.
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from sitebox_orchestrator.control_plane.host_lock import HostLock
from sitebox_orchestrator.domain.errors import SupervisorBusy


def _exited_pid() -> int:
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()
    return child.pid


def test_acquire_writes_pid_and_release_removes_the_file(tmp_path: Path) -> None:
    lock = HostLock(tmp_path / "state" / "supervisor.lock")

    lock.acquire()
    lock.acquire()

    assert lock.held
    assert lock.owner_pid() == os.getpid()

    lock.release()
    lock.release()

    assert not lock.held
    assert not lock.path.exists()


def test_lock_owned_by_another_live_process_is_refused(tmp_path: Path) -> None:
    path = tmp_path / "supervisor.lock"
    with subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"]) as holder:
        try:
            path.write_text(f"{holder.pid}\n", encoding="utf-8")

            with pytest.raises(SupervisorBusy, match=str(holder.pid)) as excinfo:
                HostLock(path).acquire()
        finally:
            holder.kill()

    assert excinfo.value.to_dict()["kind"] == "supervisor_busy"
    assert path.read_text(encoding="utf-8").strip() == str(holder.pid)


@pytest.mark.parametrize("contents", ["not-a-pid\n", ""])
def test_unreadable_lock_file_is_taken_over(tmp_path: Path, contents: str) -> None:
    path = tmp_path / "supervisor.lock"
    path.write_text(contents, encoding="utf-8")
    lock = HostLock(path)

    lock.acquire()

    assert lock.owner_pid() == os.getpid()
    lock.release()


def test_lock_of_an_exited_process_is_stale(tmp_path: Path) -> None:
    path = tmp_path / "supervisor.lock"
    path.write_text(f"{_exited_pid()}\n", encoding="utf-8")
    lock = HostLock(path)

    lock.acquire()

    assert lock.held
    assert lock.owner_pid() == os.getpid()
    lock.release()


def test_release_leaves_a_lock_taken_over_by_someone_else(tmp_path: Path) -> None:
    path = tmp_path / "supervisor.lock"
    lock = HostLock(path)
    lock.acquire()
    path.write_text("1\n", encoding="utf-8")

    lock.release()

    assert path.exists()
    assert not lock.held
