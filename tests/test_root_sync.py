import subprocess
from types import SimpleNamespace

import pytest

from rootenc import root_sync


def test_copy_tree_builds_rsync_command(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return SimpleNamespace(rc=0, out="", err="", duration=1.0)

    monkeypatch.setattr(root_sync, "run", fake_run)
    root_sync.copy_tree("/build/src", "/build/target/", excludes=["/boot"])
    cmd, kwargs = calls[0]
    assert cmd == ["rsync", "--info=progress2", "--archive", "--exclude", "/boot", "/build/src/", "/build/target/"]
    assert kwargs["capture"] is False


def test_copy_tree_verbose(monkeypatch):
    calls = []
    monkeypatch.setattr(root_sync, "run", lambda cmd, **kw: (calls.append(cmd), SimpleNamespace(rc=0, duration=0))[1])
    root_sync.copy_tree("/a", "/b", verbose=True)
    assert calls[0][1] == "--verbose"


@pytest.mark.parametrize("code", root_sync.SOFT_FAILURES)
def test_partial_transfer_is_a_warning(monkeypatch, code):
    def fake_run(cmd, **kwargs):
        raise subprocess.CalledProcessError(code, cmd, "", "")

    monkeypatch.setattr(root_sync, "run", fake_run)
    assert root_sync.copy_tree("/a", "/b").rc == code


def test_hard_failure_propagates(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.CalledProcessError(12, cmd, "", "protocol error")

    monkeypatch.setattr(root_sync, "run", fake_run)
    with pytest.raises(subprocess.CalledProcessError):
        root_sync.copy_tree("/a", "/b")
