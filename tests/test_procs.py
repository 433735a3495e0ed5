import json
import subprocess

import pytest

from spirecsi import procs
from spirecsi.procs import Proc


def _make_proc(root, name, ppid=None, cmdline=None):
    d = root / name
    d.mkdir()
    if ppid is not None:
        (d / "status").write_text(f"Name:\tx\nState:\tS\nPPid:\t{ppid}\nTracerPid:\t0\n")
    if cmdline is not None:
        (d / "cmdline").write_bytes(cmdline)


@pytest.fixture
def fake_proc(tmp_path, monkeypatch):
    monkeypatch.setattr(procs, "PROC_ROOT", str(tmp_path))
    return tmp_path


def test_get_peer_procs_finds_children(fake_proc):
    _make_proc(fake_proc, "100", ppid=1, cmdline=b"sleep\x00infinity\x00")
    _make_proc(fake_proc, "101", ppid=1, cmdline=b"agent\x00")
    _make_proc(fake_proc, "200", ppid=2, cmdline=b"other\x00")
    _make_proc(fake_proc, "self")
    _make_proc(fake_proc, "300")
    assert procs.get_peer_procs(1) == [
        Proc(pid=100, cmdline="sleep\x00infinity\x00"),
        Proc(pid=101, cmdline="agent\x00"),
    ]


def test_get_peer_procs_no_match(fake_proc):
    _make_proc(fake_proc, "100", ppid=1, cmdline=b"x")
    assert procs.get_peer_procs(99) == []


def test_get_peer_procs_missing_cmdline(fake_proc):
    _make_proc(fake_proc, "55", ppid=3)
    assert procs.get_peer_procs(3) == [Proc(pid=55, cmdline="")]


def test_get_peer_procs_ignores_malformed_ppid(fake_proc):
    d = fake_proc / "10"
    d.mkdir()
    (d / "status").write_text("PPid:\tabc\nPPid:\t1 2\n")
    assert procs.get_peer_procs(1) == []


def test_get_peer_procs_missing_root(tmp_path, monkeypatch):
    monkeypatch.setattr(procs, "PROC_ROOT", str(tmp_path / "missing"))
    with pytest.raises(FileNotFoundError):
        procs.get_peer_procs(1)


def test_extract_sandbox_id():
    data = json.dumps({"items": [{"id": "abc123", "metadata": {}}]}).encode()
    assert procs.extract_sandbox_id_from_json(data) == "abc123"


def test_extract_sandbox_id_from_str():
    assert procs.extract_sandbox_id_from_json('{"items": [{"id": "sb"}]}') == "sb"


@pytest.mark.parametrize(
    "payload",
    [
        '{"items": []}',
        '{"items": [{"id": "a"}, {"id": "b"}]}',
        '{"other": 1}',
        '{"items": "nope"}',
        '{"items": [1]}',
        "[1, 2]",
        '{"items": [{"name": "x"}]}',
        '{"items": [{"id": 5}]}',
    ],
)
def test_extract_sandbox_id_rejects(payload):
    with pytest.raises(ValueError):
        procs.extract_sandbox_id_from_json(payload)


def test_extract_sandbox_id_invalid_json():
    with pytest.raises(json.JSONDecodeError):
        procs.extract_sandbox_id_from_json(b"{not json")


def _install_crictl(bin_dir, body):
    bin_dir.mkdir()
    script = bin_dir / "crictl"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(0o755)


def test_get_pod_sandbox_id_runs_crictl(tmp_path, monkeypatch):
    args_file = tmp_path / "args.txt"
    _install_crictl(
        tmp_path / "bin",
        f'echo "$@" > "{args_file}"\n'
        "echo '{\"items\": [{\"id\": \"sandbox-1\"}]}'\n",
    )
    monkeypatch.setenv("PATH", str(tmp_path / "bin"))
    assert procs.get_pod_sandbox_id("web", "default") == "sandbox-1"
    assert args_file.read_text().split() == [
        "pods", "--name", "web", "--namespace", "default", "-o", "json",
    ]


def test_get_pod_sandbox_id_failure(tmp_path, monkeypatch):
    _install_crictl(tmp_path / "bin", "exit 1\n")
    monkeypatch.setenv("PATH", str(tmp_path / "bin"))
    with pytest.raises(subprocess.CalledProcessError):
        procs.get_pod_sandbox_id("web", "default")


def test_get_pod_sandbox_id_missing_crictl(tmp_path, monkeypatch):
    (tmp_path / "empty").mkdir()
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    with pytest.raises(FileNotFoundError):
        procs.get_pod_sandbox_id("web", "default")