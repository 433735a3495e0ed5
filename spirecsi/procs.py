"""Process discovery and container runtime lookups."""

from __future__ import annotations

import json
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

PROC_ROOT = "/proc"

_PID_NAME = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class Proc:
    """A process id with its raw command line."""

    pid: int
    cmdline: str


def _read_text(path: Path) -> str:
    return path.read_bytes().decode("utf-8", errors="replace")


def get_peer_procs(ppid: int) -> list[Proc]:
    """Return every process whose parent is ``ppid``, in directory-name order."""
    root = Path(PROC_ROOT)
    procs = []
    for name in sorted(os.listdir(root)):
        if not _PID_NAME.fullmatch(name):
            continue
        pid = int(name)
        try:
            status = _read_text(root / str(pid) / "status")
        except OSError:
            continue
        for line in status.split("\n"):
            if not line.startswith("PPid:"):
                continue
            fields = line.split()
            if len(fields) != 2:
                continue
            try:
                parent = int(fields[1])
            except ValueError:
                continue
            if parent == ppid:
                try:
                    cmdline = _read_text(root / str(pid) / "cmdline")
                except OSError:
                    cmdline = ""
                procs.append(Proc(pid=pid, cmdline=cmdline))
    return procs


def get_pod_sandbox_id(pod_name: str, pod_namespace: str) -> str:
    """Ask crictl for the sandbox id of the named pod."""
    completed = subprocess.run(
        ["crictl", "pods", "--name", pod_name, "--namespace", pod_namespace, "-o", "json"],
        stdout=subprocess.PIPE,
        check=True,
    )
    return extract_sandbox_id_from_json(completed.stdout)


def extract_sandbox_id_from_json(data: bytes | str) -> str:
    """Pull the id of the single pod out of crictl's JSON output."""
    result = json.loads(data)
    if not isinstance(result, dict):
        raise ValueError("Unexpected json result returned from crictl")
    items = result.get("items")
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValueError("Unexpected json result returned from crictl")
    if len(items) != 1:
        raise ValueError("Unexpected number of pods returned from crictl")
    sandbox_id = items[0].get("id")
    if not isinstance(sandbox_id, str):
        raise ValueError("Cannot find id field of the returned pod")
    return sandbox_id