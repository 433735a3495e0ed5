"""Cgroup helpers used to run a process inside a pod's cgroup."""

from __future__ import annotations

import os
import unicodedata
from dataclasses import dataclass
from pathlib import Path

CGROUP_PATH_TEMPLATE = (
    "/sys/fs/cgroup/kubelet.slice/kubelet-kubepods.slice/"
    "kubelet-kubepods-besteffort.slice/"
    "kubelet-kubepods-besteffort-pod%s.slice/"
    "cri-containerd-0000000000000000000000000000000000000000000000000000000000000000.scope"
)

PROC_ROOT = "/"


@dataclass(frozen=True)
class Cgroup:
    """One entry of a process's cgroup membership file."""

    hierarchy_id: str
    controller_list: str
    group_path: str


def get_cgroups(pid: int, root: str | os.PathLike[str]) -> list[Cgroup]:
    """Read the cgroup entries of ``pid`` from ``proc/<pid>/cgroup`` under ``root``."""
    path = Path(root) / "proc" / str(pid) / "cgroup"
    entries = []
    for line in path.read_text().splitlines():
        if not line:
            continue
        parts = line.split(":", 2)
        if len(parts) != 3:
            raise ValueError(
                f"invalid cgroup entry, contains {len(parts)} colon separated "
                f"fields but expected at least 3: {line!r}"
            )
        entries.append(Cgroup(*parts))
    return entries


def canonicalize_pod_uid(uid: str) -> str:
    """Replace every punctuation character of a pod UID with an underscore."""
    return "".join(
        "_" if unicodedata.category(ch).startswith("P") else ch for ch in uid
    )


def _pod_cgroup_dir(uid: str) -> str:
    return CGROUP_PATH_TEMPLATE % canonicalize_pod_uid(uid)


def create_fake_cgroup(uid: str) -> None:
    """Create the cgroup directory that stands in for a container of the pod."""
    os.mkdir(_pod_cgroup_dir(uid), 0o755)


def delete_fake_cgroup(uid: str) -> None:
    """Remove the cgroup directory made by :func:`create_fake_cgroup`."""
    os.rmdir(_pod_cgroup_dir(uid))


def enter_cgroup(pid: int, path: str | os.PathLike[str]) -> None:
    """Move ``pid`` into a cgroup by writing it to that cgroup's procs file."""
    Path(path).write_text(str(pid))


def get_pod_procs_path(uid: str) -> str:
    """Return the ``cgroup.procs`` path of the pod's fake cgroup."""
    return f"{_pod_cgroup_dir(uid)}/cgroup.procs"


def get_my_cgroup_procs_path() -> str:
    """Return the ``cgroup.procs`` path of the current process's first cgroup."""
    entries = get_cgroups(os.getpid(), PROC_ROOT)
    if not entries:
        raise LookupError("cannot find cgroup for the current process")
    first = entries[0]
    _, sep, controllers = first.controller_list.partition("=")
    controller_list = controllers if sep else first.controller_list
    return f"/sys/fs/cgroup/{controller_list}{first.group_path}/cgroup.procs"