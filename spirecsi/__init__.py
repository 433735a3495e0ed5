"""Node driver that writes SPIRE workload identities into ephemeral volumes, with cgroup and process helpers."""

__version__ = "0.1.0"
__all__ = ["cgroups", "procs", "driver", "cli"]