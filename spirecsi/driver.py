"""Ephemeral inline CSI driver that fills a tmpfs volume with SPIRE identities."""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from . import cgroups

MAX_TRIES = 10
RETRY_DELAY = 1.0

SPIRE_AGENT_BINARY = "/bin/spire-agent"
SPIRE_AGENT_SOCKET = "/spire-agent-socket/spire-agent.sock"

EPHEMERAL_KEY = "csi.storage.k8s.io/ephemeral"
POD_NAME_KEY = "csi.storage.k8s.io/pod.name"
POD_NAMESPACE_KEY = "csi.storage.k8s.io/pod.namespace"
POD_UID_KEY = "csi.storage.k8s.io/pod.uid"
POD_SERVICE_ACCOUNT_KEY = "csi.storage.k8s.io/serviceAccount.name"


class StatusCode(enum.IntEnum):
    """gRPC status codes reported by the driver."""

    OK = 0
    INVALID_ARGUMENT = 3
    INTERNAL = 13


class CsiError(Exception):
    """A failed CSI call, carrying a gRPC status code."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.name} desc = {self.message}"


class AccessMode(enum.IntEnum):
    """CSI volume access modes."""

    UNKNOWN = 0
    SINGLE_NODE_WRITER = 1
    SINGLE_NODE_READER_ONLY = 2
    MULTI_NODE_READER_ONLY = 3
    MULTI_NODE_SINGLE_WRITER = 4
    MULTI_NODE_MULTI_WRITER = 5
    SINGLE_NODE_SINGLE_WRITER = 6
    SINGLE_NODE_MULTI_WRITER = 7


@dataclass(frozen=True)
class MountVolume:
    """The mount access type of a volume capability."""

    fs_type: str = ""
    mount_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class VolumeCapability:
    """How a volume is to be accessed: as a mount or as a block device."""

    mount: MountVolume | None = None
    block: bool = False
    access_mode: AccessMode | None = None

    @property
    def has_access_type(self) -> bool:
        return self.mount is not None or self.block


@dataclass(frozen=True)
class NodePublishVolumeRequest:
    volume_id: str = ""
    target_path: str = ""
    volume_capability: VolumeCapability | None = None
    readonly: bool = False
    volume_context: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeUnpublishVolumeRequest:
    volume_id: str = ""
    target_path: str = ""


@dataclass
class Config:
    """Settings the driver is built from."""

    node_id: str = ""
    plugin_name: str = ""
    workload_api_socket_dir: str = ""
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("spirecsi.driver"))


def is_volume_capability_plain_mount(capability: VolumeCapability) -> bool:
    """True when the capability is a mount with no fs type and no mount flags."""
    mount = capability.mount
    return mount is not None and not mount.fs_type and not mount.mount_flags


def is_volume_capability_access_mode_read_only(access_mode: AccessMode) -> bool:
    return access_mode == AccessMode.SINGLE_NODE_READER_ONLY


def _fields(**values: object) -> str:
    return " ".join(f"{key}={value!r}" for key, value in values.items())


def _invalid(message: str) -> CsiError:
    return CsiError(StatusCode.INVALID_ARGUMENT, message)


def _internal(message: str) -> CsiError:
    return CsiError(StatusCode.INTERNAL, message)


def _validate_publish(request: NodePublishVolumeRequest) -> None:
    capability = request.volume_capability
    if not request.volume_id:
        raise _invalid("request missing required volume id")
    if not request.target_path:
        raise _invalid("request missing required target path")
    if capability is None:
        raise _invalid("request missing required volume capability")
    if not capability.has_access_type:
        raise _invalid("request missing required volume capability access type")
    if not is_volume_capability_plain_mount(capability):
        raise _invalid("request volume capability access type must be a simple mount")
    if capability.access_mode is None:
        raise _invalid("request missing required volume capability access mode")
    if is_volume_capability_access_mode_read_only(capability.access_mode):
        raise _invalid("request volume capability access mode is not valid")
    if not request.readonly:
        raise _invalid("pod.spec.volumes[].csi.readOnly must be set to 'true'")
    if request.volume_context.get(EPHEMERAL_KEY, "") != "true":
        raise _invalid("only ephemeral volumes are supported")


def _run(command: list[str]) -> bytes:
    completed = subprocess.run(
        command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=True
    )
    return completed.stdout or b""


class Driver:
    """Identity and node services of the ephemeral inline CSI driver."""

    def __init__(self, config: Config) -> None:
        if not config.node_id:
            raise ValueError("node ID is required")
        if not config.workload_api_socket_dir:
            raise ValueError("workload API socket directory is required")
        self._log = config.log
        self.node_id = config.node_id
        self.plugin_name = config.plugin_name
        self.workload_api_socket_dir = config.workload_api_socket_dir

    # Identity service

    def get_plugin_info(self) -> dict[str, str]:
        return {"name": self.plugin_name}

    def get_plugin_capabilities(self) -> list[str]:
        # Only the node service is implemented.
        return []

    def probe(self) -> dict[str, object]:
        return {}

    # Node service

    def node_publish_volume(self, request: NodePublishVolumeRequest) -> dict[str, object]:
        """Mount a tmpfs at the target path and write the pod's identities into it."""
        context = request.volume_context
        pod_uid = context.get(POD_UID_KEY, "")
        bound = _fields(volumeID=request.volume_id, targetPath=request.target_path)
        capability = request.volume_capability
        if capability is not None and capability.access_mode is not None:
            bound += " " + _fields(access_mode=capability.access_mode.name)

        self._log.info("podName: %s %s", context.get(POD_NAME_KEY, ""), bound)
        self._log.info("podNamespace: %s %s", context.get(POD_NAMESPACE_KEY, ""), bound)
        self._log.info("podUID: %s %s", pod_uid, bound)
        self._log.info(
            "podServiceAccount: %s %s", context.get(POD_SERVICE_ACCOUNT_KEY, ""), bound
        )

        try:
            _validate_publish(request)
            self._publish(request.target_path, pod_uid, bound)
        except CsiError as err:
            self._log.error("Failed to publish volume: %s %s", err, bound)
            raise
        self._log.info("Volume published %s", bound)
        return {}

    def _publish(self, target_path: str, pod_uid: str, bound: str) -> None:
        try:
            os.mkdir(target_path, 0o777)
        except FileExistsError:
            pass
        except OSError as exc:
            raise _internal(f"unable to create target path {target_path!r}: {exc}") from exc

        try:
            _run(["mount", "-t", "tmpfs", "tmpfs", target_path])
        except (subprocess.CalledProcessError, OSError) as exc:
            raise _internal(f"unable to mount {target_path!r}: {exc}") from exc

        log_path = str(Path(target_path) / "log.txt")
        try:
            log_file = open(log_path, "w", encoding="utf-8")
        except OSError as exc:
            raise _internal(f"unable to create a file {log_path!r}: {exc}") from exc

        with log_file:
            log_file.write(target_path + "\n")

            try:
                own_procs_path = cgroups.get_my_cgroup_procs_path()
            except (OSError, ValueError, LookupError) as exc:
                raise _internal(f"unable to get my own cgroups. {exc}") from exc
            log_file.write(f"My cgroups.proc: {own_procs_path}\n")

            try:
                cgroups.create_fake_cgroup(pod_uid)
            except OSError as exc:
                raise _internal(f"unable to create fake cgroups. {exc}") from exc
            log_file.write("CreateFakeCgroup\n")

            pod_procs_path = cgroups.get_pod_procs_path(pod_uid)
            try:
                cgroups.enter_cgroup(os.getpid(), pod_procs_path)
            except OSError as exc:
                raise _internal(f"unable to enter fake cgroups. {exc}") from exc
            log_file.write(f"EnterCgroup: {pod_procs_path}\n")

            output = self._fetch_identities(target_path, bound)
            log_file.write(f"spire-agent output: {output.decode('utf-8', errors='replace')}\n")

            try:
                cgroups.enter_cgroup(os.getpid(), own_procs_path)
            except OSError as exc:
                raise _internal(f"unable to come back to my own cgroups. {exc}") from exc
            log_file.write(f"EnterCgroup: {own_procs_path}\n")

            try:
                cgroups.delete_fake_cgroup(pod_uid)
            except OSError as exc:
                raise _internal(f"unable to delete fake cgroups. {exc}") from exc
            log_file.write("DeleteFakeCgroup\n")

    def _fetch_identities(self, target_path: str, bound: str) -> bytes:
        command = [
            SPIRE_AGENT_BINARY, "api", "fetch",
            "-socketPath", SPIRE_AGENT_SOCKET,
            "-write", target_path,
        ]
        last_error: Exception | None = None
        for _ in range(MAX_TRIES):
            try:
                return _run(command)
            except (subprocess.CalledProcessError, OSError) as exc:
                last_error = exc
                self._log.error(
                    "unable to retrieve spire identities. retrying...: %s %s", exc, bound
                )
                time.sleep(RETRY_DELAY)
        raise _internal(
            f"unable to retrieve spire identities. max tries exceeded: {last_error}"
        )

    def node_unpublish_volume(self, request: NodeUnpublishVolumeRequest) -> dict[str, object]:
        """Unmount the target path and remove its directory."""
        bound = _fields(volumeID=request.volume_id, targetPath=request.target_path)
        try:
            self._unpublish(request)
        except CsiError as err:
            self._log.error("Failed to unpublish volume: %s %s", err, bound)
            raise
        self._log.info("Volume unpublished %s", bound)
        return {}

    @staticmethod
    def _unpublish(request: NodeUnpublishVolumeRequest) -> None:
        if not request.volume_id:
            raise _invalid("request missing required volume id")
        if not request.target_path:
            raise _invalid("request missing required target path")
        target_path = request.target_path
        try:
            _run(["umount", target_path])
        except (subprocess.CalledProcessError, OSError) as exc:
            raise _internal(f"unable to unmount {target_path!r}: {exc}") from exc
        try:
            os.rmdir(target_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise _internal(f"unable to remove target path {target_path!r}: {exc}") from exc

    def node_get_capabilities(self) -> list[str]:
        return []

    def node_get_info(self) -> dict[str, object]:
        return {"node_id": self.node_id, "max_volumes_per_node": 0}