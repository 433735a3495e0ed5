"""Command line entry point that starts the CSI driver service."""

from __future__ import annotations

import argparse
import json
import logging
import os
import socketserver
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from .driver import (
    AccessMode,
    Config,
    CsiError,
    Driver,
    MountVolume,
    NodePublishVolumeRequest,
    NodeUnpublishVolumeRequest,
    StatusCode,
    VolumeCapability,
)

DESCRIPTION = (
    "spiffe-csi-driver provides an ephemeral inline CSI volume containing "
    "SPIRE workload identities"
)

_UNIMPLEMENTED = 12

_log = logging.getLogger("spirecsi")


def build_parser() -> argparse.ArgumentParser:
    """Build the parser for the driver's command line flags."""
    parser = argparse.ArgumentParser(prog="spiffe-csi-driver", description=DESCRIPTION)
    parser.add_argument(
        "-node-id", "--node-id",
        dest="node_id",
        default="",
        help="Kubernetes Node ID. If unset, the node ID is obtained from the "
        "environment (i.e., -node-id-env)",
    )
    parser.add_argument(
        "-node-id-env", "--node-id-env",
        dest="node_id_env",
        default="MY_NODE_NAME",
        help="Envvar from which to obtain the node ID. Overridden by -node-id.",
    )
    parser.add_argument(
        "-csi-socket-path", "--csi-socket-path",
        dest="csi_socket_path",
        default="/csi-identity/csi.sock",
        help="Path to the CSI socket",
    )
    parser.add_argument(
        "-plugin-name", "--plugin-name",
        dest="plugin_name",
        default="csi-identity.spiffe.io",
        help="Plugin name to register",
    )
    parser.add_argument(
        "-workload-api-socket-dir", "--workload-api-socket-dir",
        dest="workload_api_socket_dir",
        default="",
        help="Path to the Workload API socket directory",
    )
    return parser


def node_id_from_args(args: argparse.Namespace, environ: Mapping[str, str]) -> str:
    """Return the node ID from the flag, falling back to the configured variable."""
    if args.node_id:
        return args.node_id
    return environ.get(args.node_id_env, "")


def _capability_from(params: Mapping[str, Any] | None) -> VolumeCapability | None:
    if params is None:
        return None
    mount = params.get("mount")
    mount_volume = None
    if mount is not None:
        mount_volume = MountVolume(
            fs_type=mount.get("fs_type", ""),
            mount_flags=tuple(mount.get("mount_flags", ())),
        )
    mode = params.get("access_mode")
    access_mode = None
    if mode is not None:
        access_mode = AccessMode[mode] if isinstance(mode, str) else AccessMode(mode)
    return VolumeCapability(
        mount=mount_volume, block=bool(params.get("block", False)), access_mode=access_mode
    )


def _publish(driver: Driver, params: Mapping[str, Any]) -> Any:
    request = NodePublishVolumeRequest(
        volume_id=params.get("volume_id", ""),
        target_path=params.get("target_path", ""),
        volume_capability=_capability_from(params.get("volume_capability")),
        readonly=bool(params.get("readonly", False)),
        volume_context=dict(params.get("volume_context", {})),
    )
    return driver.node_publish_volume(request)


def _unpublish(driver: Driver, params: Mapping[str, Any]) -> Any:
    request = NodeUnpublishVolumeRequest(
        volume_id=params.get("volume_id", ""),
        target_path=params.get("target_path", ""),
    )
    return driver.node_unpublish_volume(request)


_METHODS: dict[str, Callable[[Driver, Mapping[str, Any]], Any]] = {
    "GetPluginInfo": lambda driver, _: driver.get_plugin_info(),
    "GetPluginCapabilities": lambda driver, _: driver.get_plugin_capabilities(),
    "Probe": lambda driver, _: driver.probe(),
    "NodeGetCapabilities": lambda driver, _: driver.node_get_capabilities(),
    "NodeGetInfo": lambda driver, _: driver.node_get_info(),
    "NodePublishVolume": _publish,
    "NodeUnpublishVolume": _unpublish,
}


def _error(code: int, message: str) -> dict[str, Any]:
    return {"error": {"code": int(code), "message": message}}


def _handle(driver: Driver, message: Any) -> dict[str, Any]:
    """Dispatch one decoded request to the driver and build the reply."""
    if not isinstance(message, dict):
        return _error(StatusCode.INVALID_ARGUMENT, "request must be an object")
    method = _METHODS.get(message.get("method", ""))
    if method is None:
        return _error(_UNIMPLEMENTED, f"unknown method {message.get('method')!r}")
    params = message.get("params") or {}
    try:
        return {"result": method(driver, params)}
    except CsiError as err:
        return _error(err.code, err.message)
    except (KeyError, ValueError, TypeError, AttributeError) as exc:
        return _error(StatusCode.INVALID_ARGUMENT, f"malformed request: {exc}")


class _Handler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        for raw in self.rfile:
            line = raw.strip()
            if not line:
                continue
            try:
                reply = _handle(self.server.driver, json.loads(line))  # type: ignore[attr-defined]
            except ValueError as exc:
                reply = _error(StatusCode.INVALID_ARGUMENT, f"invalid JSON: {exc}")
            self.wfile.write(json.dumps(reply).encode("utf-8") + b"\n")
            self.wfile.flush()


class _Server(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: str, driver: Driver) -> None:
        self.driver = driver
        super().__init__(socket_path, _Handler)


def _make_server(driver: Driver, socket_path: str) -> _Server:
    path = Path(socket_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    return _Server(str(path), driver)


def _serve(driver: Driver, socket_path: str) -> None:
    with _make_server(driver, socket_path) as server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass


def main(argv: Sequence[str] | None = None) -> int:
    """Run the driver; returns the process exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG,
        stream=sys.stderr,
        format="%(asctime)s\t%(levelname)s\t%(name)s\t%(message)s",
    )

    node_id = node_id_from_args(args, os.environ)
    _log.info(
        "Starting. nodeID=%r workloadAPISocketDir=%r csiSocketPathFlag=%r",
        node_id, args.workload_api_socket_dir, args.csi_socket_path,
    )

    try:
        driver = Driver(
            Config(
                node_id=node_id,
                plugin_name=args.plugin_name,
                workload_api_socket_dir=args.workload_api_socket_dir,
                log=logging.getLogger("spirecsi.driver"),
            )
        )
    except ValueError as exc:
        _log.error("Failed to create driver: %s", exc)
        return 1

    # Keep another process in the same cgroup so it is not lost when we hop out of it.
    try:
        subprocess.Popen(["sleep", "infinity"])
    except OSError as exc:
        _log.warning("unable to start companion process: %s", exc)

    try:
        _serve(driver, args.csi_socket_path)
    except OSError as exc:
        _log.error("Failed to serve: %s", exc)
        return 1

    _log.info("Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())