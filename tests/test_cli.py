import json
import socket
import threading

import pytest

from spirecsi import cli
from spirecsi.driver import Config, Driver


@pytest.fixture
def driver():
    return Driver(
        Config(node_id="node-a", plugin_name="plugin-x", workload_api_socket_dir="/run/wl")
    )


def test_parser_defaults():
    args = cli.build_parser().parse_args([])
    assert args.node_id == ""
    assert args.node_id_env == "MY_NODE_NAME"
    assert args.csi_socket_path == "/csi-identity/csi.sock"
    assert args.plugin_name == "csi-identity.spiffe.io"
    assert args.workload_api_socket_dir == ""


def test_parser_accepts_single_and_double_dash():
    parser = cli.build_parser()
    single = parser.parse_args(["-node-id", "n1", "-workload-api-socket-dir", "/w"])
    double = parser.parse_args(["--node-id", "n1", "--workload-api-socket-dir", "/w"])
    assert single.node_id == double.node_id == "n1"
    assert single.workload_api_socket_dir == double.workload_api_socket_dir == "/w"


def test_node_id_from_environment():
    args = cli.build_parser().parse_args([])
    assert cli.node_id_from_args(args, {"MY_NODE_NAME": "from-env"}) == "from-env"


def test_node_id_flag_overrides_environment():
    args = cli.build_parser().parse_args(["-node-id", "from-flag"])
    assert cli.node_id_from_args(args, {"MY_NODE_NAME": "from-env"}) == "from-flag"


def test_node_id_custom_env_name():
    args = cli.build_parser().parse_args(["-node-id-env", "OTHER"])
    environ = {"MY_NODE_NAME": "wrong", "OTHER": "right"}
    assert cli.node_id_from_args(args, environ) == "right"


def test_node_id_missing_is_empty():
    args = cli.build_parser().parse_args([])
    assert cli.node_id_from_args(args, {}) == ""


def test_main_fails_without_node_id(monkeypatch):
    monkeypatch.delenv("MY_NODE_NAME", raising=False)
    assert cli.main(["-workload-api-socket-dir", "/run/wl"]) == 1


def test_main_fails_without_workload_dir(monkeypatch):
    monkeypatch.delenv("MY_NODE_NAME", raising=False)
    assert cli.main(["-node-id", "node-a"]) == 1


def test_handle_node_get_info(driver):
    reply = cli._handle(driver, {"method": "NodeGetInfo"})
    assert reply == {"result": {"node_id": "node-a", "max_volumes_per_node": 0}}


def test_handle_plugin_info(driver):
    reply = cli._handle(driver, {"method": "GetPluginInfo", "params": {}})
    assert reply["result"]["name"] == "plugin-x"


def test_handle_unknown_method(driver):
    reply = cli._handle(driver, {"method": "ControllerPublishVolume"})
    assert reply["error"]["code"] == 12


def test_handle_non_object(driver):
    reply = cli._handle(driver, ["NodeGetInfo"])
    assert reply["error"]["code"] == 3


def test_handle_unpublish_missing_volume_id(driver):
    reply = cli._handle(
        driver, {"method": "NodeUnpublishVolume", "params": {"target_path": "/t"}}
    )
    assert reply["error"] == {"code": 3, "message": "request missing required volume id"}


def test_handle_publish_missing_capability(driver):
    reply = cli._handle(
        driver,
        {"method": "NodePublishVolume", "params": {"volume_id": "v", "target_path": "/t"}},
    )
    assert reply["error"]["message"] == "request missing required volume capability"


def test_handle_publish_read_only_access_mode_rejected(driver):
    params = {
        "volume_id": "v",
        "target_path": "/t",
        "readonly": True,
        "volume_capability": {"mount": {}, "access_mode": "SINGLE_NODE_READER_ONLY"},
    }
    reply = cli._handle(driver, {"method": "NodePublishVolume", "params": params})
    assert reply["error"]["message"] == "request volume capability access mode is not valid"


def test_handle_publish_bad_access_mode(driver):
    params = {
        "volume_id": "v",
        "target_path": "/t",
        "volume_capability": {"mount": {}, "access_mode": "NO_SUCH_MODE"},
    }
    reply = cli._handle(driver, {"method": "NodePublishVolume", "params": params})
    assert reply["error"]["code"] == 3


def test_socket_round_trip(driver, tmp_path):
    socket_path = str(tmp_path / "csi.sock")
    server = cli._make_server(driver, socket_path)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.connect(socket_path)
            stream = client.makefile("rwb")
            stream.write(json.dumps({"method": "NodeGetInfo"}).encode() + b"\n")
            stream.write(b"not json\n")
            stream.flush()
            first = json.loads(stream.readline())
            second = json.loads(stream.readline())
    finally:
        server.shutdown()
        server.server_close()
        thread.join()
    assert first["result"]["node_id"] == "node-a"
    assert second["error"]["code"] == 3