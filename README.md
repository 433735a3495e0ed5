# spirecsi

A node driver for ephemeral inline volumes that fills each volume with
SPIRE workload identities.

When a volume is published, the driver:

1. validates the request: volume id and target path present, a plain mount
   capability (no fs type, no mount flags), an access mode other than
   `SINGLE_NODE_READER_ONLY`, `readonly` set, and the volume context key
   `csi.storage.k8s.io/ephemeral` equal to `"true"`;
2. creates the target directory and runs `mount -t tmpfs tmpfs <target>`;
3. creates a placeholder cgroup under the pod's kubelet besteffort slice and
   writes its own PID into that cgroup's `cgroup.procs`, so the SPIRE agent
   attests the request as that pod;
4. runs `/bin/spire-agent api fetch -socketPath
   /spire-agent-socket/spire-agent.sock -write <target>`, up to 10 attempts
   one second apart;
5. moves itself back to its own cgroup and removes the placeholder cgroup.

Each step is recorded in a `log.txt` file inside the volume. Unpublishing
runs `umount <target>` and removes the target directory.

## Installation

```
pip install .
```

The driver runs on Linux only. It needs privileges to mount filesystems and
to write under `/sys/fs/cgroup`, and it needs the `mount`, `umount`, `sleep`
and `/bin/spire-agent` programs.

## Running

```
spiffe-csi-driver -workload-api-socket-dir /spire-agent-socket
```

Options (each may also be written with two dashes, e.g. `--node-id`):

| Option | Default | Meaning |
| --- | --- | --- |
| `-node-id` | *(empty)* | Kubernetes node ID; overrides `-node-id-env` |
| `-node-id-env` | `MY_NODE_NAME` | Environment variable that holds the node ID |
| `-csi-socket-path` | `/csi-identity/csi.sock` | Path of the Unix socket to listen on |
| `-plugin-name` | `csi-identity.spiffe.io` | Plugin name reported by `GetPluginInfo` |
| `-workload-api-socket-dir` | *(empty, required)* | Workload API socket directory |

The command exits with status 1 when no node ID or no Workload API socket
directory is given. At start it launches `sleep infinity` as a companion
process, creates the socket's parent directory if needed, removes a stale
socket file, and logs at debug level to standard error.

### Wire protocol

The server listens on a Unix stream socket and speaks newline-delimited
JSON. Each request line is an object:

```json
{"method": "NodePublishVolume",
 "params": {"volume_id": "vol-1",
            "target_path": "/var/lib/kubelet/pods/x/volumes/v",
            "readonly": true,
            "volume_capability": {"mount": {"fs_type": "", "mount_flags": []},
                                  "access_mode": "SINGLE_NODE_WRITER"},
            "volume_context": {"csi.storage.k8s.io/ephemeral": "true",
                               "csi.storage.k8s.io/pod.uid": "1234"}}}
```

Methods: `GetPluginInfo`, `GetPluginCapabilities`, `Probe`,
`NodeGetCapabilities`, `NodeGetInfo`, `NodePublishVolume`,
`NodeUnpublishVolume`. `access_mode` may be an `AccessMode` name or number.

Each reply is one line: `{"result": ...}` on success or
`{"error": {"code": <int>, "message": "..."}}` on failure. Codes follow gRPC
numbering: 3 for invalid arguments (including malformed JSON), 12 for an
unknown method, 13 for internal failures.

### What it does not do

The server does not speak the gRPC CSI protocol and does not register
itself with the kubelet; a kubelet cannot talk to it directly. Something
in front of it has to translate CSI calls into the JSON lines above.

## Using the library

```python
from spirecsi.driver import Config, Driver

driver = Driver(Config(node_id="node-1", plugin_name="csi-identity.spiffe.io",
                       workload_api_socket_dir="/spire-agent-socket"))
print(driver.get_plugin_info())   # {'name': 'csi-identity.spiffe.io'}
print(driver.node_get_info())     # {'node_id': 'node-1', 'max_volumes_per_node': 0}
```

`Driver(config)` raises `ValueError` when `node_id` or
`workload_api_socket_dir` is empty. `Driver.node_publish_volume` and
`Driver.node_unpublish_volume` take `NodePublishVolumeRequest` and
`NodeUnpublishVolumeRequest` objects (built from `VolumeCapability`,
`MountVolume` and `AccessMode`) and raise `CsiError`, whose `code` is a
`StatusCode`, when a request is invalid or a step fails. The checks are also
available as `is_volume_capability_plain_mount` and
`is_volume_capability_access_mode_read_only`.

The helper modules can be used on their own:

- `spirecsi.cgroups`: `get_cgroups(pid, root)` reads `proc/<pid>/cgroup`
  under `root` into `Cgroup` entries; `get_my_cgroup_procs_path()` gives the
  `cgroup.procs` path of the current process's first cgroup;
  `canonicalize_pod_uid`, `create_fake_cgroup`, `delete_fake_cgroup`,
  `enter_cgroup` and `get_pod_procs_path` manage the placeholder pod cgroups.
- `spirecsi.procs`: `get_peer_procs(ppid)` lists the children of a PID as
  `Proc` entries from `/proc`; `get_pod_sandbox_id(pod_name, pod_namespace)`
  asks `crictl pods ... -o json` for a pod's sandbox ID, parsed by
  `extract_sandbox_id_from_json`.

## Tests

```
pip install ".[test]"
pytest
```