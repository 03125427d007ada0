# ebscsi

`ebscsi` is the node-side logic of a block-volume storage driver for Linux
hosts. It checks staging, publishing, expansion and statistics requests, and
turns them into mount, format and resize steps. It also provides helpers for
volume sizes, endpoints, driver options and version information.

The package has no runtime dependencies.

## Installation

```
pip install ebscsi
```

To run the tests:

```
pip install "ebscsi[test]"
pytest
```

## Modules

### `ebscsi.util`

- `round_up_bytes(n)` and `round_up_gib(n)` round a size in bytes up to a
  whole number of GiB. The first returns bytes, the second GiB.
- `bytes_to_gib(n)` and `gib_to_bytes(n)` convert between bytes and GiB.
- `parse_endpoint(endpoint)` returns `(scheme, address)` for `tcp` and `unix`
  endpoints.
  - For `unix` endpoints it removes any existing socket file at the address.
  - Any other scheme raises `ValueError`.
- `AccessMode` is an integer enumeration of access modes.
- `VolumeCapability` describes how a volume is accessed:
  - `access_mode`
  - `access_type`, which is `"block"`, `"mount"` or `None`
  - `fs_type`
  - `mount_flags`
- `get_access_modes(caps)` returns the access-mode names of a list of
  capabilities.

### `ebscsi.version`

`get_version()` returns a `VersionInfo`. It holds:

- the driver version, git commit and build date (empty by default)
- the Python version and implementation
- the platform

`get_version_json()` returns the same information as indented JSON.

### `ebscsi.validation`

- `validate_extra_tags(tags)` checks extra resource tags. It enforces:
  - the number of tags
  - key and value lengths
  - reserved keys
  - reserved prefixes (`kubernetes.io`, `aws:`)
- `validate_mode(mode)` accepts the `Mode` values `all`, `controller` and
  `node`.
- `validate_driver_options(extra_tags, mode)` runs both checks.

Every failure raises `ValidationError`, which is a `ValueError`.

### `ebscsi.mount`

`NodeMounter(runner, mounts_file="/proc/mounts")` performs the host-level
steps:

- mount and unmount
- format-and-mount
- resize for ext3, ext4 and xfs
- the check of whether a filesystem needs resizing
- block-device size
- `findmnt` lookups
- creating files and directories
- `get_device_name_from_mount`, which reads the mount table from
  `mounts_file`

The mounter never starts processes itself. Every external tool (`blkid`,
`mkfs.*`, `mount`, `umount`, `blockdev`, `dumpe2fs`, `xfs_io`, `resize2fs`,
`xfs_growfs`, `findmnt`) is reached through the `runner` you pass in. A runner
is a callable that takes the argument list and returns
`(exit_code, combined_output)`.

`parse_fs_info_output(output, separator, block_size_key, block_count_key)`
reads block size and block count from tool output. Failures raise
`MountError`.

### `ebscsi.devices`

- `find_device_path(mounter, device_path, volume_id, partition, by_id_dir)`
  finds the device for a volume, with an optional partition suffix.
  - If `device_path` exists, it is used directly.
  - Otherwise the function falls back to the NVMe symlink
    `nvme-Amazon_Elastic_Block_Store_<volume id without dashes>` under
    `/dev/disk/by-id`.
- `find_nvme_volume` resolves that symlink.
- `is_block_device` tests a path.

Failures raise `DeviceError`.

### `ebscsi.node`

`NodeService(metadata, mounter, volume_attach_limit=-1, in_flight=None)`
handles the node requests:

| Method | Returns |
| --- | --- |
| `node_stage_volume` | nothing |
| `node_unstage_volume` | nothing |
| `node_publish_volume` | nothing |
| `node_unpublish_volume` | nothing |
| `node_expand_volume` | capacity in bytes |
| `node_get_volume_stats` | list of `VolumeUsage` |
| `node_get_capabilities` | list of capability names |
| `node_get_info` | `NodeInfo` |

Requests are plain dataclasses such as `NodeStageVolumeRequest` and
`NodePublishVolumeRequest`.

The `metadata` object must have these attributes:

- `instance_id`
- `instance_type`
- `availability_zone`
- `outpost_arn` (an `OutpostArn` or `None`)

`volumes_limit()` works as follows:

- It returns `volume_attach_limit` when that is zero or more.
- Otherwise it returns 25 for Nitro-style instance types.
- For all other instance types it returns 39.

Failures raise `CsiError`, which carries a `StatusCode`:

- `INVALID_ARGUMENT`
- `NOT_FOUND`
- `ABORTED`
- `INTERNAL`

Each operation on a volume is guarded by an `InFlight` registry. A second call
for the same volume fails with `StatusCode.ABORTED` while the first call is
still running.

## Example

```python
from types import SimpleNamespace

from ebscsi.node import NodeService, NodeUnstageVolumeRequest, CsiError, StatusCode
from ebscsi.util import parse_endpoint, round_up_gib
from ebscsi.validation import Mode, validate_driver_options

assert parse_endpoint("tcp:///127.0.0.1") == ("tcp", "/127.0.0.1")
assert round_up_gib(1) == 1
validate_driver_options({"team": "storage"}, Mode.ALL)

metadata = SimpleNamespace(
    instance_id="i-123456789abcdef01",
    instance_type="m5d.large",
    availability_zone="us-west-2b",
    outpost_arn=None,
)
service = NodeService(metadata, mounter=None)
assert service.volumes_limit() == 25
assert service.node_get_info().node_id == "i-123456789abcdef01"

try:
    service.node_unstage_volume(NodeUnstageVolumeRequest(volume_id="vol-test"))
except CsiError as exc:
    assert exc.code is StatusCode.INVALID_ARGUMENT
```

## What this package does not do

- It has no command-line entry point.
- It does not serve the storage RPC interface over a socket. Callers invoke
  `NodeService` methods directly.
- It does not query instance metadata. The caller supplies the `metadata`
  object.
- It has no controller side: volume creation, attachment and snapshots are
  not covered.
- It supports only Linux hosts.