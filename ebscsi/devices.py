"""Locating block devices on a Linux node."""

from __future__ import annotations

import logging
import os
import stat

log = logging.getLogger(__name__)

DEFAULT_BY_ID_DIR = "/dev/disk/by-id"
DISK_PARTITION_SUFFIX = ""
NVME_DISK_PARTITION_SUFFIX = "p"


class DeviceError(Exception):
    """Raised when a device cannot be located or inspected."""


def find_nvme_volume(find_name: str, by_id_dir: str = DEFAULT_BY_ID_DIR) -> str:
    """Resolve the by-id symlink named ``find_name`` to its /dev device."""
    path = os.path.join(by_id_dir, find_name)
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        raise DeviceError(f"nvme path {path!r} not found") from None
    except OSError as exc:
        raise DeviceError(f"error getting stat of {path!r}: {exc}") from exc
    if not stat.S_ISLNK(st.st_mode):
        log.warning("nvme file %r found, but was not a symlink", path)
        raise DeviceError(f"nvme file {path!r} found, but was not a symlink")
    try:
        resolved = os.path.realpath(path, strict=True)
    except OSError as exc:
        raise DeviceError(f"error reading target of symlink {path!r}: {exc}") from exc
    if not resolved.startswith("/dev"):
        raise DeviceError(f"resolved symlink for {path!r} was unexpected: {resolved!r}")
    return resolved


def find_device_path(
    mounter, device_path: str, volume_id: str, partition: str = "", by_id_dir: str = DEFAULT_BY_ID_DIR
) -> str:
    """Path of the device for a volume, following NVMe naming when needed."""
    if mounter.path_exists(device_path):
        return device_path + DISK_PARTITION_SUFFIX + partition if partition else device_path
    nvme_name = "nvme-Amazon_Elastic_Block_Store_" + volume_id.replace("-", "")
    nvme_path = find_nvme_volume(nvme_name, by_id_dir)
    return nvme_path + NVME_DISK_PARTITION_SUFFIX + partition if partition else nvme_path


def is_block_device(full_path: str) -> bool:
    try:
        st = os.stat(full_path)
    except OSError as exc:
        raise DeviceError(str(exc)) from exc
    return stat.S_ISBLK(st.st_mode)