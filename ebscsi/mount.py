"""Mounting, formatting and filesystem size checks on the node.

External tools are reached through an injected runner: a callable taking the
argument list and returning ``(exit_code, combined_output)``.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Sequence

log = logging.getLogger(__name__)

Runner = Callable[[Sequence[str]], "tuple[int, str]"]


class MountError(Exception):
    """Raised when a mount, format or size operation fails."""


def parse_fs_info_output(
    output: str, separator: str, block_size_key: str, block_count_key: str
) -> tuple[int, int]:
    """Find block size and block count in ``key<sep>value`` tool output.

    Missing values are reported as 0.
    """
    block_size = block_count = 0
    for line in output.split("\n"):
        tokens = line.split(separator)
        if len(tokens) != 2:
            continue
        key, value = tokens[0].strip().lower(), tokens[1].strip().lower()
        if key == block_size_key:
            block_size = _parse_uint(value, "block size")
        if key == block_count_key:
            block_count = _parse_uint(value, "block count")
    return block_size, block_count


def _parse_uint(value: str, what: str) -> int:
    if not value.isdigit():
        raise MountError(f"failed to parse {what} {value}")
    return int(value)


class NodeMounter:
    """Mount operations for a Linux node."""

    def __init__(self, runner: Runner, mounts_file: str = "/proc/mounts"):
        self.runner = runner
        self.mounts_file = mounts_file

    def _run(self, args: Sequence[str], what: str) -> str:
        code, output = self.runner(list(args))
        if code != 0:
            raise MountError(f"{what}: exit status {code}: {output.strip()}")
        return output

    def _mounts(self) -> list[tuple[str, str]]:
        with open(self.mounts_file, encoding="utf-8") as fh:
            return [
                (fields[0], fields[1])
                for fields in (line.split() for line in fh)
                if len(fields) >= 2
            ]

    def get_device_name_from_mount(self, mount_path: str) -> tuple[str, int]:
        """Device mounted at ``mount_path`` and how many mounts that device has."""
        mounts = self._mounts()
        device = next((dev for dev, path in mounts if path == mount_path), "")
        if not device:
            return "", 0
        return device, sum(1 for dev, _ in mounts if dev == device)

    def make_file(self, path: str) -> None:
        with open(path, "a"):
            pass

    def make_dir(self, path: str) -> None:
        os.makedirs(path, mode=0o755, exist_ok=True)

    def path_exists(self, path: str) -> bool:
        try:
            os.stat(path)
        except FileNotFoundError:
            return False
        return True

    def get_disk_format(self, device_path: str) -> str:
        """Filesystem type on a device, or "" when it is unformatted."""
        code, output = self.runner(
            ["blkid", "-p", "-s", "TYPE", "-s", "PTTYPE", "-o", "export", device_path]
        )
        if code == 2:
            return ""
        if code != 0:
            raise MountError(f"failed to probe format of {device_path}: {output.strip()}")
        fs_type = pt_type = ""
        for line in output.splitlines():
            key, sep, value = line.strip().partition("=")
            if not sep:
                continue
            if key == "TYPE":
                fs_type = value
            elif key == "PTTYPE":
                pt_type = value
        if pt_type:
            return "unknown data, probably partitions"
        return fs_type

    def _device_size(self, device_path: str) -> int:
        code, output = self.runner(["blockdev", "--getsize64", device_path])
        out = output.strip()
        if code != 0:
            raise MountError(f"failed to read size of device {device_path}: {out}")
        if not out.isdigit():
            raise MountError(f"failed to parse size of device {device_path} {out}")
        return int(out)

    def _fs_size(self, args, path, separator, size_key, count_key) -> tuple[int, int]:
        code, output = self.runner(args)
        if code != 0:
            raise MountError(f"failed to read size of filesystem on {path}: {output}")
        block_size, block_count = parse_fs_info_output(output, separator, size_key, count_key)
        if block_size == 0:
            raise MountError(f"could not find block size of device {path}")
        if block_count == 0:
            raise MountError(f"could not find block count of device {path}")
        return block_size, block_size * block_count

    def need_resize(self, device_path: str, device_mount_path: str) -> bool:
        """Whether the filesystem is smaller than its device by more than a block."""
        device_size = self._device_size(device_path)
        try:
            fmt = self.get_disk_format(device_path)
        except MountError as exc:
            raise MountError(
                f"ResizeFS.Resize - error checking format for device {device_path}: {exc}"
            ) from exc
        if fmt == "":
            return False
        if fmt in ("ext3", "ext4"):
            block_size, fs_size = self._fs_size(
                ["dumpe2fs", "-h", device_path], device_path, ":", "block size", "block count"
            )
        elif fmt == "xfs":
            block_size, fs_size = self._fs_size(
                ["xfs_io", "-c", "statfs", device_mount_path],
                device_mount_path,
                "=",
                "geom.bsize",
                "geom.datablocks",
            )
        else:
            raise MountError(
                f"Could not parse fs info on given filesystem format: {fmt}. "
                "Supported fs types are: xfs, ext3, ext4"
            )
        log.debug("device size=%d, fs size=%d, block size=%d", device_size, fs_size, block_size)
        return device_size > fs_size + block_size

    def format_and_mount(self, source: str, target: str, fs_type: str, options) -> None:
        """Format ``source`` if it has no filesystem, then mount it."""
        existing = self.get_disk_format(source)
        if existing == "":
            args = [f"mkfs.{fs_type}"]
            if fs_type in ("ext2", "ext3", "ext4"):
                args += ["-F", "-m0"]
            self._run(args + [source], f"format of {source} failed")
        elif existing != fs_type:
            raise MountError(
                f"failed to mount {source} at {target}: "
                f"filesystem {existing!r} does not match requested {fs_type!r}"
            )
        self.mount(source, target, fs_type, options)

    def mount(self, source: str, target: str, fs_type: str, options) -> None:
        args = ["mount"]
        if fs_type:
            args += ["-t", fs_type]
        if options:
            args += ["-o", ",".join(options)]
        self._run(args + [source, target], f"mount of {source} at {target} failed")

    def unmount(self, target: str) -> None:
        self._run(["umount", target], f"unmount of {target} failed")

    def resize(self, device_path: str, device_mount_path: str) -> bool:
        """Grow the filesystem to fill its device."""
        fmt = self.get_disk_format(device_path)
        if fmt == "":
            return False
        if fmt in ("ext3", "ext4"):
            self._run(["resize2fs", device_path], f"resize of {device_path} failed")
        elif fmt == "xfs":
            self._run(["xfs_growfs", "-d", device_mount_path], f"resize of {device_path} failed")
        else:
            raise MountError(f"resize of format {fmt} is not supported for device {device_path}")
        return True

    def block_size_bytes(self, device_path: str) -> int:
        code, output = self.runner(["blockdev", "--getsize64", device_path])
        if code != 0:
            raise MountError(
                f"error when getting size of block volume at path {device_path}: output: {output}"
            )
        out = output.strip()
        try:
            return int(out)
        except ValueError:
            raise MountError(f"failed to parse size {out} as int") from None

    def find_mount_source(self, target: str) -> str:
        output = self._run(
            ["findmnt", "-o", "source", "--noheadings", "--target", target],
            "Could not determine device path",
        )
        return output.strip()