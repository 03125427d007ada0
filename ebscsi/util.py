"""Size conversions, endpoint parsing and volume capability helpers."""

from __future__ import annotations

import enum
import os
import posixpath
from dataclasses import dataclass, field
from urllib.parse import urlsplit

GIB = 1024 * 1024 * 1024


class AccessMode(enum.IntEnum):
    """Access modes a volume capability can request."""

    UNKNOWN = 0
    SINGLE_NODE_WRITER = 1
    SINGLE_NODE_READER_ONLY = 2
    MULTI_NODE_READER_ONLY = 3
    MULTI_NODE_SINGLE_WRITER = 4
    MULTI_NODE_MULTI_WRITER = 5


@dataclass
class VolumeCapability:
    """How a volume is to be accessed: as a raw block device or a mounted filesystem.

    ``access_type`` is ``"block"``, ``"mount"`` or ``None`` when not given.
    """

    access_mode: AccessMode = AccessMode.UNKNOWN
    access_type: str | None = None
    fs_type: str = ""
    mount_flags: list[str] = field(default_factory=list)

    @property
    def is_block(self) -> bool:
        return self.access_type == "block"

    @property
    def is_mount(self) -> bool:
        return self.access_type == "mount"


def _round_up_size(volume_size_bytes: int, allocation_unit_bytes: int) -> int:
    return (volume_size_bytes + allocation_unit_bytes - 1) // allocation_unit_bytes


def round_up_bytes(volume_size_bytes: int) -> int:
    """Round a size in bytes up to a whole number of GiB, in bytes."""
    return _round_up_size(volume_size_bytes, GIB) * GIB


def round_up_gib(volume_size_bytes: int) -> int:
    """Round a size in bytes up to a whole number of GiB, in GiB."""
    return _round_up_size(volume_size_bytes, GIB)


def bytes_to_gib(volume_size_bytes: int) -> int:
    return volume_size_bytes // GIB


def gib_to_bytes(volume_size_gib: int) -> int:
    return volume_size_gib * GIB


def _join(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    return posixpath.normpath(joined) if joined else ""


def parse_endpoint(endpoint: str) -> tuple[str, str]:
    """Split an endpoint URL into (scheme, address).

    For unix sockets a stale socket file at the address is removed.
    """
    try:
        url = urlsplit(endpoint)
    except ValueError as exc:
        raise ValueError(f"could not parse endpoint: {exc}") from exc

    addr = _join(url.netloc, url.path)
    scheme = url.scheme.lower()
    if scheme == "tcp":
        pass
    elif scheme == "unix":
        addr = _join("/", addr)
        try:
            os.remove(addr)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ValueError(f"could not remove unix domain socket {addr!r}: {exc}") from exc
    else:
        raise ValueError(f"unsupported protocol: {scheme}")
    return scheme, addr


def get_access_modes(caps) -> list[str]:
    """Names of the access modes of the given capabilities, in order."""
    return [AccessMode(cap.access_mode).name for cap in caps]