"""The node service: staging, publishing, expanding and inspecting volumes."""

from __future__ import annotations

import enum
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from ebscsi.devices import DeviceError, find_device_path, is_block_device
from ebscsi.mount import MountError
from ebscsi.util import AccessMode, VolumeCapability

log = logging.getLogger(__name__)

FS_TYPE_EXT2 = "ext2"
FS_TYPE_EXT3 = "ext3"
FS_TYPE_EXT4 = "ext4"
FS_TYPE_XFS = "xfs"
VALID_FS_TYPES = (FS_TYPE_EXT2, FS_TYPE_EXT3, FS_TYPE_EXT4, FS_TYPE_XFS)
DEFAULT_FS_TYPE = FS_TYPE_EXT4

DEFAULT_MAX_EBS_VOLUMES = 39
DEFAULT_MAX_EBS_NITRO_VOLUMES = 25
_NITRO_INSTANCE_TYPE = re.compile(r"^[cmr]5.*|t3|z1d")

DEVICE_PATH_KEY = "devicePath"
VOLUME_ATTRIBUTE_PARTITION = "partition"
TOPOLOGY_KEY = "topology.ebs.csi.aws.com/zone"
AWS_REGION_KEY = "topology.ebs.csi.aws.com/region"
AWS_PARTITION_KEY = "topology.ebs.csi.aws.com/partition"
AWS_ACCOUNT_ID_KEY = "topology.ebs.csi.aws.com/account-id"
AWS_OUTPOST_ID_KEY = "topology.ebs.csi.aws.com/outpost-id"

VOLUME_OPERATION_ALREADY_EXISTS = "An operation with the given volume={!r} is already in progress"

NODE_CAPABILITIES = ("STAGE_UNSTAGE_VOLUME", "EXPAND_VOLUME", "GET_VOLUME_STATS")
_SUPPORTED_ACCESS_MODES = (AccessMode.SINGLE_NODE_WRITER,)

_OPERATION_ERRORS = (MountError, DeviceError, OSError)


class StatusCode(enum.IntEnum):
    OK = 0
    INVALID_ARGUMENT = 3
    NOT_FOUND = 5
    ABORTED = 10
    INTERNAL = 13


class CsiError(Exception):
    """An RPC failure carrying a status code."""

    def __init__(self, code: StatusCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"


class InFlight:
    """Set of keys with an operation in progress."""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def insert(self, key: str) -> bool:
        """Add ``key``; False when it was already present."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    @contextmanager
    def guard(self, key: str) -> Iterator[None]:
        """Hold ``key`` for the duration of the block; abort if it is taken."""
        if not self.insert(key):
            raise CsiError(StatusCode.ABORTED, VOLUME_OPERATION_ALREADY_EXISTS.format(key))
        try:
            yield
        finally:
            log.debug("volume=%r operation finished", key)
            self.delete(key)


@dataclass
class NodeStageVolumeRequest:
    volume_id: str = ""
    staging_target_path: str = ""
    volume_capability: VolumeCapability | None = None
    publish_context: dict[str, str] = field(default_factory=dict)
    volume_context: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeUnstageVolumeRequest:
    volume_id: str = ""
    staging_target_path: str = ""


@dataclass
class NodePublishVolumeRequest:
    volume_id: str = ""
    staging_target_path: str = ""
    target_path: str = ""
    volume_capability: VolumeCapability | None = None
    publish_context: dict[str, str] = field(default_factory=dict)
    volume_context: dict[str, str] = field(default_factory=dict)
    readonly: bool = False


@dataclass
class NodeUnpublishVolumeRequest:
    volume_id: str = ""
    target_path: str = ""


@dataclass
class NodeExpandVolumeRequest:
    volume_id: str = ""
    volume_path: str = ""
    staging_target_path: str = ""
    volume_capability: VolumeCapability | None = None


@dataclass
class NodeGetVolumeStatsRequest:
    volume_id: str = ""
    volume_path: str = ""


@dataclass(frozen=True)
class VolumeUsage:
    unit: str
    total: int
    available: int = 0
    used: int = 0


@dataclass(frozen=True)
class OutpostArn:
    partition: str = ""
    region: str = ""
    account_id: str = ""
    resource: str = ""


@dataclass(frozen=True)
class NodeInfo:
    node_id: str
    max_volumes_per_node: int
    accessible_topology: dict[str, str]


def has_mount_option(options, opt: str) -> bool:
    return opt in options


def collect_mount_options(fs_type: str, mount_flags) -> list[str]:
    """De-duplicated mount flags plus the options a filesystem needs."""
    options: list[str] = []
    for opt in mount_flags:
        if not has_mount_option(options, opt):
            options.append(opt)
    # xfs refuses two mounts with the same uuid, as with a volume and its clone.
    if fs_type == FS_TYPE_XFS and not has_mount_option(options, "nouuid"):
        options.append("nouuid")
    return options


def _is_valid_volume_capability(cap: VolumeCapability) -> bool:
    return cap.access_mode in _SUPPORTED_ACCESS_MODES


def _is_valid_volume_context(context: dict[str, str]) -> bool:
    part = context.get(VOLUME_ATTRIBUTE_PARTITION)
    return part is None or re.fullmatch(r"[+-]?\d+", part) is not None


def _partition_from(context: dict[str, str], operation: str) -> str:
    part = context.get(VOLUME_ATTRIBUTE_PARTITION)
    if part is None:
        return ""
    if part == "0":
        log.warning("%s: invalid partition config, will ignore. partition = %s", operation, part)
        return ""
    return part


def _invalid(message: str) -> CsiError:
    return CsiError(StatusCode.INVALID_ARGUMENT, message)


def _internal(message: str) -> CsiError:
    return CsiError(StatusCode.INTERNAL, message)


class NodeService:
    """Node-side volume operations on top of a mounter and instance metadata.

    ``metadata`` provides ``instance_id``, ``instance_type``,
    ``availability_zone`` and ``outpost_arn`` attributes.
    """

    def __init__(self, metadata, mounter, volume_attach_limit: int = -1, in_flight=None):
        self.metadata = metadata
        self.mounter = mounter
        self.volume_attach_limit = volume_attach_limit
        self.in_flight = in_flight if in_flight is not None else InFlight()

    def _find_device_path(self, device_path: str, volume_id: str, partition: str) -> str:
        try:
            return find_device_path(self.mounter, device_path, volume_id, partition)
        except _OPERATION_ERRORS as exc:
            raise _internal(f"Failed to find device path {device_path}. {exc}") from exc

    def node_stage_volume(self, request: NodeStageVolumeRequest) -> None:
        volume_id = request.volume_id
        if not volume_id:
            raise _invalid("Volume ID not provided")
        target = request.staging_target_path
        if not target:
            raise _invalid("Staging target not provided")
        cap = request.volume_capability
        if cap is None:
            raise _invalid("Volume capability not provided")
        if not _is_valid_volume_capability(cap):
            raise _invalid("Volume capability not supported")
        if not _is_valid_volume_context(request.volume_context):
            raise _invalid("Volume Attribute is not valid")
        if cap.is_block:
            return
        if not cap.is_mount:
            raise _invalid("NodeStageVolume: mount is nil within volume capability")

        fs_type = cap.fs_type or DEFAULT_FS_TYPE
        mount_options = collect_mount_options(fs_type, cap.mount_flags)

        with self.in_flight.guard(volume_id):
            device_path = request.publish_context.get(DEVICE_PATH_KEY)
            if device_path is None:
                raise _invalid("Device path not provided")
            partition = _partition_from(request.volume_context, "NodeStageVolume")
            source = self._find_device_path(device_path, volume_id, partition)
            log.debug("NodeStageVolume: find device path %s -> %s", device_path, source)

            try:
                exists = self.mounter.path_exists(target)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"failed to check if target {target!r} exists: {exc}") from exc
            if not exists:
                try:
                    self.mounter.make_dir(target)
                except _OPERATION_ERRORS as exc:
                    raise _internal(f"could not create target dir {target!r}: {exc}") from exc

            try:
                device, _ = self.mounter.get_device_name_from_mount(target)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"failed to check if volume is already mounted: {exc}") from exc
            if device == source:
                log.debug("NodeStageVolume: volume=%r already staged", volume_id)
                return

            try:
                self.mounter.format_and_mount(source, target, fs_type, mount_options)
            except _OPERATION_ERRORS as exc:
                raise _internal(
                    f"could not format {source!r} and mount it at {target!r}: {exc}"
                ) from exc

            try:
                needs_resize = self.mounter.need_resize(source, target)
            except _OPERATION_ERRORS as exc:
                raise _internal(
                    f"Could not determine if volume {volume_id!r} ({source!r}) "
                    f"need to be resized: {exc}"
                ) from exc
            if needs_resize:
                log.info("Volume %s needs resizing", source)
                try:
                    self.mounter.resize(source, target)
                except _OPERATION_ERRORS as exc:
                    raise _internal(
                        f"Could not resize volume {volume_id!r} ({source!r}): {exc}"
                    ) from exc

    def node_unstage_volume(self, request: NodeUnstageVolumeRequest) -> None:
        volume_id = request.volume_id
        if not volume_id:
            raise _invalid("Volume ID not provided")
        target = request.staging_target_path
        if not target:
            raise _invalid("Staging target not provided")

        with self.in_flight.guard(volume_id):
            try:
                device, ref_count = self.mounter.get_device_name_from_mount(target)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"failed to check if volume is mounted: {exc}") from exc
            if ref_count == 0:
                log.debug("NodeUnstageVolume: %s target not mounted", target)
                return
            if ref_count > 1:
                log.warning(
                    "NodeUnstageVolume: found %d references to device %s mounted at target path %s",
                    ref_count,
                    device,
                    target,
                )
            try:
                self.mounter.unmount(target)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"Could not unmount target {target!r}: {exc}") from exc

    def node_expand_volume(self, request: NodeExpandVolumeRequest) -> int:
        """Grow the filesystem at the volume path; returns the capacity in bytes."""
        volume_id = request.volume_id
        if not volume_id:
            raise _invalid("Volume ID not provided")
        volume_path = request.volume_path
        if not volume_path:
            raise _invalid("volume path must be provided")

        cap = request.volume_capability
        if cap is not None:
            if not _is_valid_volume_capability(cap):
                raise _invalid(f"VolumeCapability is invalid: {cap}")
            if cap.is_block:
                log.debug("NodeExpandVolume called for block device %s, ignoring", volume_path)
                return 0
        else:
            try:
                is_block = is_block_device(volume_path)
            except DeviceError as exc:
                raise _internal(
                    f"failed to determine device path for volumePath [{volume_path}]: {exc}"
                ) from exc
            if is_block:
                try:
                    return self.mounter.block_size_bytes(volume_path)
                except _OPERATION_ERRORS as exc:
                    raise _internal(
                        f"failed to get block capacity on path {volume_path}: {exc}"
                    ) from exc

        try:
            device_path = self.mounter.find_mount_source(volume_path)
        except _OPERATION_ERRORS as exc:
            raise _internal(f"Could not determine device path: {exc}") from exc
        if not device_path:
            raise _internal(f"Could not get valid device for mount path: {volume_path!r}")

        try:
            self.mounter.resize(device_path, volume_path)
        except _OPERATION_ERRORS as exc:
            raise _internal(
                f"Could not resize volume {volume_id!r} ({device_path!r}): {exc}"
            ) from exc

        try:
            return self.mounter.block_size_bytes(device_path)
        except _OPERATION_ERRORS as exc:
            raise _internal(f"failed to get block capacity on path {volume_path}: {exc}") from exc

    def node_publish_volume(self, request: NodePublishVolumeRequest) -> None:
        volume_id = request.volume_id
        if not volume_id:
            raise _invalid("Volume ID not provided")
        if not request.staging_target_path:
            raise _invalid("Staging target not provided")
        if not request.target_path:
            raise _invalid("Target path not provided")
        cap = request.volume_capability
        if cap is None:
            raise _invalid("Volume capability not provided")
        if not _is_valid_volume_capability(cap):
            raise _invalid("Volume capability not supported")

        with self.in_flight.guard(volume_id):
            mount_options = ["bind"]
            if request.readonly:
                mount_options.append("ro")
            if cap.is_block:
                self._publish_block(request, mount_options)
            elif cap.is_mount:
                self._publish_filesystem(request, mount_options, cap)

    def _remove_target(self, target: str) -> None:
        try:
            os.remove(target)
        except OSError as exc:
            raise _internal(f"Could not remove mount target {target!r}: {exc}") from exc

    def _publish_block(self, request: NodePublishVolumeRequest, mount_options: list[str]) -> None:
        target = request.target_path
        device_path = request.publish_context.get(DEVICE_PATH_KEY)
        if device_path is None:
            raise _invalid("Device path not provided")
        if not _is_valid_volume_context(request.volume_context):
            raise _invalid("Volume Attribute is invalid")

        partition = _partition_from(request.volume_context, "NodePublishVolume")
        source = self._find_device_path(device_path, request.volume_id, partition)
        log.debug("NodePublishVolume [block]: find device path %s -> %s", device_path, source)

        global_mount_path = os.path.dirname(target)
        try:
            exists = self.mounter.path_exists(global_mount_path)
        except _OPERATION_ERRORS as exc:
            raise _internal(f"Could not check if path exists {global_mount_path!r}: {exc}") from exc
        if not exists:
            try:
                self.mounter.make_dir(global_mount_path)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"Could not create dir {global_mount_path!r}: {exc}") from exc

        try:
            self.mounter.make_file(target)
        except _OPERATION_ERRORS as exc:
            self._remove_target(target)
            raise _internal(f"Could not create file {target!r}: {exc}") from exc

        try:
            self.mounter.mount(source, target, "", mount_options)
        except _OPERATION_ERRORS as exc:
            self._remove_target(target)
            raise _internal(f"Could not mount {source!r} at {target!r}: {exc}") from exc

    def _publish_filesystem(
        self, request: NodePublishVolumeRequest, mount_options: list[str], cap: VolumeCapability
    ) -> None:
        target = request.target_path
        source = request.staging_target_path
        options = list(mount_options)
        for flag in cap.mount_flags:
            if not has_mount_option(options, flag):
                options.append(flag)

        try:
            self.mounter.make_dir(target)
        except _OPERATION_ERRORS as exc:
            raise _internal(f"Could not create dir {target!r}: {exc}") from exc

        fs_type = cap.fs_type or DEFAULT_FS_TYPE
        options = collect_mount_options(fs_type, options)
        log.debug("NodePublishVolume: mounting %s at %s with %s as %s", source, target, options, fs_type)
        try:
            self.mounter.mount(source, target, fs_type, options)
        except _OPERATION_ERRORS as exc:
            self._remove_target(target)
            raise _internal(f"Could not mount {source!r} at {target!r}: {exc}") from exc

    def node_unpublish_volume(self, request: NodeUnpublishVolumeRequest) -> None:
        volume_id = request.volume_id
        if not volume_id:
            raise _invalid("Volume ID not provided")
        target = request.target_path
        if not target:
            raise _invalid("Target path not provided")
        with self.in_flight.guard(volume_id):
            try:
                self.mounter.unmount(target)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"Could not unmount {target!r}: {exc}") from exc

    def node_get_volume_stats(self, request: NodeGetVolumeStatsRequest) -> list[VolumeUsage]:
        if not request.volume_id:
            raise _invalid("NodeGetVolumeStats volume ID was empty")
        path = request.volume_path
        if not path:
            raise _invalid("NodeGetVolumeStats volume path was empty")

        try:
            exists = self.mounter.path_exists(path)
        except _OPERATION_ERRORS as exc:
            raise _internal(f"unknown error when stat on {path}: {exc}") from exc
        if not exists:
            raise CsiError(StatusCode.NOT_FOUND, f"path {path} does not exist")

        try:
            is_block = is_block_device(path)
        except DeviceError as exc:
            raise _internal(f"failed to determine whether {path} is block device: {exc}") from exc
        if is_block:
            try:
                capacity = self.mounter.block_size_bytes(path)
            except _OPERATION_ERRORS as exc:
                raise _internal(f"failed to get block capacity on path {path}: {exc}") from exc
            return [VolumeUsage(unit="BYTES", total=capacity)]

        try:
            st = os.statvfs(path)
        except OSError as exc:
            raise _internal(f"failed to get fs info on path {path}: {exc}") from exc
        return [
            VolumeUsage(
                unit="BYTES",
                available=st.f_bavail * st.f_frsize,
                total=st.f_blocks * st.f_frsize,
                used=(st.f_blocks - st.f_bfree) * st.f_frsize,
            ),
            VolumeUsage(
                unit="INODES",
                available=st.f_ffree,
                total=st.f_files,
                used=st.f_files - st.f_ffree,
            ),
        ]

    def node_get_capabilities(self) -> list[str]:
        return list(NODE_CAPABILITIES)

    def node_get_info(self) -> NodeInfo:
        segments = {TOPOLOGY_KEY: self.metadata.availability_zone}
        arn = self.metadata.outpost_arn
        if arn is not None and arn.resource:
            segments[AWS_REGION_KEY] = arn.region
            segments[AWS_PARTITION_KEY] = arn.partition
            segments[AWS_ACCOUNT_ID_KEY] = arn.account_id
            segments[AWS_OUTPOST_ID_KEY] = arn.resource
        return NodeInfo(
            node_id=self.metadata.instance_id,
            max_volumes_per_node=self.volumes_limit(),
            accessible_topology=segments,
        )

    def volumes_limit(self) -> int:
        """How many volumes this node can have attached."""
        if self.volume_attach_limit >= 0:
            return self.volume_attach_limit
        if _NITRO_INSTANCE_TYPE.search(self.metadata.instance_type):
            return DEFAULT_MAX_EBS_NITRO_VOLUMES
        return DEFAULT_MAX_EBS_VOLUMES