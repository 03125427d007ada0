"""Validation of driver options."""

from __future__ import annotations

import enum

MAX_NUM_TAGS_PER_RESOURCE = 50
MAX_TAG_KEY_LENGTH = 128
MAX_TAG_VALUE_LENGTH = 256
VOLUME_NAME_TAG_KEY = "CSIVolumeName"
SNAPSHOT_NAME_TAG_KEY = "CSIVolumeSnapshotName"
AWS_EBS_DRIVER_TAG_KEY = "ebs.csi.aws.com/cluster"
KUBERNETES_TAG_KEY_PREFIX = "kubernetes.io"
AWS_TAG_KEY_PREFIX = "aws:"


class Mode(str, enum.Enum):
    ALL = "all"
    CONTROLLER = "controller"
    NODE = "node"

    def __str__(self) -> str:
        return self.value


class ValidationError(ValueError):
    """Raised when driver options are invalid."""


def validate_extra_tags(tags: dict[str, str]) -> None:
    if len(tags) > MAX_NUM_TAGS_PER_RESOURCE:
        raise ValidationError(
            f"Too many tags (actual: {len(tags)}, limit: {MAX_NUM_TAGS_PER_RESOURCE})"
        )
    for key, value in tags.items():
        if len(key) > MAX_TAG_KEY_LENGTH:
            raise ValidationError(
                f"Tag key too long (actual: {len(key)}, limit: {MAX_TAG_KEY_LENGTH})"
            )
        if len(value) > MAX_TAG_VALUE_LENGTH:
            raise ValidationError(
                f"Tag value too long (actual: {len(value)}, limit: {MAX_TAG_VALUE_LENGTH})"
            )
        for reserved in (VOLUME_NAME_TAG_KEY, AWS_EBS_DRIVER_TAG_KEY, SNAPSHOT_NAME_TAG_KEY):
            if key == reserved:
                raise ValidationError(f"Tag key '{reserved}' is reserved")
        for prefix in (KUBERNETES_TAG_KEY_PREFIX, AWS_TAG_KEY_PREFIX):
            if key.startswith(prefix):
                raise ValidationError(f"Tag key prefix '{prefix}' is reserved")


def validate_mode(mode) -> None:
    supported = [m.value for m in Mode]
    value = mode.value if isinstance(mode, Mode) else str(mode)
    if value not in supported:
        raise ValidationError(
            f"Mode is not supported (actual: {value}, supported: [{' '.join(supported)}])"
        )


def validate_driver_options(extra_tags, mode) -> None:
    try:
        validate_extra_tags(extra_tags or {})
    except ValidationError as exc:
        raise ValidationError(f"Invalid extra tags: {exc}") from exc
    try:
        validate_mode(mode)
    except ValidationError as exc:
        raise ValidationError(f"Invalid mode: {exc}") from exc