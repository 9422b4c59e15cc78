"""Build state record stored inside each chroot.

This module handles:
- Reading and writing individual fields of the .sky1-build-state file
- Atomic replacement of the record (temp file + rename)
- Typed access to the record through BuildState
- Recording stage completion with ordering enforcement

The record is a line-oriented KEY=VALUE file whose first line is a comment
header. A missing file or field means "never reached" and is not an error.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

STATE_FILENAME = ".sky1-build-state"
STATE_HEADER = "# Sky1 build state -- auto-generated, do not edit"

# Highest record format this code reads and writes
SUPPORTED_STATE_VERSION = 1


class StateField(str, Enum):
    """On-disk keys of the build state record."""

    SCHEMA_VERSION = "BUILD_STATE_VERSION"
    OWNER_DESKTOP = "DESKTOP"
    STAGE_BOOTSTRAP = "STAGE_BOOTSTRAP"
    STAGE_CHROOT = "STAGE_CHROOT"
    STAGE_TRACK_SWITCH = "STAGE_TRACK_SWITCH"
    PKGLIST_HASH = "PKGLIST_HASH"
    TRACK = "TRACK"
    KERNEL_META = "KERNEL_META"
    KERNEL_VERSION = "KERNEL_VERSION"
    ADOPTED = "ADOPTED"


class Stage(str, Enum):
    """Ordered phases of populating a chroot."""

    BOOTSTRAP = "BOOTSTRAP"
    CHROOT = "CHROOT"
    TRACK_SWITCH = "TRACK_SWITCH"

    @property
    def field(self) -> StateField:
        return StateField(f"STAGE_{self.value}")


# Field name on BuildState for each on-disk key
_MODEL_FIELDS: dict[StateField, str] = {
    StateField.SCHEMA_VERSION: "schema_version",
    StateField.OWNER_DESKTOP: "owner_desktop",
    StateField.STAGE_BOOTSTRAP: "stage_bootstrap_at",
    StateField.STAGE_CHROOT: "stage_chroot_at",
    StateField.STAGE_TRACK_SWITCH: "stage_track_switch_at",
    StateField.PKGLIST_HASH: "pkglist_hash",
    StateField.TRACK: "track",
    StateField.KERNEL_META: "kernel_meta_package",
    StateField.KERNEL_VERSION: "kernel_version",
    StateField.ADOPTED: "adopted",
}


class StateFileError(Exception):
    """Raised when the build state record cannot be used."""

    def __init__(self, message: str, code: str = "state_error") -> None:
        super().__init__(message)
        self.code = code


class BuildState(BaseModel):
    """Typed view of a build state record.

    Optional fields are None when the key is absent from the file. Stage
    fields hold a datetime when the value is a timestamp and the raw string
    otherwise (older records mark adopted stages as "adopted"); any present
    stage value means the stage was reached.
    """

    schema_version: int = SUPPORTED_STATE_VERSION
    owner_desktop: str | None = None
    stage_bootstrap_at: datetime | str | None = Field(
        default=None, union_mode="left_to_right"
    )
    stage_chroot_at: datetime | str | None = Field(
        default=None, union_mode="left_to_right"
    )
    stage_track_switch_at: datetime | str | None = Field(
        default=None, union_mode="left_to_right"
    )
    pkglist_hash: str | None = None
    track: str | None = None
    kernel_meta_package: str | None = None
    kernel_version: str | None = None
    adopted: bool = False

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> BuildState:
        """Build a typed record from raw on-disk fields.

        Unknown keys are ignored. A record without a version header is
        treated as version 0. A record newer than SUPPORTED_STATE_VERSION is
        not read past its version.

        Raises:
            StateFileError: If a field value cannot be parsed.
        """
        version = fields.get(StateField.SCHEMA_VERSION.value, "0")
        if not version.isdigit():
            raise StateFileError(
                f"Malformed build state version: {version!r}", code="state_malformed"
            )
        if int(version) > SUPPORTED_STATE_VERSION:
            return cls(schema_version=int(version))

        data: dict[str, str] = {"schema_version": "0"}
        for key, name in _MODEL_FIELDS.items():
            if key.value in fields:
                data[name] = fields[key.value]
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise StateFileError(
                f"Malformed build state record: {e}", code="state_malformed"
            ) from e

    @property
    def is_supported(self) -> bool:
        return self.schema_version <= SUPPORTED_STATE_VERSION


def state_path(chroot_dir: Path) -> Path:
    """Return the path of the state record for a chroot."""
    return chroot_dir / STATE_FILENAME


def format_timestamp(when: datetime | None = None) -> str:
    """Format a timestamp the way stage fields store it (ISO 8601, seconds)."""
    if when is None:
        when = datetime.now(timezone.utc)
    return when.isoformat(timespec="seconds")


def describe_stage(value: datetime | str) -> str:
    """Render a stage field for messages."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def parse_state_text(content: str) -> dict[str, str]:
    """Parse record text into a field mapping.

    Blank lines and comments are skipped; the first occurrence of a key wins.

    Args:
        content: Raw file content.

    Returns:
        Mapping of key to value, in file order.
    """
    fields: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key and value and key not in fields:
            fields[key] = value
    return fields


def render_state_text(fields: dict[str, str]) -> str:
    """Render a field mapping as record text, header first."""
    lines = [STATE_HEADER]
    lines.extend(f"{key}={value}" for key, value in fields.items())
    return "\n".join(lines) + "\n"


def _atomic_write(path: Path, content: str) -> None:
    """Replace path with content so readers never see a partial file."""
    with tempfile.NamedTemporaryFile(
        "w",
        dir=path.parent,
        prefix=f"{path.name}.",
        suffix=".tmp",
        delete=False,
        encoding="utf-8",
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)
        try:
            tmp_file.write(content)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        except Exception:
            tmp_file.close()
            tmp_path.unlink(missing_ok=True)
            raise

    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def read_state_fields(chroot_dir: Path) -> dict[str, str] | None:
    """Read all raw fields of a chroot's state record.

    Args:
        chroot_dir: Chroot directory.

    Returns:
        Field mapping, or None if no record exists.

    Raises:
        StateFileError: If the record is not valid UTF-8.
    """
    path = state_path(chroot_dir)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError as e:
        raise StateFileError(
            f"Build state record {path} is not valid UTF-8: {e}",
            code="state_malformed",
        ) from e
    return parse_state_text(content)


def read_state_field(chroot_dir: Path, field: StateField) -> str | None:
    """Read one field of a chroot's state record.

    Args:
        chroot_dir: Chroot directory.
        field: Field to read.

    Returns:
        The stored value, or None when the record or field is absent.
    """
    fields = read_state_fields(chroot_dir)
    if fields is None:
        return None
    return fields.get(StateField(field).value)


def write_state_field(chroot_dir: Path, field: StateField, value: str) -> None:
    """Persist one field of a chroot's state record atomically.

    Creates a header-only record first when none exists. Writing the value
    already stored leaves the file untouched.

    Args:
        chroot_dir: Chroot directory.
        field: Field to write.
        value: Non-empty single-line value.

    Raises:
        ValueError: If value is empty or spans lines.
        StateFileError: If the existing record has a newer format.
    """
    field = StateField(field)
    value = str(value)
    if not value or "\n" in value or "\r" in value:
        raise ValueError(f"Invalid value for {field.value}: {value!r}")

    path = state_path(chroot_dir)
    fields = read_state_fields(chroot_dir)
    if fields is None:
        fields = {StateField.SCHEMA_VERSION.value: str(SUPPORTED_STATE_VERSION)}
        _atomic_write(path, render_state_text(fields))
        logger.debug("Created build state record at %s", path)

    version = fields.get(StateField.SCHEMA_VERSION.value, "0")
    if not version.isdigit() or int(version) > SUPPORTED_STATE_VERSION:
        raise StateFileError(
            f"Refusing to modify build state version {version} "
            f"(supported: {SUPPORTED_STATE_VERSION})",
            code="state_version_unsupported",
        )
    if field == StateField.SCHEMA_VERSION and value.isdigit() and int(value) < int(
        version
    ):
        raise StateFileError(
            f"Refusing to downgrade build state version {version} to {value}",
            code="state_version_downgrade",
        )

    if fields.get(field.value) == value:
        return

    fields[field.value] = value
    _atomic_write(path, render_state_text(fields))
    logger.debug("Build state %s=%s", field.value, value)


def load_state(chroot_dir: Path) -> BuildState | None:
    """Load a chroot's state record as a typed BuildState.

    Returns:
        BuildState, or None if no record exists.

    Raises:
        StateFileError: If the record is malformed.
    """
    fields = read_state_fields(chroot_dir)
    if fields is None:
        return None
    return BuildState.from_fields(fields)


def record_stage_complete(
    chroot_dir: Path,
    stage: Stage,
    when: datetime | None = None,
) -> str:
    """Record that a build stage completed.

    Args:
        chroot_dir: Chroot directory.
        stage: Completed stage.
        when: Completion time (default: now).

    Returns:
        The timestamp written.

    Raises:
        StateFileError: If the chroot stage is recorded before bootstrap.
    """
    stage = Stage(stage)
    if stage == Stage.CHROOT and (
        read_state_field(chroot_dir, StateField.STAGE_BOOTSTRAP) is None
    ):
        raise StateFileError(
            "Cannot record chroot stage before bootstrap stage",
            code="stage_order",
        )
    timestamp = format_timestamp(when)
    write_state_field(chroot_dir, stage.field, timestamp)
    logger.info("Recorded stage %s at %s", stage.value, timestamp)
    return timestamp


__all__ = [
    "STATE_FILENAME",
    "STATE_HEADER",
    "SUPPORTED_STATE_VERSION",
    "BuildState",
    "Stage",
    "StateField",
    "StateFileError",
    "describe_stage",
    "format_timestamp",
    "load_state",
    "parse_state_text",
    "read_state_field",
    "read_state_fields",
    "record_stage_complete",
    "render_state_text",
    "state_path",
    "write_state_field",
]
