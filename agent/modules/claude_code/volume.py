"""Per-user persistent volumes for authentication state."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import docker
import structlog

from modules.claude_code.engine import engine_call
from modules.claude_code.errors import EngineError, InvalidName, NotFound

logger = structlog.get_logger()

VOLUME_PREFIX = "dev-session-claude-"
VOLUME_MOUNT_TARGET = "/volume_data"
MAX_NAME_LENGTH = 200

_VOLUME_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass
class MountSpec:
    """A volume mount for a session container."""

    source: str
    target: str
    read_only: bool = False
    type: str = "volume"

    def to_docker(self) -> docker.types.Mount:
        return docker.types.Mount(
            target=self.target,
            source=self.source,
            type=self.type,
            read_only=self.read_only,
        )


@dataclass
class VolumeRef:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    created: bool = False


def generate_volume_name(user_id: int, prefix: str = VOLUME_PREFIX) -> str:
    """Return the volume name holding ``user_id``'s credentials."""
    return f"{prefix}{user_id}"


def validate_volume_key(name: str) -> None:
    """Reject names that are not safe to hand to the engine.

    Raises:
        InvalidName: If the name is empty, too long, or contains characters
            outside ``[A-Za-z0-9_.-]``
    """
    if not name:
        raise InvalidName("Name must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidName(f"Name exceeds {MAX_NAME_LENGTH} characters")
    if ".." in name or not _VOLUME_KEY_PATTERN.match(name):
        raise InvalidName(f"Invalid name: {name!r}")


class VolumeManager:
    """Creates and mounts the per-user authentication volume."""

    def __init__(self, client: docker.DockerClient, prefix: str = VOLUME_PREFIX):
        self.client = client
        self.prefix = prefix

    def volume_name(self, user_id: int) -> str:
        return generate_volume_name(user_id, self.prefix)

    async def ensure_user_volume(self, user_id: int) -> VolumeRef:
        """Return the user's volume, creating it if it does not exist yet.

        Safe to call concurrently: a create that loses the race to another
        caller is resolved by inspecting the volume the winner created.
        """
        name = self.volume_name(user_id)
        validate_volume_key(name)

        try:
            volume = await engine_call(self.client.volumes.get, name)
            logger.debug("volume_exists", volume=name)
            return VolumeRef(name=name, labels=_labels_of(volume))
        except NotFound:
            pass

        labels = {
            "created_by": "telegram-claude-code",
            "volume_key": str(user_id),
            "purpose": "authentication_persistence",
        }
        try:
            volume = await engine_call(
                self.client.volumes.create,
                name=name,
                driver="local",
                labels=labels,
            )
        except EngineError as e:
            if e.status_code != 409:
                logger.error("volume_create_failed", volume=name, error=str(e))
                raise
            volume = await engine_call(self.client.volumes.get, name)
            return VolumeRef(name=name, labels=_labels_of(volume))

        logger.info("volume_created", volume=name, user_id=user_id)
        return VolumeRef(name=name, labels=_labels_of(volume) or labels, created=True)

    def create_auth_mounts(self, user_id: int) -> list[MountSpec]:
        """Mount the user's volume read-write at ``/volume_data``."""
        name = self.volume_name(user_id)
        validate_volume_key(name)
        return [MountSpec(source=name, target=VOLUME_MOUNT_TARGET)]


def _labels_of(volume) -> dict[str, str]:
    attrs = getattr(volume, "attrs", None) or {}
    labels = attrs.get("Labels") if isinstance(attrs, dict) else None
    return dict(labels) if isinstance(labels, dict) else {}
