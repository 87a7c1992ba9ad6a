"""Value objects passed between the scan, check and update phases of a run."""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List


@dataclass(frozen=True)
class CheckImage:
    """A local image eligible for an update check."""
    id: str
    original_name: str
    original_tag: str
    registry: str
    repository: str
    tag: str
    local_digest: str


@dataclass(frozen=True)
class UpdateImage:
    """An image queued for update.

    ``tag`` is the target tag; it differs from the current tag for
    version-based updates, in which case ``new_digest`` is empty.
    """
    id: str
    original_name: str
    original_tag: str
    tag: str
    local_digest: str
    new_digest: str = ''

    @property
    def is_version_update(self) -> bool:
        return not self.new_digest


@dataclass(frozen=True)
class ContainerInfo:
    """A container bound to an image being updated.

    ``create_spec`` is the engine's container-create body, copied from the
    inspect data with only ``Image`` rewritten to the new reference.
    """
    id: str
    name: str
    is_running: bool
    create_spec: Dict[str, Any] = field(hash=False, compare=False)
    dependencies: FrozenSet[str] = frozenset()
    project: str = ''


@dataclass(frozen=True)
class ContainerUpdateGroup:
    """All containers using one image, with the image's name and target tag."""
    image_id: str
    image_name: str
    new_tag: str
    containers: List[ContainerInfo] = field(default_factory=list, hash=False)

    @property
    def image_reference(self) -> str:
        return f"{self.image_name}:{self.new_tag}"
