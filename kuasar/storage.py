"""Storage records shared between host and guest, with per-container references."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from kuasar.common import Mount

ANNOTATION_KEY_STORAGE = "io.kuasar.storages"

DRIVER9PTYPE = "9p"
DRIVERVIRTIOFSTYPE = "virtio-fs"
DRIVERBLKTYPE = "blk"
DRIVERMMIOBLKTYPE = "mmioblk"
DRIVERSCSITYPE = "scsi"
DRIVERNVDIMMTYPE = "nvdimm"
DRIVEREPHEMERALTYPE = "ephemeral"
DRIVERLOCALTYPE = "local"

_REQUIRED_KEYS = (
    "host_source",
    "type",
    "id",
    "ref_container",
    "need_guest_handle",
    "source",
    "driver",
    "driver_options",
    "fstype",
    "options",
    "mount_point",
)


@dataclass
class Storage:
    """A storage attached to a sandbox and referenced by containers."""

    host_source: str = ""
    type: str = ""
    id: str = ""
    device_id: Optional[str] = None
    ref_container: dict[str, int] = field(default_factory=dict)
    need_guest_handle: bool = False
    source: str = ""
    driver: str = ""
    driver_options: list[str] = field(default_factory=list)
    fstype: str = ""
    options: list[str] = field(default_factory=list)
    mount_point: str = ""

    def is_for_mount(self, m: Mount) -> bool:
        """Tell whether this storage backs the given mount."""
        return self.host_source == m.source and self.type == m.type

    def ref_count(self) -> int:
        """Total number of references over all containers."""
        return sum(self.ref_container.values())

    def refer(self, container_id: str) -> None:
        """Add one reference from ``container_id``."""
        self.ref_container[container_id] = self.ref_container.get(container_id, 0) + 1

    def defer(self, container_id: str) -> None:
        """Drop all references from ``container_id``."""
        self.ref_container.pop(container_id, None)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of this storage."""
        return {
            "host_source": self.host_source,
            "type": self.type,
            "id": self.id,
            "device_id": self.device_id,
            "ref_container": dict(self.ref_container),
            "need_guest_handle": self.need_guest_handle,
            "source": self.source,
            "driver": self.driver,
            "driver_options": list(self.driver_options),
            "fstype": self.fstype,
            "options": list(self.options),
            "mount_point": self.mount_point,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Storage":
        """Build a storage from its JSON form; only ``device_id`` may be absent."""
        for key in _REQUIRED_KEYS:
            if key not in data:
                raise ValueError(f"missing field `{key}`")
        device_id = data.get("device_id")
        return cls(
            host_source=str(data["host_source"]),
            type=str(data["type"]),
            id=str(data["id"]),
            device_id=None if device_id is None else str(device_id),
            ref_container={str(k): int(v) for k, v in data["ref_container"].items()},
            need_guest_handle=bool(data["need_guest_handle"]),
            source=str(data["source"]),
            driver=str(data["driver"]),
            driver_options=[str(o) for o in data["driver_options"]],
            fstype=str(data["fstype"]),
            options=[str(o) for o in data["options"]],
            mount_point=str(data["mount_point"]),
        )