"""Constants shared across sandboxers and the OCI mount description."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

KUASAR_STATE_DIR = "/run/kuasar/state"

IO_FILE_PREFIX = "io"
STORAGE_FILE_PREFIX = "storage"
SHARED_DIR_SUFFIX = "shared"


@dataclass
class Mount:
    """A mount entry as found in an OCI runtime spec."""

    destination: str = ""
    type: str = ""
    source: str = ""
    options: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Mount":
        """Build a mount from its JSON form; absent keys take empty values."""
        return cls(
            destination=str(data.get("destination", "")),
            type=str(data.get("type", "")),
            source=str(data.get("source", "")),
            options=[str(o) for o in data.get("options") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of this mount."""
        return {
            "destination": self.destination,
            "type": self.type,
            "source": self.source,
            "options": list(self.options),
        }