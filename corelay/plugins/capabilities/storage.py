"""Plugin storage - YAML-based storage for plugin registration metadata.

Only id, name, description and the enabled flag are written. Plugin code
stays in memory and is gone after a restart.
"""

import secrets
import string
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import yaml

BASE36 = string.digits + string.ascii_lowercase


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_id(suffix_length: int = 8) -> str:
    """Generate an opaque registration id: base36 timestamp + random suffix."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(BASE36) for _ in range(suffix_length))
    return stamp + suffix


@dataclass
class PluginRegistration:
    """Operator-supplied plugin code and its metadata."""

    id: str
    name: str
    description: str = ""
    code: str = ""
    enabled: bool = False
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def has_code(self) -> bool:
        return bool(self.code and self.code.strip())

    def metadata(self) -> dict:
        """Persisted fields."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "created_at": self.created_at,
        }

    def to_dict(self, include_code: bool = False) -> dict:
        data = self.metadata()
        data["has_code"] = self.has_code
        if include_code:
            data["code"] = self.code
        return data


class PluginStore:
    """YAML-based storage for plugin registrations."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[PluginRegistration]:
        """Load registrations from disk.

        Code is not persisted, so every loaded registration comes back
        disabled with empty code.
        """
        if not self._path.exists():
            return []

        try:
            with open(self._path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            print(f"[Capabilities] Cannot read {self._path}: {e}", file=sys.stderr)
            return []

        registrations = []
        for item in data.get("plugins", []) or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            registrations.append(
                PluginRegistration(
                    id=str(item["id"]),
                    name=item.get("name", ""),
                    description=item.get("description", ""),
                    created_at=item.get("created_at")
                    or datetime.now(timezone.utc).isoformat(),
                )
            )
        return registrations

    def save(self, registrations: list[PluginRegistration]) -> None:
        """Write registration metadata to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)

        data = {"plugins": [r.metadata() for r in registrations]}

        with open(self._path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
