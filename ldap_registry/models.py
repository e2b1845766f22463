"""
Records produced by the registry and the data-integrity policy applied while
producing them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

GROUP_PREFIX = 'GROUP_'


def group_authority(group_id: str) -> str:
    """Authority name of a group, e.g. ``GROUP_staff``."""
    return f"{GROUP_PREFIX}{group_id}"


@dataclass(frozen=True)
class EntityRecord:
    """
    A person or group read from the directory.

    ``properties`` maps canonical property names to string values.
    ``members`` holds resolved child references and is only populated for
    groups.
    """

    source_id: str
    last_modified: Optional[datetime] = None
    properties: Mapping[str, str] = field(default_factory=dict)
    members: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, 'properties', MappingProxyType(dict(self.properties)))
        object.__setattr__(self, 'members', frozenset(self.members))

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.properties.get(name, default)

    def merged_with(self, other: 'EntityRecord') -> 'EntityRecord':
        """
        Merge a duplicate definition into this one.

        Property values of ``other`` overwrite ours, member sets are united.
        The source DN and timestamp of ``other`` win when present.
        """
        properties = dict(self.properties)
        properties.update(other.properties)
        return EntityRecord(
            source_id=other.source_id or self.source_id,
            last_modified=other.last_modified or self.last_modified,
            properties=properties,
            members=self.members | other.members
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_id': self.source_id,
            'last_modified': self.last_modified.isoformat() if self.last_modified else None,
            'properties': dict(self.properties),
            'members': sorted(self.members)
        }


@dataclass(frozen=True)
class IntegrityPolicy:
    """Whether each kind of malformed data is fatal (True) or logged and skipped (False)."""

    error_on_missing_uid: bool = False
    error_on_missing_gid: bool = False
    error_on_missing_members: bool = False
    error_on_duplicate_gid: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'IntegrityPolicy':
        return cls(
            error_on_missing_uid=bool(config.get('error_on_missing_uid', False)),
            error_on_missing_gid=bool(config.get('error_on_missing_gid', False)),
            error_on_missing_members=bool(config.get('error_on_missing_members', False)),
            error_on_duplicate_gid=bool(config.get('error_on_duplicate_gid', False))
        )
