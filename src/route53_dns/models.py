"""Hosted zone, record set and change batch models.

These mirror the shapes of the Route53 API closely enough to convert in both
directions with ``from_api`` / ``to_api``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

RECORD_TTL = 300
MAX_CHANGES_PER_BATCH = 1000

# Route53 returns "*" in record names as an octal escape.
WILDCARD_ESCAPE = "\\052"


class ChangeAction(str, Enum):
    UPSERT = "UPSERT"
    DELETE = "DELETE"


class RecordType(str, Enum):
    A = "A"
    CNAME = "CNAME"
    NS = "NS"
    SOA = "SOA"


def fqdn(name: str) -> str:
    """Return ``name`` with exactly one trailing dot."""
    return name.rstrip(".") + "."


def normalize_record_name(name: str) -> str:
    return fqdn(name.replace(WILDCARD_ESCAPE, "*")).lower()


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class HostedZone:
    """A Route53 hosted zone."""

    id: str
    name: str
    comment: str = ""
    record_count: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "HostedZone":
        config = data.get("Config") or {}
        return cls(
            id=str(data["Id"]),
            name=fqdn(str(data["Name"])),
            comment=str(config.get("Comment") or ""),
            record_count=int(data.get("ResourceRecordSetCount") or 0),
        )


@dataclass(frozen=True)
class ResourceRecordSet:
    """One record set (name + type) with its ordered values."""

    name: str
    type: str
    values: Tuple[str, ...] = ()
    ttl: int = RECORD_TTL
    alias_target: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ResourceRecordSet":
        return cls(
            name=normalize_record_name(str(data["Name"])),
            type=str(data["Type"]),
            values=tuple(str(r["Value"]) for r in data.get("ResourceRecords") or []),
            ttl=int(data.get("TTL") or 0),
            alias_target=data.get("AliasTarget"),
        )

    def to_api(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"Name": self.name, "Type": self.type}
        if self.alias_target is not None:
            data["AliasTarget"] = self.alias_target
            return data
        data["TTL"] = self.ttl
        data["ResourceRecords"] = [{"Value": value} for value in self.values]
        return data

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.type)

    @property
    def is_alias(self) -> bool:
        return self.alias_target is not None


@dataclass(frozen=True)
class Change:
    action: ChangeAction
    record_set: ResourceRecordSet

    def to_api(self) -> Dict[str, Any]:
        return {"Action": self.action.value, "ResourceRecordSet": self.record_set.to_api()}


@dataclass
class ChangeBatch:
    """Ordered changes submitted atomically against a single hosted zone."""

    zone_id: str
    changes: List[Change] = field(default_factory=list)
    comment: str = ""

    def add(self, action: ChangeAction, record_set: ResourceRecordSet) -> None:
        self.changes.append(Change(action=action, record_set=record_set))

    def upsert(self, record_set: ResourceRecordSet) -> None:
        self.add(ChangeAction.UPSERT, record_set)

    def delete(self, record_set: ResourceRecordSet) -> None:
        self.add(ChangeAction.DELETE, record_set)

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self) -> Iterator[Change]:
        return iter(self.changes)

    def to_api(self) -> Dict[str, Any]:
        batch: Dict[str, Any] = {"Changes": [change.to_api() for change in self.changes]}
        if self.comment:
            batch["Comment"] = self.comment
        return batch

    def fingerprint(self) -> bytes:
        """Stable serialization used to detect unchanged batches."""
        payload = {"HostedZoneId": self.zone_id, "ChangeBatch": self.to_api()}
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def split(self, size: int = MAX_CHANGES_PER_BATCH) -> List["ChangeBatch"]:
        """Split into batches no larger than ``size`` changes, same zone."""
        return [
            ChangeBatch(self.zone_id, self.changes[i : i + size], self.comment)
            for i in range(0, len(self.changes), size)
        ]


# =============================================================================
# Cache Encoding
# =============================================================================


def encode_record_sets(record_sets: Sequence[ResourceRecordSet]) -> bytes:
    return json.dumps([rs.to_api() for rs in record_sets], sort_keys=True).encode("utf-8")


def decode_record_sets(data: bytes) -> List[ResourceRecordSet]:
    return [ResourceRecordSet.from_api(item) for item in json.loads(data.decode("utf-8"))]


def encode_values(values: Sequence[str]) -> bytes:
    return json.dumps(list(values)).encode("utf-8")


def decode_values(data: bytes) -> List[str]:
    return [str(v) for v in json.loads(data.decode("utf-8"))]
