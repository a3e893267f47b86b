from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union


class LifecycleCode(IntEnum):
    """Sarcophagus states as stored on the ledger."""
    NON_EXISTENT = 0
    ACTIVE = 1
    FINALIZED = 2


def identifier_to_hex(identifier: bytes) -> str:
    return "0x" + identifier.hex()


def identifier_from_hex(value: str) -> bytes:
    """Parse a 0x-prefixed 32-byte hex identifier."""
    raw = value[2:] if value.startswith(("0x", "0X")) else value
    identifier = bytes.fromhex(raw)
    if len(identifier) != 32:
        raise ValueError(f"Obligation identifier must be 32 bytes, got {len(identifier)}")
    return identifier


@dataclass
class ObligationRecord:
    identifier: bytes
    state: LifecycleCode
    archaeologist: str
    resurrection_time: int
    resurrection_window: int
    asset_id: str = ""  # Empty until the embalmer uploads the payload
    storage_fee: int = 0

    @property
    def has_payload(self) -> bool:
        return self.asset_id != ""

    def window_elapsed(self, now: float) -> bool:
        return now >= self.resurrection_time + self.resurrection_window

    def is_assigned_to(self, agent_identity: str) -> bool:
        return self.archaeologist.lower() == agent_identity.lower()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObligationRecord":
        return cls(
            identifier=identifier_from_hex(data["identifier"]),
            state=LifecycleCode(int(data["state"])),
            archaeologist=data.get("archaeologist", ""),
            resurrection_time=int(data["resurrection_time"]),
            resurrection_window=int(data.get("resurrection_window", 0)),
            asset_id=data.get("asset_id") or "",
            storage_fee=int(data.get("storage_fee", 0)),
        )


@dataclass
class LifecycleEntry:
    resurrection_time: int
    key_index: Optional[int] = None  # Bound once, when the payload appears


@dataclass
class TimerRequest:
    """An obligation the scheduler must arm once the service starts."""
    identifier: bytes
    resurrection_time: int
    key_index: int
    asset_id: str


@dataclass
class ArmedTimer:
    identifier: bytes
    resurrection_time: int
    key_index: int
    asset_id: str
    generation: int
    handle: Any = None


@dataclass
class InitialState:
    """Result of replaying ledger history for one agent identity."""
    agent_identity: str
    lifecycle: Dict[bytes, LifecycleEntry] = field(default_factory=dict)
    pending_uploads: Dict[bytes, int] = field(default_factory=dict)
    next_key_index: int = 0
    timers: List[TimerRequest] = field(default_factory=list)
    orphaned: Dict[bytes, bool] = field(default_factory=dict)  # identifier -> had payload

    def bindings(self) -> Dict[bytes, int]:
        return {
            identifier: entry.key_index
            for identifier, entry in self.lifecycle.items()
            if entry.key_index is not None
        }

    def summary(self) -> dict:
        return {
            "agent_identity": self.agent_identity,
            "tracked": len(self.lifecycle),
            "armed": len(self.timers),
            "pending_uploads": sorted(identifier_to_hex(i) for i in self.pending_uploads),
            "orphaned": sorted(identifier_to_hex(i) for i in self.orphaned),
            "next_key_index": self.next_key_index,
        }


# ==================== Ledger Notifications ====================

@dataclass
class ObligationUpdated:
    identifier: bytes
    asset_id: str
    resurrection_time: int
    cursor: Optional[int] = None


@dataclass
class ObligationCreated:
    identifier: bytes
    archaeologist: str
    resurrection_time: int
    resurrection_window: int
    storage_fee: int = 0
    cursor: Optional[int] = None

    def window_elapsed(self, now: float) -> bool:
        return now >= self.resurrection_time + self.resurrection_window


@dataclass
class ObligationFinalized:
    identifier: bytes
    reason: str = "finalized"  # unwrapped, cancelled, accused, buried, ...
    cursor: Optional[int] = None


Notification = Union[ObligationUpdated, ObligationCreated, ObligationFinalized]


def notification_from_dict(data: Dict[str, Any]) -> Notification:
    """Build a notification from a ledger gateway event payload."""
    kind = data.get("type")
    identifier = identifier_from_hex(data["identifier"])
    cursor = data.get("seq")
    if kind == "updated":
        return ObligationUpdated(
            identifier=identifier,
            asset_id=data["asset_id"],
            resurrection_time=int(data["resurrection_time"]),
            cursor=cursor,
        )
    if kind == "created":
        return ObligationCreated(
            identifier=identifier,
            archaeologist=data["archaeologist"],
            resurrection_time=int(data["resurrection_time"]),
            resurrection_window=int(data.get("resurrection_window", 0)),
            storage_fee=int(data.get("storage_fee", 0)),
            cursor=cursor,
        )
    if kind == "finalized":
        return ObligationFinalized(
            identifier=identifier,
            reason=data.get("reason", "finalized"),
            cursor=cursor,
        )
    raise ValueError(f"Unknown notification type: {kind!r}")
