"""Status records for replication slots, health checks and the coordinator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

INVALID_LSNS = frozenset({"", "0/0", "N/A"})


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def lsn_is_valid(lsn: str | None) -> bool:
    return lsn is not None and lsn.upper() not in INVALID_LSNS


def lsn_to_int(lsn: str) -> int:
    """Convert an ``X/Y`` LSN into its 64-bit integer value."""
    high, _, low = lsn.partition("/")
    return (int(high, 16) << 32) | int(low, 16)


def int_to_lsn(value: int) -> str:
    return f"{value >> 32:X}/{value & 0xFFFFFFFF:X}"


@dataclass(frozen=True, slots=True)
class ReplicationSlotStatus:
    slot_name: str
    is_active: bool
    restart_lsn: str | None
    confirmed_flush_lsn: str | None
    slot_type: str = "logical"
    database: str | None = None
    plugin: str | None = None
    is_temporary: bool = False
    active_pid: int | None = None
    wal_status: str | None = None
    lag_bytes: int = 0
    checked_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ReplicationSlotStatus:
        return cls(
            slot_name=str(row["slot_name"]),
            is_active=bool(row.get("active")),
            restart_lsn=row.get("restart_lsn"),
            confirmed_flush_lsn=row.get("confirmed_flush_lsn"),
            slot_type=str(row.get("slot_type") or "logical"),
            database=row.get("database"),
            plugin=row.get("plugin"),
            is_temporary=bool(row.get("temporary")),
            active_pid=row.get("active_pid"),
            wal_status=row.get("wal_status"),
            lag_bytes=int(row.get("lag_bytes") or 0),
        )

    @property
    def has_confirmed_position(self) -> bool:
        return lsn_is_valid(self.confirmed_flush_lsn)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat()
        return data


class DiagnosisVerdict(StrEnum):
    AWAITING_RECONNECT = "awaiting_reconnect"
    MISCONFIGURED = "misconfigured"


@dataclass(frozen=True, slots=True)
class SlotDiagnosis:
    """Outcome of inspecting an inactive slot."""

    verdict: DiagnosisVerdict
    reasons: tuple[str, ...] = ()
    holder_pid: int | None = None
    walsenders: int = 0
    settings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ReplicationHealthStatus:
    is_healthy: bool
    slot_status: ReplicationSlotStatus | None
    lag_ms: float
    issues: tuple[str, ...]
    last_checked: datetime
    diagnosis: SlotDiagnosis | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self.is_healthy else "error",
            "lag_ms": round(self.lag_ms, 2),
            "issues": list(self.issues),
            "last_checked": self.last_checked.isoformat(),
            "slot": self.slot_status.to_dict() if self.slot_status else None,
            "diagnosis": (
                {
                    "verdict": self.diagnosis.verdict.value,
                    "reasons": list(self.diagnosis.reasons),
                }
                if self.diagnosis
                else None
            ),
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True, slots=True)
class AdminResult:
    """Result of an administrative slot or publication operation."""

    success: bool
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    details: dict[str, Any] = field(default_factory=dict)


class CoordinatorState(StrEnum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    MONITORING = "monitoring"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class CoordinatorStatus:
    state: CoordinatorState
    is_running: bool
    start_time: datetime | None
    messages_replicated: int
    error_count: int
    consecutive_errors: int
    last_error: str | None
    subscription_state: dict[str, Any] | None = None
    lag_bytes: int | None = None

    @property
    def uptime_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return (utcnow() - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        failed = self.state == CoordinatorState.STOPPED and self.last_error is not None
        return {
            "status": "error" if failed else self.state.value,
            "is_running": self.is_running,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "messages_replicated": self.messages_replicated,
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "subscription": self.subscription_state,
            "lag_bytes": self.lag_bytes,
        }
