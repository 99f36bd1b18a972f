"""
Data models for the MT5 fleet manager.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class EventType(Enum):
    ALLOCATED = "ALLOCATED"
    REUSED = "REUSED"
    ALLOCATION_FAILED = "ALLOCATION_FAILED"
    CAPACITY_REJECTED = "CAPACITY_REJECTED"
    RECLAIMED = "RECLAIMED"
    RECLAIM_FAILED = "RECLAIM_FAILED"
    RECONCILED_FREE = "RECONCILED_FREE"
    ORPHAN_RECLAIMED = "ORPHAN_RECLAIMED"


@dataclass
class Credentials:
    """Broker login for one MT5 terminal."""
    login: str
    password: str = field(repr=False)
    server: str


@dataclass
class SessionRecord:
    """Who occupies a slot and what they trade."""
    owner_id: str
    symbol: str
    timeframe: str
    last_active_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.owner_id,
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "lastActive": self.last_active_at.isoformat(),
        }


@dataclass
class ConnectRequest:
    owner_id: str
    credentials: Credentials
    symbol: str
    timeframe: str


@dataclass
class ConnectResult:
    success: bool
    message: str
    slot_id: Optional[int] = None
    symbol: Optional[str] = None
    timeframe: Optional[str] = None
    is_at_capacity: bool = False
    active_count: Optional[int] = None
    is_invalid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "message": self.message,
                "instanceId": self.slot_id,
                "tradingSymbol": self.symbol,
                "timeframe": self.timeframe,
            }
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.is_at_capacity:
            body["isFull"] = True
            body["activeUsers"] = self.active_count
        return body


@dataclass
class DisconnectRequest:
    owner_id: str
    slot_id: int
    symbol: str = "unknown"
    timeframe: str = "unknown"


@dataclass
class DisconnectResult:
    success: bool
    message: str
    is_invalid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}


@dataclass
class CommandOutput:
    """Captured result of one remote command."""
    stdout: str
    stderr: str
    exit_status: Optional[int] = None


@dataclass
class SessionEvent:
    """Journal entry for a slot lifecycle change."""
    event: EventType
    slot_id: Optional[int] = None
    owner_id: Optional[str] = None
    symbol: Optional[str] = None
    timeframe: Optional[str] = None
    detail: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""
    live: List[int] = field(default_factory=list)
    freed: List[int] = field(default_factory=list)
    orphans: List[int] = field(default_factory=list)
    reclaimed: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.freed or self.reclaimed)
