from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol
import uuid

from pydantic import BaseModel, ConfigDict, Field
from supabase import AsyncClient

from app import settings
from app.services.errors import InvalidTransitionError, PersistenceError

ANALYSES_TABLE = "skin_analyses"

Severity = Literal["low", "moderate", "high"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisStatus(str, Enum):
    UPLOADING = "uploading"
    SCREENING = "screening"
    DETECTING = "detecting"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (AnalysisStatus.COMPLETE, AnalysisStatus.ERROR)


_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.UPLOADING: frozenset({AnalysisStatus.SCREENING, AnalysisStatus.ERROR}),
    AnalysisStatus.SCREENING: frozenset({AnalysisStatus.DETECTING, AnalysisStatus.ERROR}),
    AnalysisStatus.DETECTING: frozenset({AnalysisStatus.GENERATING, AnalysisStatus.ERROR}),
    AnalysisStatus.GENERATING: frozenset({AnalysisStatus.COMPLETE, AnalysisStatus.ERROR}),
    AnalysisStatus.COMPLETE: frozenset(),
    AnalysisStatus.ERROR: frozenset(),
}


def can_transition(current: AnalysisStatus, target: AnalysisStatus) -> bool:
    return target in _TRANSITIONS[current]


class SkinTrait(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    severity: Severity
    description: str = Field(min_length=1)


class AnalysisRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    status: AnalysisStatus = AnalysisStatus.UPLOADING
    detected_traits: list[SkinTrait] = Field(default_factory=list)
    confidence_score: Optional[float] = None
    image_ids: list[str] = Field(default_factory=list)
    error_reason: Optional[str] = None
    skin_type: Optional[str] = None
    primary_concern: Optional[str] = None
    notes: Optional[list[str]] = None
    model_version: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def transition(self, target: AnalysisStatus, *, now: Optional[datetime] = None) -> None:
        # Terminal states have no outgoing edges, so completed_at is stamped once.
        if not can_transition(self.status, target):
            raise InvalidTransitionError(f"illegal transition {self.status.value} -> {target.value}")
        self.status = target
        if target.is_terminal:
            self.completed_at = now or _utcnow()


class AnalysisStore(Protocol):
    async def create(self, owner_id: str) -> AnalysisRecord: ...

    async def save(self, record: AnalysisRecord) -> None: ...

    async def get(self, owner_id: str, analysis_id: str) -> Optional[AnalysisRecord]: ...

    async def latest_completed(self, owner_id: str) -> Optional[AnalysisRecord]: ...


class InMemoryAnalysisStore(AnalysisStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._items: dict[str, AnalysisRecord] = {}

    async def create(self, owner_id: str) -> AnalysisRecord:
        record = AnalysisRecord(owner_id=owner_id)
        async with self._lock:
            self._items[record.id] = record.model_copy(deep=True)
        return record

    async def save(self, record: AnalysisRecord) -> None:
        async with self._lock:
            existing = self._items.get(record.id)
            if existing is None or existing.owner_id != record.owner_id:
                raise PersistenceError(f"analysis {record.id} not found")
            self._items[record.id] = record.model_copy(deep=True)

    async def get(self, owner_id: str, analysis_id: str) -> Optional[AnalysisRecord]:
        async with self._lock:
            record = self._items.get(analysis_id)
            if record is None or record.owner_id != owner_id:
                return None
            return record.model_copy(deep=True)

    async def latest_completed(self, owner_id: str) -> Optional[AnalysisRecord]:
        async with self._lock:
            done = [
                r
                for r in self._items.values()
                if r.owner_id == owner_id and r.status == AnalysisStatus.COMPLETE and r.completed_at is not None
            ]
            if not done:
                return None
            latest = max(done, key=lambda r: r.completed_at)
            return latest.model_copy(deep=True)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# Columns added by migrations/001_skin_analyses_result_fields.sql.
EXTENDED_COLUMNS = ("skin_type", "primary_concern", "notes", "model_version")


def _record_to_row(record: AnalysisRecord, *, extended: bool = False) -> dict[str, Any]:
    row: dict[str, Any] = {
        "status": record.status.value,
        "detected_traits": [t.model_dump() for t in record.detected_traits],
        "confidence_score": record.confidence_score,
        "image_ids": list(record.image_ids),
        "error_message": record.error_reason,
        "completed_at": _iso(record.completed_at),
    }
    if extended:
        for column in EXTENDED_COLUMNS:
            row[column] = getattr(record, column)
    return row


def _row_to_record(row: dict[str, Any]) -> AnalysisRecord:
    data = dict(row)
    data["owner_id"] = data.pop("user_id", None)
    data["error_reason"] = data.pop("error_message", None)
    data["detected_traits"] = data.get("detected_traits") or []
    data["image_ids"] = data.get("image_ids") or []
    try:
        return AnalysisRecord.model_validate(data)
    except Exception as exc:
        raise PersistenceError(f"unreadable analysis row id={row.get('id')}: {exc}") from exc


class SupabaseAnalysisStore(AnalysisStore):
    def __init__(
        self,
        *,
        client_provider: Callable[[], Awaitable[AsyncClient]],
        table: str = ANALYSES_TABLE,
        extended_columns: bool = settings.ANALYSES_EXTENDED_COLUMNS,
    ) -> None:
        self._client_provider = client_provider
        self._table = table
        self._extended_columns = extended_columns

    async def _query(self):
        client = await self._client_provider()
        return client.table(self._table)

    async def create(self, owner_id: str) -> AnalysisRecord:
        record = AnalysisRecord(owner_id=owner_id)
        row = {
            "id": record.id,
            "user_id": owner_id,
            "created_at": _iso(record.created_at),
            **_record_to_row(record, extended=self._extended_columns),
        }
        try:
            res = await (await self._query()).insert(row).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to create analysis record: {exc}") from exc
        if not res.data:
            raise PersistenceError("Failed to create analysis record: no row returned")
        return record

    async def save(self, record: AnalysisRecord) -> None:
        try:
            res = await (
                (await self._query())
                .update(_record_to_row(record, extended=self._extended_columns))
                .eq("id", record.id)
                .eq("user_id", record.owner_id)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to update analysis {record.id}: {exc}") from exc
        if not res.data:
            raise PersistenceError(f"Failed to update analysis {record.id}: no row matched")

    async def get(self, owner_id: str, analysis_id: str) -> Optional[AnalysisRecord]:
        try:
            res = await (
                (await self._query())
                .select("*")
                .eq("id", analysis_id)
                .eq("user_id", owner_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch analysis {analysis_id}: {exc}") from exc
        rows = res.data or []
        return _row_to_record(rows[0]) if rows else None

    async def latest_completed(self, owner_id: str) -> Optional[AnalysisRecord]:
        try:
            res = await (
                (await self._query())
                .select("*")
                .eq("user_id", owner_id)
                .eq("status", AnalysisStatus.COMPLETE.value)
                .order("completed_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch latest analysis: {exc}") from exc
        rows = res.data or []
        if not rows:
            return None
        return _row_to_record(rows[0])
