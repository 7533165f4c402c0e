from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Literal

# Fields whose change justifies a write to an already-stored record.
CRITICAL_FIELDS = (
    "title",
    "minimum_award",
    "maximum_award",
    "total_funding_available",
    "close_date",
    "open_date",
)
AMOUNT_FIELDS = frozenset({"minimum_award", "maximum_award", "total_funding_available"})
DATE_FIELDS = frozenset({"open_date", "close_date"})

_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "external_id": ("external_id", "externalId", "api_opportunity_id", "id"),
    "title": ("title",),
    "minimum_award": ("minimum_award", "minimumAward"),
    "maximum_award": ("maximum_award", "maximumAward"),
    "total_funding_available": ("total_funding_available", "totalFundingAvailable"),
    "open_date": ("open_date", "openDate"),
    "close_date": ("close_date", "closeDate"),
    "status": ("status",),
    "source_id": ("source_id", "sourceId"),
    "api_updated_at": ("api_updated_at", "apiUpdatedAt"),
}

DetectionMethod = Literal["id_validation", "title_only", "no_match"]


class ClassificationAction(str, Enum):
    NEW = "new"
    UPDATE = "update"
    SKIP = "skip"


@dataclass(slots=True, frozen=True)
class Record:
    """One extracted record as produced by the source extractor."""

    external_id: str | None
    title: str | None
    minimum_award: float | None = None
    maximum_award: float | None = None
    total_funding_available: float | None = None
    open_date: date | None = None
    close_date: date | None = None
    status: str | None = None
    source_id: str | None = None
    api_updated_at: datetime | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, source_id: str | None = None) -> Record:
        used: set[str] = set()

        def pick(name: str) -> Any:
            for key in _FIELD_KEYS[name]:
                if key in payload:
                    used.add(key)
                    return payload[key]
            return None

        external_id = parse_text(pick("external_id"))
        record = cls(
            external_id=external_id,
            title=parse_text(pick("title")),
            minimum_award=parse_amount(pick("minimum_award")),
            maximum_award=parse_amount(pick("maximum_award")),
            total_funding_available=parse_amount(pick("total_funding_available")),
            open_date=parse_date(pick("open_date")),
            close_date=parse_date(pick("close_date")),
            status=parse_text(pick("status")),
            source_id=parse_text(pick("source_id")) or source_id,
            api_updated_at=parse_timestamp(pick("api_updated_at")),
            payload={key: value for key, value in payload.items() if key not in used},
        )
        return record

    def critical_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CRITICAL_FIELDS}

    def to_payload(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.payload)
        data.update(
            {
                "external_id": self.external_id,
                "title": self.title,
                "minimum_award": self.minimum_award,
                "maximum_award": self.maximum_award,
                "total_funding_available": self.total_funding_available,
                "open_date": self.open_date.isoformat() if self.open_date else None,
                "close_date": self.close_date.isoformat() if self.close_date else None,
                "status": self.status,
                "source_id": self.source_id,
                "api_updated_at": self.api_updated_at.isoformat() if self.api_updated_at else None,
            }
        )
        return data


@dataclass(slots=True, frozen=True)
class ExistingRecord:
    """Stored counterpart of a record, as returned by the batch lookups."""

    id: str
    external_id: str | None
    title: str | None
    minimum_award: float | None = None
    maximum_award: float | None = None
    total_funding_available: float | None = None
    open_date: date | None = None
    close_date: date | None = None
    status: str | None = None
    api_updated_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ExistingRecord:
        return cls(
            id=str(row["id"]),
            external_id=parse_text(row.get("external_id")),
            title=parse_text(row.get("title")),
            minimum_award=parse_amount(row.get("minimum_award")),
            maximum_award=parse_amount(row.get("maximum_award")),
            total_funding_available=parse_amount(row.get("total_funding_available")),
            open_date=parse_date(row.get("open_date")),
            close_date=parse_date(row.get("close_date")),
            status=parse_text(row.get("status")),
            api_updated_at=parse_timestamp(row.get("api_updated_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def critical_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CRITICAL_FIELDS}


@dataclass(slots=True)
class Classification:
    action: ClassificationAction
    reason: str
    record: Record
    existing: ExistingRecord | None = None
    method: DetectionMethod = "no_match"
    changed_fields: tuple[str, ...] = ()

    def summary(self) -> dict[str, Any]:
        return {
            "external_id": self.record.external_id,
            "title": self.record.title,
            "action": self.action.value,
            "reason": self.reason,
            "method": self.method,
            "existing_id": self.existing.id if self.existing else None,
            "changed_fields": list(self.changed_fields),
        }


def parse_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def parse_amount(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").strip()
        if not value:
            return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            parsed = parse_timestamp(raw)
            return parsed.date() if parsed else None
    return None
