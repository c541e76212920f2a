"""Data models used throughout registry_hub.

``CompanyRecord`` is the reconciled view of one legal entity.  Each source
client produces records in this shape; the aggregator merges them into an
``AggregatedResult``.  A record always carries a normalized 9-digit
registry identifier: anything without one is dropped at construction time
by ``CompanyRecord.build`` and never reaches the merge step.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from registry_hub.core.errors import ErrorInfo

logger = logging.getLogger(__name__)

_REGISTRY_ID_RE = re.compile(r"^\d{9}$")
_ESTABLISHMENT_ID_RE = re.compile(r"^\d{14}$")
_WHITESPACE_RE = re.compile(r"\s+")


def _strip_spaces(value: Any) -> str:
    return _WHITESPACE_RE.sub("", str(value))


def normalize_registry_id(value: Any) -> Optional[str]:
    """Return the 9-digit registry identifier or ``None``.

    Whitespace (including non-breaking spaces used in printed identifiers
    such as ``"552 032 534"``) is removed before validation.
    """
    if value is None:
        return None
    candidate = _strip_spaces(value)
    if _REGISTRY_ID_RE.match(candidate):
        return candidate
    return None


def normalize_establishment_id(value: Any) -> Optional[str]:
    """Return the 14-digit establishment identifier or ``None``."""
    if value is None:
        return None
    candidate = _strip_spaces(value)
    if _ESTABLISHMENT_ID_RE.match(candidate):
        return candidate
    return None


def registry_id_from_establishment(value: Any) -> Optional[str]:
    """Derive the registry identifier from an establishment identifier."""
    establishment_id = normalize_establishment_id(value)
    if establishment_id is None:
        return None
    return establishment_id[:9]


def parse_date(value: Any) -> Optional[date]:
    """Parse ``YYYY-MM-DD`` or an ISO timestamp into a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        logger.debug("Unparseable date value: %r", value)
        return None


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a monetary amount, accepting French decimal commas."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if not isinstance(value, str):
        logger.debug("Unparseable amount: %r", value)
        return None
    text = _strip_spaces(value).replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation:
        logger.debug("Unparseable amount: %r", value)
        return None


class SourceStatus(str, Enum):
    """Outcome of one source call."""

    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class Capital:
    """Share capital: decimal amount plus ISO currency code."""

    amount: Decimal
    currency: str = "EUR"

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": str(self.amount), "currency": self.currency}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Capital":
        return cls(amount=Decimal(str(data["amount"])), currency=data.get("currency", "EUR"))

    @classmethod
    def parse(cls, amount: Any, currency: Any = None) -> Optional["Capital"]:
        value = parse_decimal(amount)
        if value is None:
            return None
        code = currency.strip().upper() if isinstance(currency, str) else ""
        return cls(amount=value, currency=code or "EUR")


@dataclass
class Establishment:
    """One physical location of a legal entity."""

    establishment_id: str
    address: Optional[str] = None
    active: Optional[bool] = None
    headquarters: bool = False
    creation_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "establishment_id": self.establishment_id,
            "address": self.address,
            "active": self.active,
            "headquarters": self.headquarters,
            "creation_date": self.creation_date.isoformat() if self.creation_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Establishment":
        return cls(
            establishment_id=data["establishment_id"],
            address=data.get("address"),
            active=data.get("active"),
            headquarters=bool(data.get("headquarters", False)),
            creation_date=parse_date(data.get("creation_date")),
        )


@dataclass
class Announcement:
    """A legal announcement published in the bulletin."""

    announcement_id: str
    published_on: Optional[date] = None
    kind: Optional[str] = None
    court: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "announcement_id": self.announcement_id,
            "published_on": self.published_on.isoformat() if self.published_on else None,
            "kind": self.kind,
            "court": self.court,
            "description": self.description,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Announcement":
        return cls(
            announcement_id=data["announcement_id"],
            published_on=parse_date(data.get("published_on")),
            kind=data.get("kind"),
            court=data.get("court"),
            description=data.get("description"),
            url=data.get("url"),
        )


@dataclass
class Document:
    """A document deposited with the companies registry."""

    reference: str
    deposited_on: Optional[date] = None
    kind: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "deposited_on": self.deposited_on.isoformat() if self.deposited_on else None,
            "kind": self.kind,
            "description": self.description,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            reference=data["reference"],
            deposited_on=parse_date(data.get("deposited_on")),
            kind=data.get("kind"),
            description=data.get("description"),
            url=data.get("url"),
        )


# Fields that take part in the field-level union performed by the merge.
MERGEABLE_FIELDS: Tuple[str, ...] = (
    "establishment_id",
    "legal_name",
    "legal_form",
    "activity_code",
    "activity_label",
    "registered_address",
    "creation_date",
    "active",
    "capital",
    "headcount_band",
    "acronym",
    "establishments",
    "announcements",
    "documents",
)


def is_present(value: Any) -> bool:
    """Whether a field value counts as present for merging."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


@dataclass
class CompanyRecord:
    """Reconciled view of one legal entity.

    Attributes
    ----------
    registry_id: str
        Normalized 9-digit national identifier, the unique key.
    establishment_id: Optional[str]
        14-digit identifier of the establishment the record was built from
        (usually the headquarters).
    source_breakdown: Dict[str, List[str]]
        For each contributing source, the fields it supplied.
    last_updated: datetime
        When the record was produced.
    """

    registry_id: str
    legal_name: Optional[str] = None
    establishment_id: Optional[str] = None
    legal_form: Optional[str] = None
    activity_code: Optional[str] = None
    activity_label: Optional[str] = None
    registered_address: Optional[str] = None
    creation_date: Optional[date] = None
    active: Optional[bool] = None
    capital: Optional[Capital] = None
    headcount_band: Optional[str] = None
    acronym: Optional[str] = None
    establishments: List[Establishment] = field(default_factory=list)
    announcements: List[Announcement] = field(default_factory=list)
    documents: List[Document] = field(default_factory=list)
    source_breakdown: Dict[str, List[str]] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        registry_id = normalize_registry_id(self.registry_id)
        if registry_id is None:
            raise ValueError(f"invalid registry identifier: {self.registry_id!r}")
        self.registry_id = registry_id

        if self.establishment_id is not None:
            self.establishment_id = normalize_establishment_id(self.establishment_id)

        for name in ("legal_name", "legal_form", "activity_code", "activity_label",
                     "registered_address", "headcount_band", "acronym"):
            value = getattr(self, name)
            if value is not None:
                value = " ".join(str(value).split())
                setattr(self, name, value or None)

    @classmethod
    def build(cls, source: str, registry_id: Any, **values: Any) -> Optional["CompanyRecord"]:
        """Build a record attributed to ``source``.

        Returns ``None`` instead of raising when the registry identifier is
        missing or malformed, so that callers can count and skip the item.
        """
        normalized = normalize_registry_id(registry_id)
        if normalized is None:
            return None
        record = cls(registry_id=normalized, **values)
        record.source_breakdown = {source: record.present_fields()}
        return record

    def present_fields(self) -> List[str]:
        """Names of mergeable fields that carry a value."""
        return [name for name in MERGEABLE_FIELDS if is_present(getattr(self, name))]

    def copy(self) -> "CompanyRecord":
        """Shallow copy with independent collections."""
        return replace(
            self,
            establishments=list(self.establishments),
            announcements=list(self.announcements),
            documents=list(self.documents),
            source_breakdown={k: list(v) for k, v in self.source_breakdown.items()},
        )

    @property
    def sources(self) -> List[str]:
        return list(self.source_breakdown.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the record to a JSON-serialisable dictionary."""
        return {
            "registry_id": self.registry_id,
            "establishment_id": self.establishment_id,
            "legal_name": self.legal_name,
            "legal_form": self.legal_form,
            "activity_code": self.activity_code,
            "activity_label": self.activity_label,
            "registered_address": self.registered_address,
            "creation_date": self.creation_date.isoformat() if self.creation_date else None,
            "active": self.active,
            "capital": self.capital.to_dict() if self.capital else None,
            "headcount_band": self.headcount_band,
            "acronym": self.acronym,
            "establishments": [e.to_dict() for e in self.establishments],
            "announcements": [a.to_dict() for a in self.announcements],
            "documents": [d.to_dict() for d in self.documents],
            "source_breakdown": self.source_breakdown,
            "last_updated": self.last_updated.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompanyRecord":
        """Create a record from ``to_dict`` output.

        Raises
        ------
        ValueError
            If the registry identifier is missing or invalid.
        """
        if "registry_id" not in data:
            raise ValueError("CompanyRecord requires a 'registry_id' field")

        last_updated = data.get("last_updated")
        if isinstance(last_updated, str):
            last_updated = datetime.fromisoformat(last_updated)
        elif last_updated is None:
            last_updated = datetime.now(timezone.utc)

        capital = data.get("capital")
        return cls(
            registry_id=data["registry_id"],
            establishment_id=data.get("establishment_id"),
            legal_name=data.get("legal_name"),
            legal_form=data.get("legal_form"),
            activity_code=data.get("activity_code"),
            activity_label=data.get("activity_label"),
            registered_address=data.get("registered_address"),
            creation_date=parse_date(data.get("creation_date")),
            active=data.get("active"),
            capital=Capital.from_dict(capital) if capital else None,
            headcount_band=data.get("headcount_band"),
            acronym=data.get("acronym"),
            establishments=[Establishment.from_dict(e) for e in data.get("establishments") or []],
            announcements=[Announcement.from_dict(a) for a in data.get("announcements") or []],
            documents=[Document.from_dict(d) for d in data.get("documents") or []],
            source_breakdown={k: list(v) for k, v in (data.get("source_breakdown") or {}).items()},
            last_updated=last_updated,
        )

    def __repr__(self) -> str:
        return f"CompanyRecord(registry_id={self.registry_id!r}, legal_name={self.legal_name!r})"


@dataclass
class SourceResult:
    """Raw outcome of one source call, discarded after the merge."""

    source: str
    status: SourceStatus
    records: List[CompanyRecord] = field(default_factory=list)
    error: Optional[ErrorInfo] = None
    latency_ms: float = 0.0
    dropped: int = 0
    malformed: int = 0

    @classmethod
    def failed(cls, source: str, error: ErrorInfo, latency_ms: float = 0.0) -> "SourceResult":
        return cls(source=source, status=SourceStatus.FAILED, error=error, latency_ms=latency_ms)

    @property
    def ok(self) -> bool:
        return self.status is SourceStatus.OK

    def diagnostic(self) -> "SourceDiagnostic":
        return SourceDiagnostic(
            source=self.source,
            status=self.status,
            error=self.error,
            latency_ms=round(self.latency_ms, 2),
            record_count=len(self.records),
            dropped=self.dropped,
            malformed=self.malformed,
        )


@dataclass(frozen=True)
class SourceDiagnostic:
    """Per-source summary attached to an aggregated result."""

    source: str
    status: SourceStatus
    error: Optional[ErrorInfo] = None
    latency_ms: float = 0.0
    record_count: int = 0
    dropped: int = 0
    malformed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status.value,
            "error": self.error.to_dict() if self.error else None,
            "latency_ms": self.latency_ms,
            "record_count": self.record_count,
            "dropped": self.dropped,
            "malformed": self.malformed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDiagnostic":
        error = data.get("error")
        return cls(
            source=data["source"],
            status=SourceStatus(data["status"]),
            error=ErrorInfo.from_dict(error) if error else None,
            latency_ms=float(data.get("latency_ms", 0.0)),
            record_count=int(data.get("record_count", 0)),
            dropped=int(data.get("dropped", 0)),
            malformed=int(data.get("malformed", 0)),
        )


class QueryMode(str, Enum):
    SEARCH = "search"
    DETAIL = "detail"


@dataclass(frozen=True)
class SourceQuery:
    """What one source call is asked for.

    ``text`` is set for free-text searches, ``registry_id`` for searches by
    identifier and detail lookups.
    """

    text: Optional[str] = None
    registry_id: Optional[str] = None
    mode: QueryMode = QueryMode.SEARCH
    caller: str = "anonymous"
    limit: int = 20

    @property
    def is_identifier(self) -> bool:
        return self.registry_id is not None

    def describe(self) -> str:
        return self.registry_id or self.text or ""


@dataclass(frozen=True)
class AggregatedResult:
    """Merged answer to one search or detail request.

    Built once per request and never mutated; a cached copy is
    reconstructed with ``from_dict``.
    """

    query: str
    records: Tuple[CompanyRecord, ...] = ()
    diagnostics: Dict[str, SourceDiagnostic] = field(default_factory=dict)
    mode: QueryMode = QueryMode.SEARCH
    from_cache: bool = False
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Set on filtered searches: records passing the filters, page shown
    matched: Optional[int] = None
    page: Optional[int] = None

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def failed_sources(self) -> List[str]:
        return [name for name, diag in self.diagnostics.items() if diag.status is SourceStatus.FAILED]

    @property
    def all_ok(self) -> bool:
        return bool(self.diagnostics) and all(
            diag.status is SourceStatus.OK for diag in self.diagnostics.values()
        )

    def registry_ids(self) -> List[str]:
        return [record.registry_id for record in self.records]

    def get(self, registry_id: str) -> Optional[CompanyRecord]:
        for record in self.records:
            if record.registry_id == registry_id:
                return record
        return None

    def as_cached(self) -> "AggregatedResult":
        return replace(self, from_cache=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "mode": self.mode.value,
            "total": self.total,
            "records": [record.to_dict() for record in self.records],
            "diagnostics": {name: diag.to_dict() for name, diag in self.diagnostics.items()},
            "from_cache": self.from_cache,
            "generated_at": self.generated_at.isoformat(),
            "matched": self.matched,
            "page": self.page,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregatedResult":
        generated_at = data.get("generated_at")
        return cls(
            query=data.get("query", ""),
            mode=QueryMode(data.get("mode", QueryMode.SEARCH.value)),
            records=tuple(CompanyRecord.from_dict(r) for r in data.get("records", [])),
            diagnostics={
                name: SourceDiagnostic.from_dict(diag)
                for name, diag in (data.get("diagnostics") or {}).items()
            },
            from_cache=bool(data.get("from_cache", False)),
            matched=data.get("matched"),
            page=data.get("page"),
            generated_at=(
                datetime.fromisoformat(generated_at)
                if isinstance(generated_at, str)
                else datetime.now(timezone.utc)
            ),
        )

