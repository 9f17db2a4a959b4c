"""Declarative listing engine shared by every paginated endpoint.

A ``Listing`` names the base statement, the filter descriptors and the sort
keys of one entity. Query parameters are coerced leniently: a value that
fails to coerce is dropped, as if the parameter had not been sent.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


# ---------- coercers: raw string -> value, or None when unusable ----------

def as_text(raw: str) -> Optional[str]:
    value = raw.strip()
    return value or None


def as_positive_int(raw: str) -> Optional[int]:
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def as_decimal(raw: str) -> Optional[Decimal]:
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def as_date(raw: str) -> Optional[date]:
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def as_flag(raw: str) -> Optional[bool]:
    value = raw.strip()
    if value == "1":
        return True
    if value == "0":
        return False
    return None


def one_of(*choices: str) -> Callable[[str], Optional[str]]:
    def coerce(raw: str) -> Optional[str]:
        value = raw.strip()
        return value if value in choices else None
    return coerce


def start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min)


def end_of_day_exclusive(d: date) -> datetime:
    return datetime.combine(d + timedelta(days=1), time.min)


# ---------- filter descriptors ----------

def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class Search:
    """Case-insensitive substring match across several columns."""
    param: str
    columns: Tuple[Any, ...]

    def compile(self, raw: str):
        value = as_text(raw)
        if value is None:
            return None
        pattern = f"%{_escape_like(value)}%"
        return or_(*[column.ilike(pattern, escape="\\") for column in self.columns])


@dataclass(frozen=True)
class Exact:
    param: str
    column: Any
    coerce: Callable[[str], Any] = as_text

    def compile(self, raw: str):
        value = self.coerce(raw)
        if value is None:
            return None
        return self.column == value


@dataclass(frozen=True)
class Range:
    param: str
    column: Any
    op: str  # "ge" | "le" | "lt"
    coerce: Callable[[str], Any] = as_decimal

    def compile(self, raw: str):
        value = self.coerce(raw)
        if value is None:
            return None
        if self.op == "ge":
            return self.column >= value
        if self.op == "le":
            return self.column <= value
        return self.column < value


@dataclass(frozen=True)
class Predicate:
    """Escape hatch for clauses that need a custom builder (e.g. date windows)."""
    param: str
    coerce: Callable[[str], Any]
    build: Callable[[Any], Any]

    def compile(self, raw: str):
        value = self.coerce(raw)
        if value is None:
            return None
        return self.build(value)


@dataclass(frozen=True)
class Listing:
    entity: str
    base: Callable[[], Any]
    filters: Tuple[Any, ...]
    sorts: Dict[str, Tuple[Any, ...]]
    default_sort: str
    row: Callable[[Any], dict]

    def where(self, params: Mapping[str, str]) -> List[Any]:
        clauses = []
        for descriptor in self.filters:
            raw = params.get(descriptor.param)
            if raw is None:
                continue
            clause = descriptor.compile(str(raw))
            if clause is not None:
                clauses.append(clause)
        return clauses

    def order_by(self, sort: Optional[str]) -> Tuple[Any, ...]:
        return self.sorts.get((sort or "").strip(), self.sorts[self.default_sort])


@dataclass
class Page:
    items: List[dict]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    def envelope(self) -> dict:
        return {
            "status": "ok",
            "page": self.page,
            "per_page": self.per_page,
            "total": self.total,
            "total_pages": self.total_pages,
            "data": self.items,
        }


def page_params(params: Mapping[str, str]) -> Tuple[int, int]:
    try:
        page = int(str(params.get("page", "1")).strip())
    except ValueError:
        page = 1
    try:
        per_page = int(str(params.get("limit", DEFAULT_PAGE_SIZE)).strip())
    except ValueError:
        per_page = DEFAULT_PAGE_SIZE
    return max(page, 1), min(max(per_page, 1), MAX_PAGE_SIZE)


def run_listing(db: Session, listing: Listing, params: Mapping[str, str]) -> Page:
    page, per_page = page_params(params)
    clauses = listing.where(params)
    stmt = listing.base()
    if clauses:
        stmt = stmt.where(*clauses)

    try:
        total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
        rows = db.execute(
            stmt.order_by(*listing.order_by(params.get("sort")))
            .limit(per_page)
            .offset((page - 1) * per_page)
        ).all()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("listing %s failed: %s", listing.entity, e)
        raise StorageUnavailable(f"Failed to load {listing.entity}") from e

    return Page(items=[listing.row(r) for r in rows], total=total, page=page, per_page=per_page)
