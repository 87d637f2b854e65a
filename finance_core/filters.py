"""
Typed list filters

One frozen parameter object per list endpoint. Equality fields are pushed down
to storage.find(); the date range and paging are applied in Python. Field
names are record attribute names, never assembled strings.
"""

from dataclasses import dataclass, fields
from datetime import date
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Iterable, List, Optional

from .errors import ValidationError
from .storage import serialize_value


MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class ListFilter:
    limit: int = 100
    offset: int = 0
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    # Caller scope, None means unrestricted
    legal_entity_ids: Optional[FrozenSet[str]] = None

    # Attribute the date range applies to
    date_field: ClassVar[Optional[str]] = None
    _non_equality: ClassVar[tuple] = ("limit", "offset", "date_from", "date_to", "include_lines",
                                      "legal_entity_ids", "book_ids")

    def __post_init__(self):
        if not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if self.offset < 0:
            raise ValidationError("offset cannot be negative")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("dateFrom cannot be after dateTo")

    def equality_fields(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._non_equality and getattr(self, f.name) is not None
        }

    def storage_filters(self) -> Dict[str, Any]:
        """JSON-safe equality filters for StorageInterface.find"""
        return {name: serialize_value(value) for name, value in self.equality_fields().items()}

    def matches(self, record: Any) -> bool:
        for name, expected in self.equality_fields().items():
            actual = getattr(record, name, None)
            if isinstance(expected, Enum) and not isinstance(actual, Enum):
                expected = expected.value
            if actual != expected:
                return False
        if self.legal_entity_ids is not None and \
                getattr(record, "legal_entity_id", None) not in self.legal_entity_ids:
            return False
        if self.date_field and (self.date_from or self.date_to):
            value = getattr(record, self.date_field, None)
            if value is None:
                return False
            if self.date_from and value < self.date_from:
                return False
            if self.date_to and value > self.date_to:
                return False
        return True

    def apply(self, records: Iterable[Any], sort_key: Optional[Callable] = None,
              reverse: bool = False) -> List[Any]:
        selected = [r for r in records if self.matches(r)]
        if sort_key is not None:
            selected.sort(key=sort_key, reverse=reverse)
        return selected[self.offset:self.offset + self.limit]


@dataclass(frozen=True)
class JournalFilter(ListFilter):
    legal_entity_id: Optional[str] = None
    book_id: Optional[str] = None
    fiscal_period_id: Optional[str] = None
    status: Optional[Enum] = None
    source_type: Optional[Enum] = None

    date_field: ClassVar[str] = "entry_date"


@dataclass(frozen=True)
class CloseRunFilter(ListFilter):
    book_id: Optional[str] = None
    fiscal_period_id: Optional[str] = None
    status: Optional[Enum] = None
    include_lines: bool = False
    # Runs carry no legal entity, so scope goes by book
    book_ids: Optional[FrozenSet[str]] = None

    def matches(self, record: Any) -> bool:
        if self.book_ids is not None and record.book_id not in self.book_ids:
            return False
        return super().matches(record)


@dataclass(frozen=True)
class CashTransactionFilter(ListFilter):
    legal_entity_id: Optional[str] = None
    cash_register_id: Optional[str] = None
    cash_session_id: Optional[str] = None
    status: Optional[Enum] = None
    txn_type: Optional[Enum] = None

    date_field: ClassVar[str] = "book_date"


@dataclass(frozen=True)
class DocumentFilter(ListFilter):
    legal_entity_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    direction: Optional[Enum] = None
    status: Optional[Enum] = None
    document_type: Optional[Enum] = None

    date_field: ClassVar[str] = "document_date"


@dataclass(frozen=True)
class OpenItemFilter(ListFilter):
    legal_entity_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    direction: Optional[Enum] = None
    status: Optional[Enum] = None
    currency_code: Optional[str] = None

    date_field: ClassVar[str] = "due_date"
