"""
Fiscal Calendar and Period Control

Calendars own dated periods; books tie a legal entity to a calendar and a base
currency. Each (book, period) pair has a status that gates posting. A pair
without a status row is OPEN.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .money import normalize_currency_code
from .organization import OrganizationManager
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


class BookType(Enum):
    LOCAL = "LOCAL"
    GROUP = "GROUP"


class PeriodStatus(Enum):
    OPEN = "OPEN"
    SOFT_CLOSED = "SOFT_CLOSED"
    HARD_CLOSED = "HARD_CLOSED"


CLOSED_STATUSES = (PeriodStatus.SOFT_CLOSED, PeriodStatus.HARD_CLOSED)


@dataclass
class FiscalCalendar(StorageRecord):
    code: str
    name: str
    year_start_month: int = 1


@dataclass
class FiscalPeriod(StorageRecord):
    calendar_id: str
    fiscal_year: int
    period_no: int
    period_name: str
    start_date: date
    end_date: date
    is_adjustment: bool = False

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    @property
    def sort_key(self):
        return (self.fiscal_year, self.period_no)


@dataclass
class Book(StorageRecord):
    """A ledger instance for one legal entity and calendar"""
    legal_entity_id: str
    calendar_id: str
    code: str
    name: str
    book_type: BookType
    base_currency_code: str


@dataclass
class PeriodStatusRecord(StorageRecord):
    book_id: str
    fiscal_period_id: str
    status: PeriodStatus
    note: Optional[str] = None
    changed_by: Optional[str] = None


def _add_months(year: int, month_index: int) -> date:
    """First day of the month month_index months after January of year"""
    return date(year + month_index // 12, month_index % 12 + 1, 1)


class FiscalManager:
    """Calendars, periods, books and period status"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organization: OrganizationManager):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.organization = organization
        self.calendars_table = "fiscal_calendars"
        self.periods_table = "fiscal_periods"
        self.books_table = "books"
        self.statuses_table = "period_statuses"

    # Calendars and periods

    def create_calendar(self, code: str, name: str, year_start_month: int = 1,
                        principal: Optional[Principal] = None) -> FiscalCalendar:
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("code is required")
        if not 1 <= int(year_start_month) <= 12:
            raise ValidationError("yearStartMonth must be between 1 and 12")

        with self.storage.atomic():
            if self.records.find_one(FiscalCalendar, self.calendars_table, {'code': code}):
                raise ConflictError(f"Fiscal calendar code already exists: {code}")
            now = datetime.now(timezone.utc)
            calendar = FiscalCalendar(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                code=code, name=name, year_start_month=int(year_start_month),
            )
            self.records.save_record(calendar, self.calendars_table)
            self.audit_trail.log_event(
                AuditEventType.FISCAL_CALENDAR_CREATED, "fiscal_calendar", calendar.id,
                {"code": code, "yearStartMonth": calendar.year_start_month},
                user_id=principal.user_id if principal else None,
            )
        return calendar

    def get_calendar(self, calendar_id: str) -> Optional[FiscalCalendar]:
        return self.records.load_record(FiscalCalendar, self.calendars_table, calendar_id)

    def require_calendar(self, calendar_id: str) -> FiscalCalendar:
        calendar = self.get_calendar(calendar_id) if calendar_id else None
        if calendar is None:
            raise NotFoundError("calendarId not found for tenant")
        return calendar

    def generate_periods(self, calendar_id: str, fiscal_year: int,
                         principal: Optional[Principal] = None) -> Dict[str, Any]:
        """
        Create the twelve monthly periods of a fiscal year.

        Existing (year, period_no) rows are left untouched, so calling twice is
        harmless.
        """
        fiscal_year = int(fiscal_year)
        with self.storage.atomic():
            calendar = self.require_calendar(calendar_id)
            existing = {
                p.period_no
                for p in self.list_periods(calendar_id, fiscal_year=fiscal_year)
            }
            created = []
            for i in range(12):
                period_no = i + 1
                if period_no in existing:
                    continue
                month_index = calendar.year_start_month - 1 + i
                start = _add_months(fiscal_year, month_index)
                end = _add_months(fiscal_year, month_index + 1) - timedelta(days=1)
                now = datetime.now(timezone.utc)
                period = FiscalPeriod(
                    id=str(uuid.uuid4()), created_at=now, updated_at=now,
                    calendar_id=calendar_id,
                    fiscal_year=fiscal_year,
                    period_no=period_no,
                    period_name=f"P{period_no:02d}",
                    start_date=start,
                    end_date=end,
                )
                self.records.save_record(period, self.periods_table)
                created.append(period)

            if created:
                self.audit_trail.log_event(
                    AuditEventType.FISCAL_PERIODS_GENERATED, "fiscal_calendar", calendar_id,
                    {"fiscalYear": fiscal_year, "created": len(created)},
                    user_id=principal.user_id if principal else None,
                )

        return {
            "calendar_id": calendar_id,
            "fiscal_year": fiscal_year,
            "created_count": len(created),
            "skipped_count": 12 - len(created),
        }

    def create_adjustment_period(self, calendar_id: str, fiscal_year: int, period_no: int,
                                 on_date: date) -> FiscalPeriod:
        """Single-day adjustment period; never used as a carry-forward target"""
        with self.storage.atomic():
            self.require_calendar(calendar_id)
            if any(p.period_no == period_no
                   for p in self.list_periods(calendar_id, fiscal_year=fiscal_year)):
                raise ConflictError("Fiscal period already exists")
            now = datetime.now(timezone.utc)
            period = FiscalPeriod(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                calendar_id=calendar_id, fiscal_year=fiscal_year, period_no=period_no,
                period_name=f"ADJ{period_no:02d}", start_date=on_date, end_date=on_date,
                is_adjustment=True,
            )
            self.records.save_record(period, self.periods_table)
        return period

    def get_period(self, period_id: str) -> Optional[FiscalPeriod]:
        return self.records.load_record(FiscalPeriod, self.periods_table, period_id)

    def require_period(self, period_id: str, field_name: str = "fiscalPeriodId") -> FiscalPeriod:
        period = self.get_period(period_id) if period_id else None
        if period is None:
            raise NotFoundError(f"{field_name} not found for tenant")
        return period

    def list_periods(self, calendar_id: str, fiscal_year: Optional[int] = None) -> List[FiscalPeriod]:
        filters: Dict[str, Any] = {'calendar_id': calendar_id}
        if fiscal_year is not None:
            filters['fiscal_year'] = int(fiscal_year)
        periods = self.records.find_records(FiscalPeriod, self.periods_table, filters)
        return sorted(periods, key=lambda p: p.sort_key)

    def get_next_period(self, period: FiscalPeriod) -> Optional[FiscalPeriod]:
        """Next non-adjustment period of the same calendar, by (year, period_no)"""
        candidates = [
            p for p in self.list_periods(period.calendar_id)
            if not p.is_adjustment and p.sort_key > period.sort_key
        ]
        return candidates[0] if candidates else None

    def find_period_for_date(self, calendar_id: str, day: date) -> Optional[FiscalPeriod]:
        """Non-adjustment period containing day"""
        for period in self.list_periods(calendar_id):
            if not period.is_adjustment and period.contains(day):
                return period
        return None

    def find_matching_period(self, calendar_id: str, fiscal_year: int,
                             period_no: int) -> Optional[FiscalPeriod]:
        for period in self.list_periods(calendar_id, fiscal_year=fiscal_year):
            if period.period_no == period_no:
                return period
        return None

    # Books

    def create_book(self, legal_entity_id: str, calendar_id: str, code: str, name: str,
                    book_type: BookType = BookType.LOCAL,
                    base_currency_code: Optional[str] = None,
                    principal: Optional[Principal] = None) -> Book:
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("code is required")
        assert_scope_access(principal, [legal_entity_id])

        with self.storage.atomic():
            entity = self.organization.require_legal_entity(legal_entity_id)
            self.require_calendar(calendar_id)
            if self.records.find_one(Book, self.books_table, {'code': code}):
                raise ConflictError(f"Book code already exists: {code}")

            now = datetime.now(timezone.utc)
            book = Book(
                id=str(uuid.uuid4()), created_at=now, updated_at=now,
                legal_entity_id=legal_entity_id,
                calendar_id=calendar_id,
                code=code,
                name=name,
                book_type=BookType(book_type),
                base_currency_code=normalize_currency_code(
                    base_currency_code or entity.functional_currency_code, "baseCurrencyCode"
                ),
            )
            self.records.save_record(book, self.books_table)
            self.audit_trail.log_event(
                AuditEventType.BOOK_CREATED, "book", book.id,
                {"legalEntityId": legal_entity_id, "code": code, "bookType": book.book_type.value},
                user_id=principal.user_id if principal else None,
            )
        return book

    def get_book(self, book_id: str) -> Optional[Book]:
        return self.records.load_record(Book, self.books_table, book_id)

    def require_book(self, book_id: str) -> Book:
        book = self.get_book(book_id) if book_id else None
        if book is None:
            raise NotFoundError("bookId not found for tenant")
        return book

    def list_books(self, legal_entity_id: Optional[str] = None) -> List[Book]:
        filters = {'legal_entity_id': legal_entity_id} if legal_entity_id else {}
        return sorted(self.records.find_records(Book, self.books_table, filters),
                      key=lambda b: b.code)

    def get_primary_book(self, legal_entity_id: str) -> Optional[Book]:
        """LOCAL book first, then any other, by code"""
        books = self.list_books(legal_entity_id)
        books.sort(key=lambda b: (b.book_type != BookType.LOCAL, b.code))
        return books[0] if books else None

    def resolve_posting_period(self, legal_entity_id: str, day: date,
                               subject: str) -> Tuple[Book, FiscalPeriod]:
        """Primary book of a legal entity and its non-adjustment period containing day"""
        book = self.get_primary_book(legal_entity_id)
        if book is None:
            raise ValidationError(f"No book found for {subject} legalEntityId")
        period = self.find_period_for_date(book.calendar_id, day)
        if period is None:
            raise ValidationError(f"No fiscal period found for {subject} date")
        return book, period

    def require_period_in_book(self, book: Book, period_id: str,
                               field_name: str = "fiscalPeriodId") -> FiscalPeriod:
        period = self.require_period(period_id, field_name)
        if period.calendar_id != book.calendar_id:
            raise ValidationError(f"{field_name} does not belong to the book calendar")
        return period

    # Period status

    def _status_id(self, book_id: str, period_id: str) -> str:
        return f"{book_id}:{period_id}"

    def get_period_status(self, book_id: str, period_id: str) -> PeriodStatus:
        data = self.storage.load(self.statuses_table, self._status_id(book_id, period_id))
        if not data:
            return PeriodStatus.OPEN
        return PeriodStatusRecord.from_dict(data).status

    def get_period_status_record(self, book_id: str, period_id: str) -> Optional[PeriodStatusRecord]:
        return self.records.load_record(
            PeriodStatusRecord, self.statuses_table, self._status_id(book_id, period_id)
        )

    def ensure_period_open(self, book_id: str, period_id: str, action_label: str) -> None:
        """
        Raises:
            ConflictError: "Period is {status}; cannot {action}" unless OPEN
        """
        status = self.get_period_status(book_id, period_id)
        if status != PeriodStatus.OPEN:
            raise ConflictError(
                f"Period is {status.value}; cannot {action_label}",
                code="PERIOD_NOT_OPEN",
                details={"bookId": book_id, "fiscalPeriodId": period_id, "status": status.value},
            )

    def upsert_period_status(self, book_id: str, period_id: str, status: PeriodStatus,
                             note: Optional[str] = None,
                             user_id: Optional[str] = None) -> PeriodStatusRecord:
        """Write the status row without transition checks; callers own the rules"""
        now = datetime.now(timezone.utc)
        record_id = self._status_id(book_id, period_id)
        existing = self.get_period_status_record(book_id, period_id)
        record = PeriodStatusRecord(
            id=record_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            book_id=book_id,
            fiscal_period_id=period_id,
            status=status,
            note=note,
            changed_by=user_id,
        )
        self.records.save_record(record, self.statuses_table)
        self.audit_trail.log_event(
            AuditEventType.PERIOD_STATUS_CHANGED, "period_status", record_id,
            {
                "bookId": book_id,
                "fiscalPeriodId": period_id,
                "previousStatus": existing.status.value if existing else PeriodStatus.OPEN.value,
                "status": status.value,
                "note": note,
            },
            user_id=user_id,
        )
        return record

    def close_period_status(self, book_id: str, period_id: str, status: PeriodStatus,
                            note: Optional[str] = None,
                            principal: Optional[Principal] = None) -> PeriodStatusRecord:
        """Manual status change to SOFT_CLOSED or HARD_CLOSED"""
        status = PeriodStatus(status)
        if status not in CLOSED_STATUSES:
            raise ValidationError("status must be SOFT_CLOSED or HARD_CLOSED")

        with self.storage.atomic():
            book = self.require_book(book_id)
            assert_scope_access(principal, [book.legal_entity_id])
            self.require_period_in_book(book, period_id)
            current = self.get_period_status(book_id, period_id)
            if current == PeriodStatus.HARD_CLOSED and status != PeriodStatus.HARD_CLOSED:
                raise ConflictError("HARD_CLOSED periods cannot be re-opened or softened")
            return self.upsert_period_status(
                book_id, period_id, status, note,
                user_id=principal.user_id if principal else None,
            )
