# ABOUTME: Pydantic models for ledgersync records and read models
# ABOUTME: Defines Obligation, Payment, Totals, and query scope types

from datetime import date, datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledgersync.amounts import round_amount


def new_id() -> str:
    """Generate a client-side record id."""
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ObligationKind(str, Enum):
    """Which ledger an obligation belongs to."""

    CREDIT = "credit"
    DEPOSIT = "deposit"


class TotalsStatus(str, Enum):
    OPEN = "Open"
    UNPAID = "Unpaid"
    PAID = "Paid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK = "bank"
    OTHER = "other"


# Canonical English labels stored in payment notes
METHOD_NOTES = {
    PaymentMethod.CASH: "Cash",
    PaymentMethod.CARD: "Card",
    PaymentMethod.BANK: "Bank Transfer / e-Wallet",
}


def method_note(method: PaymentMethod, other_text: str = "") -> str:
    """Encode a payment method as the note stored on the payment."""
    if method in METHOD_NOTES:
        return METHOD_NOTES[method]
    return other_text.strip() or "Other"


def infer_method(note: str | None) -> tuple[PaymentMethod, str]:
    """
    Recover the payment method from a stored note.

    Empty notes default to cash. Anything that isn't a canonical label is
    treated as free text for the "other" method.

    Returns:
        Tuple of (method, other_text)
    """
    raw = (note or "").strip()
    if not raw:
        return PaymentMethod.CASH, ""
    for method, label in METHOD_NOTES.items():
        if raw == label:
            return method, ""
    return PaymentMethod.OTHER, raw


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Obligation(BaseModel):
    """A credit extended to a customer, or a deposit collected for an event."""

    id: str = Field(default_factory=new_id)
    kind: ObligationKind
    branch: str = Field(default="", description="Site identifier, empty means unscoped")
    date: date
    customer_name: str = ""
    customer_phone: str | None = None
    customer_email: str | None = None
    customer_id: str | None = None
    face_amount: int = Field(default=0, description="Amount owed in whole units")
    reference: str | None = None
    shift: str | None = None
    handled_by: str | None = None
    note: str | None = None
    event_date: date | None = Field(default=None, description="Deposits only")

    @field_validator("face_amount", mode="before")
    @classmethod
    def _round_face_amount(cls, value: object) -> int:
        return round_amount(value)

    @field_validator("branch", mode="before")
    @classmethod
    def _branch_not_null(cls, value: object) -> str:
        return "" if value is None else str(value)


class Payment(BaseModel):
    """A partial or full settlement recorded against one obligation."""

    id: str = Field(default_factory=new_id)
    obligation_id: str
    amount: int
    date: datetime = Field(default_factory=utcnow)
    note: str | None = None
    recorded_by: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _round_amount(cls, value: object) -> int:
        return round_amount(value)

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        return _as_utc(value)


class PaymentPatch(BaseModel):
    """Fields of a payment an edit may change. Unset fields are left alone."""

    amount: int | None = None
    date: datetime | None = None
    note: str | None = None
    recorded_by: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _round_amount(cls, value: object) -> int | None:
        if value is None:
            return None
        return round_amount(value)

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _as_utc(value)

    def changes(self) -> dict:
        """Only the fields the caller explicitly set."""
        return self.model_dump(exclude_unset=True)


class Totals(BaseModel):
    """Derived paid/remaining/status view of one obligation."""

    model_config = ConfigDict(frozen=True)

    paid: int
    remaining: int
    status: TotalsStatus


class Identity(BaseModel):
    """Who is using the session, for default handled_by / recorded_by."""

    display_name: str = ""


def _add_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


class DateRange(BaseModel):
    """Half-open calendar window [start, end)."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @classmethod
    def for_month(cls, year: int, month: int) -> "DateRange":
        """One calendar month (month is 1-12)."""
        first = date(year, month, 1)
        return cls(start=first, end=_add_months(first, 1))

    @classmethod
    def around(cls, today: date | None = None) -> "DateRange":
        """Previous, current, and next month around today."""
        today = today or date.today()
        first = date(today.year, today.month, 1)
        return cls(start=_add_months(first, -1), end=_add_months(first, 2))

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


class LedgerScope(BaseModel):
    """The query window and branch filter a session is looking at."""

    model_config = ConfigDict(frozen=True)

    date_range: DateRange
    branch: str | None = None
    # Only month views pull past unpaid obligations forward
    carry_over: bool = False

    def contains(self, obligation: Obligation) -> bool:
        if not self.date_range.contains(obligation.date):
            return False
        if self.branch:
            return obligation.branch == self.branch
        return True

    def key(self) -> str:
        """Stable name for snapshot files."""
        branch = self.branch or "all"
        return f"{self.date_range.start.isoformat()}_{self.date_range.end.isoformat()}_{branch}"
