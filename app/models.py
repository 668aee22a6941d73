"""
Documents persisted in the store. Field names serialize as camelCase, which is
the storage contract shared with the web client.
"""

from collections.abc import Callable
from datetime import UTC, datetime, time
from datetime import date as Date
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

NowFn = Callable[[], datetime]

USERS = "users"
LINKS = "links"
BOOKINGS = "scheduleRequests"
PAYMENTS = "payments"
NOTIFICATIONS = "notifications"
EVENTS = "events"


def utc_now() -> datetime:
    return datetime.now(UTC)


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserRole(StrEnum):
    EMPLOYER = "employer"
    NANNY = "nanny"

    @property
    def counterpart(self) -> "UserRole":
        if self is UserRole.EMPLOYER:
            return UserRole.NANNY
        return UserRole.EMPLOYER


class User(Document):
    id: str
    email: str
    display_name: str
    role: UserRole
    hourly_rate: float | None = None  # nannies only
    created_at: datetime

    @model_validator(mode="after")
    def _rate_matches_role(self) -> "User":
        if self.role is UserRole.NANNY:
            if self.hourly_rate is None or self.hourly_rate <= 0:
                raise ValueError("a nanny needs a positive hourly rate")
        elif self.hourly_rate is not None:
            raise ValueError("only nannies carry an hourly rate")
        return self


class UserProfile(User):
    """Identity record with its relationship sets projected from links."""

    linked_nannies: list[str] = Field(default_factory=list)
    linked_employers: list[str] = Field(default_factory=list)
    pending_nannies: list[str] = Field(default_factory=list)
    pending_employers: list[str] = Field(default_factory=list)


class LinkState(StrEnum):
    PROPOSED = "proposed"
    LINKED = "linked"


class Link(Document):
    id: str
    employer_id: str
    nanny_id: str
    state: LinkState
    proposed_by: str
    created_at: datetime
    linked_at: datetime | None = None

    @staticmethod
    def key(employer_id: str, nanny_id: str) -> str:
        return f"{employer_id}:{nanny_id}"

    def other_party(self, user_id: str) -> str:
        return self.nanny_id if user_id == self.employer_id else self.employer_id

    def recipient(self) -> str:
        return self.other_party(self.proposed_by)


def parse_wall_clock(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS``."""
    try:
        parsed = time.fromisoformat(value)
    except ValueError:
        raise ValueError(f"invalid time of day: {value!r}") from None
    if parsed.tzinfo is not None:
        raise ValueError("times of day carry no timezone")
    return parsed


class BookingStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Booking(Document):
    id: str
    date: Date
    start_time: str
    end_time: str
    status: BookingStatus = BookingStatus.PENDING
    employer_id: str
    nanny_id: str
    hourly_rate: float  # snapshot of the nanny's rate when requested
    created_at: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _wall_clock(cls, value: str) -> str:
        parse_wall_clock(value)
        return value

    @model_validator(mode="after")
    def _ends_after_start(self) -> "Booking":
        if parse_wall_clock(self.end_time) <= parse_wall_clock(self.start_time):
            raise ValueError("endTime must be later than startTime on the same day")
        return self


class PaymentStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    APPROVED = "approved"  # legacy synonym of confirmed, read only
    REJECTED = "rejected"

    @property
    def is_settled(self) -> bool:
        return self in (PaymentStatus.CONFIRMED, PaymentStatus.APPROVED)


class PaymentMethod(StrEnum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"


class Payment(Document):
    id: str
    amount: float = Field(gt=0)
    date: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    employer_id: str
    nanny_id: str
    method: PaymentMethod
    note: str | None = None
    employer_name: str | None = None
    nanny_name: str | None = None


class NotificationType(StrEnum):
    LINK_REQUEST = "link_request"
    LINK_ACCEPTED = "link_accepted"
    LINK_REJECTED = "link_rejected"


class NotificationStatus(StrEnum):
    UNREAD = "unread"
    READ = "read"


class Notification(Document):
    id: str
    type: NotificationType
    from_user_id: str
    to_user_id: str
    status: NotificationStatus = NotificationStatus.UNREAD
    created_at: datetime
    message: str


class LedgerEventKind(StrEnum):
    BOOKING_APPROVED = "booking_approved"
    BOOKING_REVERTED = "booking_reverted"
    BOOKING_DELETED = "booking_deleted"
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_DELETED = "payment_deleted"


class LedgerEvent(Document):
    id: str
    sequence: int
    kind: LedgerEventKind
    occurred_at: datetime
    employer_id: str
    nanny_id: str
    booking_id: str | None = None
    payment_id: str | None = None
    amount: float = 0.0
