"""Request bodies accepted by the HTTP API."""

from datetime import date as Date

from pydantic import Field

from app.models import BookingStatus, Document, PaymentMethod, UserRole


class CreateUserRequest(Document):
    id: str | None = None
    email: str
    display_name: str
    role: UserRole
    hourly_rate: float | None = None


class UpdateRateRequest(Document):
    hourly_rate: float = Field(gt=0)


class ProposeLinkRequest(Document):
    counterparty_id: str


class CreateBookingRequest(Document):
    nanny_id: str
    dates: list[Date] = Field(min_length=1)
    start_time: str
    end_time: str


class EditBookingRequest(Document):
    start_time: str
    end_time: str


class BookingDecisionRequest(Document):
    status: BookingStatus


class RecordPaymentRequest(Document):
    nanny_id: str
    amount: float = Field(gt=0)
    method: PaymentMethod
    note: str | None = None
