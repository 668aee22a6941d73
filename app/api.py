import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.bookings import BookingManager
from app.config import Settings
from app.database import InMemoryDocumentStore
from app.errors import InvariantViolationError, LedgerError
from app.models import (
    Booking,
    BookingStatus,
    Link,
    Notification,
    Payment,
    User,
    UserProfile,
)
from app.notifications import NotificationInbox
from app.payments import PaymentManager
from app.reconciliation import BalanceSummary, ReconciliationEngine
from app.relationships import RelationshipManager
from app.schemas import (
    BookingDecisionRequest,
    CreateBookingRequest,
    CreateUserRequest,
    EditBookingRequest,
    ProposeLinkRequest,
    RecordPaymentRequest,
    UpdateRateRequest,
)
from app.users import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter()

# stands in for the identity provider's authenticated user id
CallerId = Annotated[str, Header(alias="X-User-Id")]


def _db(request: Request) -> InMemoryDocumentStore:
    return request.app.state.database


def get_users(request: Request) -> UserDirectory:
    return UserDirectory(_db(request), now_fn=request.app.state.now_fn)


def get_relationships(request: Request) -> RelationshipManager:
    return RelationshipManager(_db(request), now_fn=request.app.state.now_fn)


def get_bookings(request: Request) -> BookingManager:
    return BookingManager(_db(request), now_fn=request.app.state.now_fn)


def get_payments(request: Request) -> PaymentManager:
    return PaymentManager(
        _db(request),
        settings=request.app.state.settings,
        now_fn=request.app.state.now_fn,
    )


def get_reconciliation(request: Request) -> ReconciliationEngine:
    return ReconciliationEngine(_db(request))


def get_inbox(request: Request) -> NotificationInbox:
    return NotificationInbox(_db(request))


Users = Annotated[UserDirectory, Depends(get_users)]
Relationships = Annotated[RelationshipManager, Depends(get_relationships)]
Bookings = Annotated[BookingManager, Depends(get_bookings)]
Payments = Annotated[PaymentManager, Depends(get_payments)]
Reconciliation = Annotated[ReconciliationEngine, Depends(get_reconciliation)]
Inbox = Annotated[NotificationInbox, Depends(get_inbox)]


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


# users


@router.post("/users", status_code=201)
async def create_user(body: CreateUserRequest, users: Users) -> User:
    try:
        return users.register(
            email=body.email,
            display_name=body.display_name,
            role=body.role,
            hourly_rate=body.hourly_rate,
            user_id=body.id,
        )
    except ValidationError as exc:
        raise InvariantViolationError(str(exc.errors()[0]["msg"])) from exc


@router.get("/users/search")
async def search_users(
    caller_id: CallerId, relationships: Relationships, term: str = ""
) -> list[User]:
    return relationships.search(caller_id, term)


@router.get("/users/{user_id}")
async def get_user(user_id: str, relationships: Relationships) -> UserProfile:
    return relationships.profile(user_id)


@router.patch("/users/{user_id}/rate")
async def update_rate(
    user_id: str, body: UpdateRateRequest, caller_id: CallerId, users: Users
) -> User:
    return users.update_rate(caller_id, user_id, body.hourly_rate)


# links


@router.post("/links", status_code=201)
async def propose_link(
    body: ProposeLinkRequest, caller_id: CallerId, relationships: Relationships
) -> Link:
    return relationships.propose(caller_id, body.counterparty_id)


@router.post("/links/{counterparty_id}/accept")
async def accept_link(
    counterparty_id: str, caller_id: CallerId, relationships: Relationships
) -> Link:
    return relationships.accept(caller_id, counterparty_id)


@router.post("/links/{counterparty_id}/reject", status_code=204)
async def reject_link(
    counterparty_id: str, caller_id: CallerId, relationships: Relationships
) -> Response:
    relationships.reject(caller_id, counterparty_id)
    return Response(status_code=204)


@router.delete("/links/{counterparty_id}", status_code=204)
async def unlink(
    counterparty_id: str, caller_id: CallerId, relationships: Relationships
) -> Response:
    relationships.unlink(caller_id, counterparty_id)
    return Response(status_code=204)


@router.delete("/links")
async def reset_links(caller_id: CallerId, relationships: Relationships) -> dict:
    removed = relationships.reset_all(caller_id)
    return {"status": "reset", "unlinked": removed}


# bookings


@router.post("/bookings", status_code=201)
async def create_bookings(
    body: CreateBookingRequest, caller_id: CallerId, bookings: Bookings
) -> list[Booking]:
    return bookings.create(
        caller_id, body.nanny_id, body.dates, body.start_time, body.end_time
    )


@router.get("/bookings")
async def list_bookings(
    caller_id: CallerId, bookings: Bookings, status: BookingStatus | None = None
) -> list[Booking]:
    return bookings.list_for(caller_id, status)


@router.post("/bookings/{booking_id}/status")
async def decide_booking(
    booking_id: str,
    body: BookingDecisionRequest,
    caller_id: CallerId,
    bookings: Bookings,
) -> Booking:
    return bookings.set_status(booking_id, caller_id, body.status)


@router.patch("/bookings/{booking_id}")
async def edit_booking(
    booking_id: str,
    body: EditBookingRequest,
    caller_id: CallerId,
    bookings: Bookings,
) -> Booking:
    return bookings.edit(booking_id, caller_id, body.start_time, body.end_time)


@router.delete("/bookings/{booking_id}", status_code=204)
async def delete_booking(
    booking_id: str, caller_id: CallerId, bookings: Bookings
) -> Response:
    bookings.delete(booking_id, caller_id)
    return Response(status_code=204)


# payments


@router.post("/payments", status_code=201)
async def record_payment(
    body: RecordPaymentRequest, caller_id: CallerId, payments: Payments
) -> Payment:
    return payments.record(
        caller_id, body.nanny_id, body.amount, body.method, body.note
    )


@router.get("/payments")
async def list_payments(caller_id: CallerId, payments: Payments) -> list[Payment]:
    return payments.list_for(caller_id)


@router.post("/payments/reset")
async def reset_balances(caller_id: CallerId, payments: Payments) -> dict:
    return {"status": "reset", **payments.reset_balances(caller_id)}


@router.post("/payments/{payment_id}/confirm")
async def confirm_payment(
    payment_id: str, caller_id: CallerId, payments: Payments
) -> Payment:
    return payments.confirm(payment_id, caller_id)


@router.post("/payments/{payment_id}/reject")
async def reject_payment(
    payment_id: str, caller_id: CallerId, payments: Payments
) -> Payment:
    return payments.reject(payment_id, caller_id)


@router.delete("/payments/{payment_id}", status_code=204)
async def delete_payment(
    payment_id: str, caller_id: CallerId, payments: Payments
) -> Response:
    payments.delete(payment_id, caller_id)
    return Response(status_code=204)


# balance and notifications


@router.get("/balance")
async def get_balance(
    caller_id: CallerId,
    engine: Reconciliation,
    counterparty_id: Annotated[str | None, Query(alias="counterpartyId")] = None,
) -> BalanceSummary:
    return engine.summary(caller_id, counterparty_id)


@router.get("/notifications")
async def list_notifications(
    caller_id: CallerId, inbox: Inbox, unread: bool = False
) -> list[Notification]:
    return inbox.list_for(caller_id, unread_only=unread)


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str, caller_id: CallerId, inbox: Inbox
) -> Notification:
    return inbox.mark_read(notification_id, caller_id)


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(title="nanny-ledger")
    db = InMemoryDocumentStore()
    app.state.database = db
    app.state.settings = settings

    app.state.now_fn = lambda: datetime.now(UTC)

    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.include_router(router)
    return app
