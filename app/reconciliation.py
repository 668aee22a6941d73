"""
Owed/paid/balance totals derived from approved bookings and payments.

Nothing here is persisted. Totals are priced at each booking's snapshot
rate, so a nanny changing their rate never rewrites past approved work.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import date as Date
from datetime import datetime

from app.database import InMemoryDocumentStore, Unsubscribe
from app.errors import StoreUnavailableError
from app.models import (
    BOOKINGS,
    PAYMENTS,
    Booking,
    BookingStatus,
    Document,
    Payment,
    PaymentStatus,
    User,
    UserRole,
    parse_wall_clock,
)
from app.users import UserDirectory

logger = logging.getLogger(__name__)

_REFERENCE_DAY = Date(1970, 1, 1)


def booking_hours(start_time: str, end_time: str) -> float:
    """Fractional hours between two times of day on the same day."""
    start = datetime.combine(_REFERENCE_DAY, parse_wall_clock(start_time))
    end = datetime.combine(_REFERENCE_DAY, parse_wall_clock(end_time))
    return (end - start).total_seconds() / 3600


def booking_amount(booking: Booking) -> float:
    return booking_hours(booking.start_time, booking.end_time) * booking.hourly_rate


class LineItem(Document):
    booking_id: str
    date: Date
    employer_id: str
    nanny_id: str
    hours: float
    hourly_rate: float
    amount: float


class BalanceSummary(Document):
    """
    None in a total means the query behind it failed and the value is
    unknown. It is never reported as zero.
    """

    user_id: str
    counterpart_id: str | None = None
    total_owed: float | None
    total_paid: float | None
    pending_payments: float | None
    remaining_balance: float | None
    line_items: list[LineItem] | None = None


def summarize(
    user_id: str,
    bookings: Iterable[Booking] | None,
    payments: Iterable[Payment] | None,
    *,
    counterpart_id: str | None = None,
) -> BalanceSummary:
    """Pure computation. Pass None for a result set that could not be read."""
    total_owed = line_items = None
    if bookings is not None:
        line_items = [
            LineItem(
                booking_id=b.id,
                date=b.date,
                employer_id=b.employer_id,
                nanny_id=b.nanny_id,
                hours=booking_hours(b.start_time, b.end_time),
                hourly_rate=b.hourly_rate,
                amount=booking_amount(b),
            )
            for b in bookings
            if b.status is BookingStatus.APPROVED
        ]
        total_owed = sum(item.amount for item in line_items)

    total_paid = pending = None
    if payments is not None:
        payments = list(payments)
        total_paid = sum(p.amount for p in payments if p.status.is_settled)
        pending = sum(
            p.amount for p in payments if p.status is PaymentStatus.PENDING
        )

    remaining = None
    if total_owed is not None and total_paid is not None:
        remaining = total_owed - total_paid

    return BalanceSummary(
        user_id=user_id,
        counterpart_id=counterpart_id,
        total_owed=total_owed,
        total_paid=total_paid,
        pending_payments=pending,
        remaining_balance=remaining,
        line_items=line_items,
    )


def _party_filters(user: User, counterpart_id: str | None) -> dict[str, str]:
    if user.role is UserRole.EMPLOYER:
        where = {"employer_id": user.id}
        if counterpart_id is not None:
            where["nanny_id"] = counterpart_id
    else:
        where = {"nanny_id": user.id}
        if counterpart_id is not None:
            where["employer_id"] = counterpart_id
    return where


class ReconciliationEngine:
    def __init__(self, db: InMemoryDocumentStore):
        self.db = db
        self.users = UserDirectory(db)

    def summary(
        self, user_id: str, counterpart_id: str | None = None
    ) -> BalanceSummary:
        user = self.users.get(user_id)
        where = _party_filters(user, counterpart_id)

        try:
            bookings = self.db.query(
                BOOKINGS,
                where={**where, "status": BookingStatus.APPROVED},
                order_by="date",
            )
        except StoreUnavailableError:
            logger.warning("Bookings unavailable, owed total unknown for %s", user_id)
            bookings = None

        try:
            payments = self.db.query(PAYMENTS, where=where)
        except StoreUnavailableError:
            logger.warning("Payments unavailable, paid total unknown for %s", user_id)
            payments = None

        return summarize(
            user_id, bookings, payments, counterpart_id=counterpart_id
        )


class BalanceWatcher:
    """
    Live balance for one user. Each store delivery replaces the cached
    bookings or payments wholesale, then the summary is recomputed and
    handed to ``on_change``.
    """

    def __init__(
        self,
        db: InMemoryDocumentStore,
        user_id: str,
        on_change: Callable[[BalanceSummary], None],
        *,
        counterpart_id: str | None = None,
    ):
        self.user_id = user_id
        self.counterpart_id = counterpart_id
        self.on_change = on_change
        self.latest: BalanceSummary | None = None
        self._bookings: list[Booking] | None = None
        self._payments: list[Payment] | None = None
        self._ready = False

        user = UserDirectory(db).get(user_id)
        where = _party_filters(user, counterpart_id)
        self._unsubscribers: list[Unsubscribe] = []
        try:
            self._unsubscribers.append(
                db.subscribe(
                    BOOKINGS,
                    self._on_bookings,
                    where={**where, "status": BookingStatus.APPROVED},
                    order_by="date",
                    on_error=self._bookings_unavailable,
                )
            )
            self._unsubscribers.append(
                db.subscribe(
                    PAYMENTS,
                    self._on_payments,
                    where=where,
                    on_error=self._payments_unavailable,
                )
            )
        except Exception:
            self.close()
            raise
        self._ready = True
        self._recompute()

    def _on_bookings(self, bookings: list[Booking]) -> None:
        self._bookings = bookings
        self._recompute()

    def _on_payments(self, payments: list[Payment]) -> None:
        self._payments = payments
        self._recompute()

    # the cache stays None (unknown) until the next delivery
    def _bookings_unavailable(self, exc: StoreUnavailableError) -> None:
        logger.warning("Bookings unavailable, owed total unknown for %s", self.user_id)
        self._bookings = None
        self._recompute()

    def _payments_unavailable(self, exc: StoreUnavailableError) -> None:
        logger.warning("Payments unavailable, paid total unknown for %s", self.user_id)
        self._payments = None
        self._recompute()

    def _recompute(self) -> None:
        if not self._ready:
            return
        self.latest = summarize(
            self.user_id,
            self._bookings,
            self._payments,
            counterpart_id=self.counterpart_id,
        )
        self.on_change(self.latest)

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._ready = False
