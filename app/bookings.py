import logging
import uuid
from collections.abc import Iterable
from datetime import date

from pydantic import ValidationError

from app.database import InMemoryDocumentStore
from app.errors import InvariantViolationError, NotAuthorizedError, NotFoundError
from app.ledger import booking_event
from app.models import (
    BOOKINGS,
    Booking,
    BookingStatus,
    LedgerEventKind,
    NowFn,
    UserRole,
    parse_wall_clock,
    utc_now,
)
from app.reconciliation import booking_amount
from app.users import UserDirectory

logger = logging.getLogger(__name__)

DECISIONS = (BookingStatus.APPROVED, BookingStatus.REJECTED)


def validate_hours(start_time: str, end_time: str) -> None:
    try:
        start, end = parse_wall_clock(start_time), parse_wall_clock(end_time)
    except ValueError as exc:
        raise InvariantViolationError(str(exc)) from None
    if end <= start:
        raise InvariantViolationError(
            "endTime must be later than startTime on the same day"
        )


class BookingManager:
    def __init__(self, db: InMemoryDocumentStore, *, now_fn: NowFn = utc_now):
        self.db = db
        self.now_fn = now_fn
        self.users = UserDirectory(db, now_fn=now_fn)

    def get(self, booking_id: str) -> Booking:
        booking = self.db.get(BOOKINGS, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    def list_for(
        self, user_id: str, status: BookingStatus | None = None
    ) -> list[Booking]:
        user = self.users.get(user_id)
        side = "employer_id" if user.role is UserRole.EMPLOYER else "nanny_id"
        where = {side: user_id}
        if status is not None:
            where["status"] = status
        bookings = self.db.query(BOOKINGS, where=where)
        return sorted(
            bookings, key=lambda b: (b.date, parse_wall_clock(b.start_time))
        )

    def create(
        self,
        employer_id: str,
        nanny_id: str,
        dates: Iterable[date],
        start_time: str,
        end_time: str,
    ) -> list[Booking]:
        """
        One pending booking per distinct date, each priced at the nanny's
        current rate. Dates are written one at a time: if the store fails
        part way, bookings already written stay and the error propagates.
        """
        self.users.require_role(employer_id, UserRole.EMPLOYER)
        nanny = self.users.get(nanny_id)
        if nanny.role is not UserRole.NANNY:
            raise InvariantViolationError(f"User {nanny_id} is not a nanny")
        validate_hours(start_time, end_time)

        days = list(dict.fromkeys(dates))
        if not days:
            raise InvariantViolationError("Pick at least one date")

        created: list[Booking] = []
        for day in days:
            try:
                booking = Booking(
                    id=uuid.uuid4().hex,
                    date=day,
                    start_time=start_time,
                    end_time=end_time,
                    status=BookingStatus.PENDING,
                    employer_id=employer_id,
                    nanny_id=nanny_id,
                    hourly_rate=nanny.hourly_rate,
                    created_at=self.now_fn(),
                )
            except ValidationError as exc:
                raise InvariantViolationError(str(exc)) from exc
            self.db.put(BOOKINGS, booking.id, booking)
            created.append(booking)

        logger.info(
            "Employer %s requested %d booking(s) with nanny %s at %.2f/h",
            employer_id,
            len(created),
            nanny_id,
            nanny.hourly_rate,
        )
        return created

    def set_status(
        self, booking_id: str, nanny_id: str, status: BookingStatus
    ) -> Booking:
        if status not in DECISIONS:
            raise InvariantViolationError(f"Cannot move a booking to {status}")

        booking = self.get(booking_id)
        if booking.nanny_id != nanny_id:
            logger.warning(
                "User %s tried to decide booking %s of nanny %s",
                nanny_id,
                booking_id,
                booking.nanny_id,
            )
            raise NotAuthorizedError("Only the booked nanny can decide a booking")

        extra = self.db.batch()
        if status is BookingStatus.APPROVED:
            booking_event(
                self.db,
                extra,
                LedgerEventKind.BOOKING_APPROVED,
                booking,
                occurred_at=self.now_fn(),
                amount=booking_amount(booking),
            )

        decided = self.db.update_if(
            BOOKINGS,
            booking_id,
            expected={"status": BookingStatus.PENDING},
            changes={"status": status},
            extra=extra,
        )
        if not decided:
            raise InvariantViolationError(
                f"Booking {booking_id} is {booking.status}, not pending"
            )

        logger.info("Booking %s %s by nanny %s", booking_id, status, nanny_id)
        return self.get(booking_id)

    def _owned(self, booking_id: str, employer_id: str) -> Booking:
        booking = self.get(booking_id)
        if booking.employer_id != employer_id:
            logger.warning(
                "User %s tried to change booking %s of employer %s",
                employer_id,
                booking_id,
                booking.employer_id,
            )
            raise NotAuthorizedError("Only the requesting employer can do this")
        return booking

    def edit(
        self, booking_id: str, employer_id: str, start_time: str, end_time: str
    ) -> Booking:
        """Change the hours of a pending booking. Day, status and rate stay."""
        booking = self._owned(booking_id, employer_id)
        validate_hours(start_time, end_time)

        edited = self.db.update_if(
            BOOKINGS,
            booking_id,
            expected={"status": BookingStatus.PENDING},
            changes={"start_time": start_time, "end_time": end_time},
        )
        if not edited:
            raise InvariantViolationError(
                f"Booking {booking_id} is {booking.status}; only pending bookings can be edited"
            )

        logger.info("Booking %s moved to %s-%s", booking_id, start_time, end_time)
        return self.get(booking_id)

    def delete(self, booking_id: str, employer_id: str) -> None:
        booking = self._owned(booking_id, employer_id)

        batch = self.db.batch().delete(BOOKINGS, booking_id)
        booking_event(
            self.db,
            batch,
            LedgerEventKind.BOOKING_DELETED,
            booking,
            occurred_at=self.now_fn(),
        )
        batch.commit()
        logger.info("Booking %s (%s) deleted", booking_id, booking.status)
