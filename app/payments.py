import logging
import uuid

from app.config import Settings
from app.database import InMemoryDocumentStore
from app.errors import (
    InvariantViolationError,
    NotAuthorizedError,
    NotFoundError,
    OperationDisabledError,
)
from app.ledger import booking_event, payment_event
from app.models import (
    BOOKINGS,
    PAYMENTS,
    BookingStatus,
    LedgerEventKind,
    NowFn,
    Payment,
    PaymentMethod,
    PaymentStatus,
    UserRole,
    utc_now,
)
from app.users import UserDirectory

logger = logging.getLogger(__name__)


class PaymentManager:
    def __init__(
        self,
        db: InMemoryDocumentStore,
        *,
        settings: Settings | None = None,
        now_fn: NowFn = utc_now,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.now_fn = now_fn
        self.users = UserDirectory(db, now_fn=now_fn)

    def get(self, payment_id: str) -> Payment:
        payment = self.db.get(PAYMENTS, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def _side(self, user_id: str) -> str:
        user = self.users.get(user_id)
        return "employer_id" if user.role is UserRole.EMPLOYER else "nanny_id"

    def list_for(self, user_id: str) -> list[Payment]:
        return self.db.query(
            PAYMENTS,
            where={self._side(user_id): user_id},
            order_by="date",
            descending=True,
        )

    def record(
        self,
        employer_id: str,
        nanny_id: str,
        amount: float,
        method: PaymentMethod,
        note: str | None = None,
    ) -> Payment:
        employer = self.users.require_role(employer_id, UserRole.EMPLOYER)
        nanny = self.users.get(nanny_id)
        if nanny.role is not UserRole.NANNY:
            raise InvariantViolationError(f"User {nanny_id} is not a nanny")
        if amount <= 0:
            raise InvariantViolationError("Payment amount must be positive")

        payment = Payment(
            id=uuid.uuid4().hex,
            amount=amount,
            date=self.now_fn(),
            status=PaymentStatus.PENDING,
            employer_id=employer.id,
            nanny_id=nanny.id,
            method=method,
            note=note or None,
            employer_name=employer.display_name,
            nanny_name=nanny.display_name,
        )
        batch = self.db.batch().put(PAYMENTS, payment.id, payment)
        payment_event(
            self.db,
            batch,
            LedgerEventKind.PAYMENT_RECORDED,
            payment,
            occurred_at=payment.date,
        )
        batch.commit()

        logger.info(
            "Employer %s recorded %.2f %s payment to nanny %s",
            employer_id,
            amount,
            method,
            nanny_id,
        )
        return payment

    def _decide(
        self, payment_id: str, nanny_id: str, status: PaymentStatus
    ) -> Payment:
        payment = self.get(payment_id)
        if payment.nanny_id != nanny_id:
            logger.warning(
                "User %s tried to decide payment %s of nanny %s",
                nanny_id,
                payment_id,
                payment.nanny_id,
            )
            raise NotAuthorizedError("Only the paid nanny can decide a payment")

        kind = (
            LedgerEventKind.PAYMENT_CONFIRMED
            if status is PaymentStatus.CONFIRMED
            else LedgerEventKind.PAYMENT_REJECTED
        )
        extra = self.db.batch()
        payment_event(self.db, extra, kind, payment, occurred_at=self.now_fn())

        decided = self.db.update_if(
            PAYMENTS,
            payment_id,
            expected={"status": PaymentStatus.PENDING},
            changes={"status": status},
            extra=extra,
        )
        if not decided:
            raise InvariantViolationError(
                f"Payment {payment_id} is {payment.status}, not pending"
            )

        logger.info("Payment %s %s by nanny %s", payment_id, status, nanny_id)
        return self.get(payment_id)

    def confirm(self, payment_id: str, nanny_id: str) -> Payment:
        return self._decide(payment_id, nanny_id, PaymentStatus.CONFIRMED)

    def reject(self, payment_id: str, nanny_id: str) -> Payment:
        return self._decide(payment_id, nanny_id, PaymentStatus.REJECTED)

    def delete(self, payment_id: str, caller_id: str) -> None:
        payment = self.get(payment_id)
        if caller_id not in (payment.employer_id, payment.nanny_id):
            raise NotAuthorizedError("Only a party to the payment can delete it")

        batch = self.db.batch().delete(PAYMENTS, payment_id)
        payment_event(
            self.db,
            batch,
            LedgerEventKind.PAYMENT_DELETED,
            payment,
            occurred_at=self.now_fn(),
        )
        batch.commit()
        logger.info("Payment %s (%s) deleted by %s", payment_id, payment.status, caller_id)

    def reset_balances(self, caller_id: str) -> dict[str, int]:
        """
        Delete every payment of the caller and send their approved bookings
        back to pending, in one batch. Irreversible; development use only.
        """
        if not self.settings.destructive_resets_enabled:
            logger.warning("Refused balance reset for %s: resets disabled", caller_id)
            raise OperationDisabledError(
                "Balance resets are disabled in this environment"
            )

        side = self._side(caller_id)
        bookings = self.db.query(
            BOOKINGS, where={side: caller_id, "status": BookingStatus.APPROVED}
        )
        payments = self.db.query(PAYMENTS, where={side: caller_id})
        now = self.now_fn()

        batch = self.db.batch()
        for booking in bookings:
            batch.update(BOOKINGS, booking.id, status=BookingStatus.PENDING)
            booking_event(
                self.db,
                batch,
                LedgerEventKind.BOOKING_REVERTED,
                booking,
                occurred_at=now,
            )
        for payment in payments:
            batch.delete(PAYMENTS, payment.id)
            payment_event(
                self.db,
                batch,
                LedgerEventKind.PAYMENT_DELETED,
                payment,
                occurred_at=now,
            )
        if len(batch):
            batch.commit()

        logger.warning(
            "Balances reset for %s: %d bookings reverted, %d payments deleted",
            caller_id,
            len(bookings),
            len(payments),
        )
        return {"bookingsReverted": len(bookings), "paymentsDeleted": len(payments)}
