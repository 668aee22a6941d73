"""
Event log of balance-relevant transitions, and a read model folded from it.

Every booking/payment transition that can move a balance appends a
LedgerEvent in the same batch as the transition itself, so the log and the
documents never disagree. BalanceProjection rebuilds balances from the log
alone, which gives tests a deterministic replay of any history.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from app.database import InMemoryDocumentStore, WriteBatch
from app.models import (
    EVENTS,
    Booking,
    LedgerEvent,
    LedgerEventKind,
    Payment,
    PaymentStatus,
)


def append_event(
    db: InMemoryDocumentStore,
    batch: WriteBatch,
    kind: LedgerEventKind,
    *,
    employer_id: str,
    nanny_id: str,
    occurred_at: datetime,
    booking_id: str | None = None,
    payment_id: str | None = None,
    amount: float = 0.0,
) -> LedgerEvent:
    event = LedgerEvent(
        id=uuid.uuid4().hex,
        sequence=db.next_sequence(),
        kind=kind,
        occurred_at=occurred_at,
        employer_id=employer_id,
        nanny_id=nanny_id,
        booking_id=booking_id,
        payment_id=payment_id,
        amount=amount,
    )
    batch.put(EVENTS, event.id, event)
    return event


def booking_event(
    db: InMemoryDocumentStore,
    batch: WriteBatch,
    kind: LedgerEventKind,
    booking: Booking,
    *,
    occurred_at: datetime,
    amount: float = 0.0,
) -> LedgerEvent:
    return append_event(
        db,
        batch,
        kind,
        employer_id=booking.employer_id,
        nanny_id=booking.nanny_id,
        booking_id=booking.id,
        occurred_at=occurred_at,
        amount=amount,
    )


def payment_event(
    db: InMemoryDocumentStore,
    batch: WriteBatch,
    kind: LedgerEventKind,
    payment: Payment,
    *,
    occurred_at: datetime,
) -> LedgerEvent:
    return append_event(
        db,
        batch,
        kind,
        employer_id=payment.employer_id,
        nanny_id=payment.nanny_id,
        payment_id=payment.id,
        occurred_at=occurred_at,
        amount=payment.amount,
    )


@dataclass
class _Entry:
    employer_id: str
    nanny_id: str
    amount: float
    status: PaymentStatus | None = None

    def involves(self, user_id: str, counterpart_id: str | None) -> bool:
        parties = {self.employer_id, self.nanny_id}
        if user_id not in parties:
            return False
        return counterpart_id is None or counterpart_id in parties


@dataclass
class ProjectedBalance:
    total_owed: float
    total_paid: float
    pending_payments: float

    @property
    def remaining_balance(self) -> float:
        return self.total_owed - self.total_paid


@dataclass
class BalanceProjection:
    owed: dict[str, _Entry] = field(default_factory=dict)
    payments: dict[str, _Entry] = field(default_factory=dict)
    last_sequence: int = 0

    @classmethod
    def replay(cls, events: Iterable[LedgerEvent]) -> "BalanceProjection":
        projection = cls()
        for event in sorted(events, key=lambda e: e.sequence):
            projection.apply(event)
        return projection

    @classmethod
    def from_store(cls, db: InMemoryDocumentStore) -> "BalanceProjection":
        return cls.replay(db.all(EVENTS))

    def apply(self, event: LedgerEvent) -> None:
        if event.sequence <= self.last_sequence:
            raise ValueError(
                f"event {event.sequence} is not after {self.last_sequence}"
            )
        self.last_sequence = event.sequence
        kind = event.kind

        if kind is LedgerEventKind.BOOKING_APPROVED:
            self.owed[event.booking_id] = _Entry(
                event.employer_id, event.nanny_id, event.amount
            )
        elif kind in (
            LedgerEventKind.BOOKING_REVERTED,
            LedgerEventKind.BOOKING_DELETED,
        ):
            self.owed.pop(event.booking_id, None)
        elif kind is LedgerEventKind.PAYMENT_RECORDED:
            self.payments[event.payment_id] = _Entry(
                event.employer_id,
                event.nanny_id,
                event.amount,
                PaymentStatus.PENDING,
            )
        elif kind is LedgerEventKind.PAYMENT_CONFIRMED:
            self._set_payment_status(event, PaymentStatus.CONFIRMED)
        elif kind is LedgerEventKind.PAYMENT_REJECTED:
            self._set_payment_status(event, PaymentStatus.REJECTED)
        elif kind is LedgerEventKind.PAYMENT_DELETED:
            self.payments.pop(event.payment_id, None)

    def _set_payment_status(
        self, event: LedgerEvent, status: PaymentStatus
    ) -> None:
        entry = self.payments.get(event.payment_id)
        if entry is None:
            entry = _Entry(event.employer_id, event.nanny_id, event.amount)
            self.payments[event.payment_id] = entry
        entry.status = status

    def balance_for(
        self, user_id: str, counterpart_id: str | None = None
    ) -> ProjectedBalance:
        owed = sum(
            e.amount
            for e in self.owed.values()
            if e.involves(user_id, counterpart_id)
        )
        mine = [
            e
            for e in self.payments.values()
            if e.involves(user_id, counterpart_id)
        ]
        return ProjectedBalance(
            total_owed=owed,
            total_paid=sum(e.amount for e in mine if e.status and e.status.is_settled),
            pending_payments=sum(
                e.amount for e in mine if e.status is PaymentStatus.PENDING
            ),
        )
