"""
Employer/nanny relationships.

Each pair has at most one row in the ``links`` collection, either
``proposed`` (awaiting the other party) or ``linked``. The linked/pending
sets on a profile are projections of these rows, so both parties always see
the same state and every change is a single atomic write.
"""

import logging
import uuid

from app.database import InMemoryDocumentStore, WriteBatch
from app.errors import InvariantViolationError, NotAuthorizedError, NotFoundError
from app.models import (
    LINKS,
    NOTIFICATIONS,
    USERS,
    Link,
    LinkState,
    Notification,
    NotificationType,
    NowFn,
    User,
    UserProfile,
    UserRole,
    utc_now,
)
from app.users import UserDirectory

logger = logging.getLogger(__name__)


class RelationshipManager:
    def __init__(self, db: InMemoryDocumentStore, *, now_fn: NowFn = utc_now):
        self.db = db
        self.now_fn = now_fn
        self.users = UserDirectory(db, now_fn=now_fn)

    def _pair(self, a_id: str, b_id: str) -> tuple[User, User]:
        """Return (employer, nanny) for two user ids in either order."""
        if a_id == b_id:
            raise InvariantViolationError("Cannot link a user to themselves")
        a, b = self.users.get(a_id), self.users.get(b_id)
        if a.role is b.role:
            raise InvariantViolationError(
                "Links are only between an employer and a nanny"
            )
        return (a, b) if a.role is UserRole.EMPLOYER else (b, a)

    def _link(self, a_id: str, b_id: str) -> Link | None:
        employer, nanny = self._pair(a_id, b_id)
        return self.db.get(LINKS, Link.key(employer.id, nanny.id))

    def _notify(
        self,
        batch: WriteBatch,
        kind: NotificationType,
        sender: User,
        recipient_id: str,
        message: str,
    ) -> None:
        note = Notification(
            id=uuid.uuid4().hex,
            type=kind,
            from_user_id=sender.id,
            to_user_id=recipient_id,
            created_at=self.now_fn(),
            message=message,
        )
        batch.put(NOTIFICATIONS, note.id, note)

    def links_for(self, user_id: str, state: LinkState | None = None) -> list[Link]:
        user = self.users.get(user_id)
        side = "employer_id" if user.role is UserRole.EMPLOYER else "nanny_id"
        where = {side: user_id}
        if state is not None:
            where["state"] = state
        return self.db.query(LINKS, where=where, order_by="created_at")

    def linked_ids(self, user_id: str) -> list[str]:
        return [
            link.other_party(user_id)
            for link in self.links_for(user_id, LinkState.LINKED)
        ]

    def pending_ids(self, user_id: str) -> list[str]:
        """Counterparts whose proposal awaits this user's decision."""
        return [
            link.proposed_by
            for link in self.links_for(user_id, LinkState.PROPOSED)
            if link.recipient() == user_id
        ]

    def profile(self, user_id: str) -> UserProfile:
        user = self.users.get(user_id)
        profile = UserProfile(**user.model_dump())
        linked = self.linked_ids(user_id)
        pending = self.pending_ids(user_id)
        if user.role is UserRole.EMPLOYER:
            profile.linked_nannies = linked
            profile.pending_nannies = pending
        else:
            profile.linked_employers = linked
            profile.pending_employers = pending
        return profile

    def propose(self, initiator_id: str, counterparty_id: str) -> Link:
        """
        Open a link request to ``counterparty_id``.

        Either role may propose. A nanny's proposal is a request like an
        employer's: it creates a ``proposed`` row the employer must accept,
        it does not link the pair directly. Proposing again for an existing
        pair returns the existing row unchanged.
        """
        employer, nanny = self._pair(initiator_id, counterparty_id)
        key = Link.key(employer.id, nanny.id)

        existing = self.db.get(LINKS, key)
        if existing is not None:
            # already pending or linked: nothing to do
            logger.info("Link %s already %s, propose ignored", key, existing.state)
            return existing

        initiator = employer if initiator_id == employer.id else nanny
        link = Link(
            id=key,
            employer_id=employer.id,
            nanny_id=nanny.id,
            state=LinkState.PROPOSED,
            proposed_by=initiator.id,
            created_at=self.now_fn(),
        )
        batch = self.db.batch().put(LINKS, key, link)
        self._notify(
            batch,
            NotificationType.LINK_REQUEST,
            initiator,
            counterparty_id,
            f"{initiator.display_name} sent you a link request",
        )
        batch.commit()
        logger.info("Link proposed %s by %s", key, initiator.id)
        return link

    def _pending_for_recipient(self, caller_id: str, counterparty_id: str) -> Link:
        link = self._link(caller_id, counterparty_id)
        if link is None or link.state is not LinkState.PROPOSED:
            raise NotFoundError(f"No pending link request from {counterparty_id}")
        if link.recipient() != caller_id:
            logger.warning(
                "User %s tried to answer their own request %s", caller_id, link.id
            )
            raise NotAuthorizedError("Only the invited party can answer a request")
        return link

    def accept(self, caller_id: str, counterparty_id: str) -> Link:
        link = self._pending_for_recipient(caller_id, counterparty_id)
        caller = self.users.get(caller_id)

        extra = self.db.batch()
        self._notify(
            extra,
            NotificationType.LINK_ACCEPTED,
            caller,
            link.proposed_by,
            f"{caller.display_name} accepted your link request",
        )
        accepted = self.db.update_if(
            LINKS,
            link.id,
            expected={"state": LinkState.PROPOSED},
            changes={"state": LinkState.LINKED, "linked_at": self.now_fn()},
            extra=extra,
        )
        if not accepted:
            raise InvariantViolationError(f"Link {link.id} is no longer pending")

        logger.info("Link accepted %s", link.id)
        return self.db.get(LINKS, link.id)

    def reject(self, caller_id: str, counterparty_id: str) -> None:
        link = self._pending_for_recipient(caller_id, counterparty_id)
        caller = self.users.get(caller_id)

        batch = self.db.batch().delete(LINKS, link.id)
        self._notify(
            batch,
            NotificationType.LINK_REJECTED,
            caller,
            link.proposed_by,
            f"{caller.display_name} declined your link request",
        )
        batch.commit()
        logger.info("Link rejected %s", link.id)

    def unlink(self, caller_id: str, counterparty_id: str) -> None:
        link = self._link(caller_id, counterparty_id)
        if link is None or link.state is not LinkState.LINKED:
            raise NotFoundError(f"Not linked with {counterparty_id}")

        self.db.delete(LINKS, link.id)
        logger.info("Unlinked %s", link.id)

    def reset_all(self, user_id: str) -> list[str]:
        """Drop every link of the caller, on both sides, in one batch."""
        links = self.links_for(user_id, LinkState.LINKED)
        batch = self.db.batch()
        for link in links:
            batch.delete(LINKS, link.id)
        if len(batch):
            batch.commit()

        logger.info("Reset %d links for %s", len(links), user_id)
        return [link.other_party(user_id) for link in links]

    def search(self, caller_id: str, term: str) -> list[User]:
        caller = self.users.get(caller_id)
        needle = term.strip().lower()
        if not needle:
            return []

        taken = {link.other_party(caller_id) for link in self.links_for(caller_id)}
        candidates = self.db.query(
            USERS, where={"role": caller.role.counterpart}
        )
        results = [
            user
            for user in candidates
            if user.id != caller_id
            and user.id not in taken
            and needle in user.display_name.lower()
        ]
        return sorted(results, key=lambda u: (u.display_name.lower(), u.id))
