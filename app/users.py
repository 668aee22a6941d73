import logging
import uuid

from app.database import InMemoryDocumentStore
from app.errors import InvariantViolationError, NotAuthorizedError, NotFoundError
from app.models import USERS, NowFn, User, UserRole, utc_now

logger = logging.getLogger(__name__)


class UserDirectory:
    """Identity records. Provisioning proper belongs to the identity provider."""

    def __init__(self, db: InMemoryDocumentStore, *, now_fn: NowFn = utc_now):
        self.db = db
        self.now_fn = now_fn

    def register(
        self,
        *,
        email: str,
        display_name: str,
        role: UserRole,
        hourly_rate: float | None = None,
        user_id: str | None = None,
    ) -> User:
        user_id = user_id or uuid.uuid4().hex
        if self.db.get(USERS, user_id) is not None:
            raise InvariantViolationError(f"user {user_id} already exists")

        user = User(
            id=user_id,
            email=email,
            display_name=display_name or "Anonymous User",
            role=role,
            hourly_rate=hourly_rate,
            created_at=self.now_fn(),
        )
        self.db.put(USERS, user.id, user)
        logger.info("Registered %s %s", user.role, user.id)
        return user

    def get(self, user_id: str) -> User:
        user = self.db.get(USERS, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def require_role(self, user_id: str, role: UserRole) -> User:
        user = self.get(user_id)
        if user.role is not role:
            raise NotAuthorizedError(f"Only a {role} can do this")
        return user

    def update_rate(self, caller_id: str, user_id: str, hourly_rate: float) -> User:
        """Change a nanny's rate. Existing bookings keep their snapshot."""
        if caller_id != user_id:
            raise NotAuthorizedError("Users can only change their own rate")
        self.require_role(user_id, UserRole.NANNY)
        if hourly_rate <= 0:
            raise InvariantViolationError("hourlyRate must be positive")

        self.db.batch().update(USERS, user_id, hourly_rate=hourly_rate).commit()
        logger.info("Nanny %s rate set to %.2f", user_id, hourly_rate)
        return self.get(user_id)
