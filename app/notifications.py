from app.database import InMemoryDocumentStore
from app.errors import NotAuthorizedError, NotFoundError
from app.models import NOTIFICATIONS, Notification, NotificationStatus


class NotificationInbox:
    def __init__(self, db: InMemoryDocumentStore):
        self.db = db

    def list_for(self, user_id: str, *, unread_only: bool = False) -> list[Notification]:
        where = {"to_user_id": user_id}
        if unread_only:
            where["status"] = NotificationStatus.UNREAD
        return self.db.query(
            NOTIFICATIONS, where=where, order_by="created_at", descending=True
        )

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        note = self.db.get(NOTIFICATIONS, notification_id)
        if note is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if note.to_user_id != user_id:
            raise NotAuthorizedError("Not your notification")

        self.db.batch().update(
            NOTIFICATIONS, notification_id, status=NotificationStatus.READ
        ).commit()
        return self.db.get(NOTIFICATIONS, notification_id)
