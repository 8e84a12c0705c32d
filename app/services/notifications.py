"""
Completion notifications.

Best-effort only: nothing in here may fail or roll back a completed book.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.notification import Notification, NotificationChannel, NotificationType
from app.models.project import Project

logger = logging.getLogger(__name__)


def _queue_email(notification_id: str) -> None:
    from app.tasks.writing import send_completion_email_task

    send_completion_email_task.delay(notification_id)


class CompletionNotifier:
    """Records a book-completed notification and queues its email."""

    def __init__(self, db: Session, deliver: Optional[Callable[[str], None]] = None):
        self.db = db
        self.deliver = deliver or _queue_email

    @staticmethod
    def dedupe_key(project: Project) -> str:
        return f"book_completed:{project.id}:{project.writing_run_id}"

    def notify_completion(self, project: Project) -> Optional[Notification]:
        """Create the notification once per writing run and hand it to delivery."""
        try:
            return self._notify(project)
        except Exception:
            self.db.rollback()
            logger.exception("Completion notification failed for project %s", project.id)
            return None

    def _notify(self, project: Project) -> Optional[Notification]:
        key = self.dedupe_key(project)
        if self.db.query(Notification.id).filter(Notification.dedupe_key == key).first():
            logger.info("Completion already notified for project %s", project.id)
            return None

        owner = project.owner
        notification = Notification(
            user_id=project.owner_id,
            project_id=project.id,
            notification_type=NotificationType.BOOK_COMPLETED,
            channel=NotificationChannel.EMAIL,
            title=f"Your book \"{project.title}\" is ready",
            message=f"All chapters of \"{project.title}\" have been written.",
            data={
                "email": owner.email if owner else None,
                "full_name": owner.full_name if owner else None,
                "project_title": project.title,
                "project_url": f"{settings.APP_URL}/projects/{project.id}",
                "word_count": project.word_count,
            },
            dedupe_key=key,
        )
        self.db.add(notification)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("Completion already notified for project %s", project.id)
            return None

        self.deliver(str(notification.id))
        logger.info("Queued completion email for project %s", project.id)
        return notification
