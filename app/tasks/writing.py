"""
Celery tasks for the background book-writing pipeline.

`process_next_scene` is the worker tick: one execution writes at most one
scene, then queues the next execution of itself while work remains. No
state is carried between executions; everything is re-read from the
database.
"""

import logging
from datetime import datetime, timezone

from app.core.celery_app import celery_app
from app.db.base import SessionLocal
from app.models.notification import Notification
from app.models.project import ACTIVE_WRITING_STATUSES, Project, WritingStatus
from app.services.email import EmailClient, EmailDeliveryError, render_book_completed_email
from app.services.orchestrator import BookWriterOrchestrator

logger = logging.getLogger(__name__)


def get_db_session():
    """Get a database session for task execution."""
    return SessionLocal()


def enqueue_next_scene(project_id: str, resume: bool = False, delay: float = 0.0) -> None:
    """Queue one worker tick for a project."""
    process_next_scene_task.apply_async(
        args=[str(project_id)],
        kwargs={"resume": resume},
        countdown=delay or None,
    )


def _mark_project_failed(db, project_id: str, message: str) -> None:
    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None or project.writing_status not in ACTIVE_WRITING_STATUSES:
        return
    project.writing_status = WritingStatus.FAILED
    project.writing_error = message[:2000]
    project.revision = (project.revision or 0) + 1
    db.commit()


@celery_app.task(bind=True, name="app.tasks.process_next_scene")
def process_next_scene_task(self, project_id: str, resume: bool = False):
    """
    Write the next scene of a project.

    Expected outcomes (including generation failures) are recorded on the
    project by the orchestrator. Anything unexpected marks the project
    failed and is re-raised so Celery records it.
    """
    db = get_db_session()
    try:
        orchestrator = BookWriterOrchestrator(db)
        result = orchestrator.tick(project_id, resume=resume)
        logger.info(
            "Tick for project %s: %s %s", project_id, result.status.value, result.message
        )
        return result.model_dump(mode="json")

    except Exception as e:
        logger.exception("Writing tick crashed for project %s", project_id)
        db.rollback()
        _mark_project_failed(db, project_id, f"Unexpected error: {e}")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, name="app.tasks.send_completion_email")
def send_completion_email_task(self, notification_id: str):
    """Deliver a book-completed email. Failures are recorded, never raised."""
    db = get_db_session()
    try:
        notification = (
            db.query(Notification).filter(Notification.id == notification_id).first()
        )
        if notification is None:
            return {"error": "Notification not found"}
        if notification.is_sent:
            return {"status": "already_sent"}

        data = notification.data or {}
        if not data.get("email"):
            notification.error_message = "Recipient has no email address"
            db.commit()
            return {"error": notification.error_message}

        try:
            message_id = EmailClient().send(
                to=data["email"],
                subject=notification.title,
                html=render_book_completed_email(
                    data.get("full_name"),
                    data.get("project_title", ""),
                    data.get("project_url", ""),
                ),
            )
        except EmailDeliveryError as e:
            logger.error("Completion email %s not sent: %s", notification_id, e)
            notification.error_message = str(e)
            db.commit()
            return {"error": str(e)}

        notification.is_sent = True
        notification.sent_at = datetime.now(timezone.utc)
        notification.external_id = message_id
        notification.error_message = None
        db.commit()
        return {"status": "sent", "message_id": message_id}
    finally:
        db.close()
