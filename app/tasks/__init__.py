"""
Celery tasks for the background writing pipeline.

These tasks are queued and executed by Celery workers.
"""

from app.tasks.writing import (
    enqueue_next_scene,
    process_next_scene_task,
    send_completion_email_task,
)

__all__ = [
    "enqueue_next_scene",
    "process_next_scene_task",
    "send_completion_email_task",
]
