"""
Recovery scanner for stuck or interrupted writing runs.

A run that died mid-tick leaves no error behind, so recovery works from
chapter progress alone: in every chapter with `scenes_completed` below its
scene count, the trailing scenes from index `scenes_completed` onward are
presumed unwritten and queued as writing jobs.

A run that is still live (active status and recent activity) keeps its own
worker chain: recovery only queues the jobs and leaves live claims alone.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.exceptions import (
    ProjectAccessDeniedError,
    ProjectNotFoundError,
    WritingValidationError,
)
from app.models.chapter import Chapter, SceneStatus
from app.models.project import ACTIVE_WRITING_STATUSES, Project, WritingStatus
from app.models.user import User
from app.models.writing_job import RECOVERY_JOB_PRIORITY, JobStatus, JobType, WritingJob
from app.schemas.writing import ChapterRecovery, RecoveryResponse
from app.services.orchestrator import Dispatcher, celery_dispatch, transition_writing_status
from app.services.outline_store import OutlineStore, utcnow

logger = logging.getLogger(__name__)

PURGEABLE_JOB_STATUSES = [JobStatus.PENDING, JobStatus.FAILED, JobStatus.PAUSED]


def missing_scene_indices(chapter: Chapter) -> list[int]:
    return list(range(chapter.scenes_completed or 0, chapter.total_scenes))


class RecoveryScanner:
    def __init__(self, db: Session, dispatch: Optional[Dispatcher] = None):
        self.db = db
        self.dispatch = dispatch or celery_dispatch
        self.store = OutlineStore(db)

    def _run_is_live(self, project: Project) -> bool:
        """Active and touched by a worker within the claim TTL."""
        cutoff = utcnow() - self.store.claim_ttl
        live = (
            self.db.query(Project.id)
            .filter(
                Project.id == project.id,
                Project.writing_status.in_(list(ACTIVE_WRITING_STATUSES)),
                Project.last_activity_at >= cutoff,
            )
            .first()
        )
        return live is not None

    def _live_claimed_chapters(self, project: Project) -> set:
        cutoff = utcnow() - self.store.claim_ttl
        rows = self.db.query(Chapter.id).filter(
            Chapter.project_id == project.id,
            Chapter.claim_token.isnot(None),
            Chapter.claimed_at >= cutoff,
        )
        return {chapter_id for (chapter_id,) in rows}

    def recover(
        self, project_id: UUID, user: Optional[User] = None, admin: bool = False
    ) -> RecoveryResponse:
        """
        Re-queue every presumed-missing scene and restart the worker if it
        is gone.

        Safe to repeat: each call replaces the project's unstarted jobs with
        the same set, and a live run never gets a second worker chain.
        """
        project = self.db.query(Project).filter(Project.id == project_id).first()
        if project is None:
            raise ProjectNotFoundError("Project not found")
        if not admin and (user is None or project.owner_id != user.id):
            raise ProjectAccessDeniedError("Not authorized to recover this project")

        chapters = self.store.list_chapters(project.id)
        if not chapters:
            raise WritingValidationError("Project has no chapters to recover")

        incomplete = [
            (chapter, missing_scene_indices(chapter))
            for chapter in chapters
            if chapter.total_scenes and (chapter.scenes_completed or 0) < chapter.total_scenes
        ]

        if not incomplete:
            total_words = self.store.project_word_count(project.id)
            target_words = project.target_word_count or 0
            percentage = round(total_words / target_words * 100) if target_words else 100
            return RecoveryResponse(
                message="No missing scenes found",
                total_words=total_words,
                target_words=target_words,
                percentage=percentage,
            )

        live = self._run_is_live(project)
        held = self._live_claimed_chapters(project) if live else set()

        purged = (
            self.db.query(WritingJob)
            .filter(
                WritingJob.project_id == project.id,
                WritingJob.status.in_(PURGEABLE_JOB_STATUSES),
            )
            .delete(synchronize_session=False)
        )
        in_flight = {
            (job.chapter_id, job.scene_index)
            for job in self.db.query(WritingJob).filter(
                WritingJob.project_id == project.id,
                WritingJob.status == JobStatus.PROCESSING,
            )
        }

        created = 0
        summary = []
        for chapter, indices in incomplete:
            scenes = chapter.scenes
            if chapter.id in held:
                # The live worker finishes its scene; queue the rest behind it
                indices_to_queue = [
                    i for i in indices if scenes[i].get("status") != SceneStatus.WRITING
                ]
            else:
                self.store.reopen_scenes(chapter, indices)
                indices_to_queue = indices
            for index in indices_to_queue:
                if (chapter.id, index) in in_flight:
                    continue
                self.db.add(
                    WritingJob(
                        project_id=project.id,
                        chapter_id=chapter.id,
                        job_type=JobType.WRITE_SCENE,
                        scene_index=index,
                        scene_outline=scenes[index],
                        status=JobStatus.PENDING,
                        priority=RECOVERY_JOB_PRIORITY,
                        sort_order=chapter.sort_order * 100 + index,
                    )
                )
                created += 1
            summary.append(
                ChapterRecovery(
                    chapter_id=str(chapter.id),
                    title=chapter.title,
                    missing_scenes=len(indices),
                )
            )

        total_missing = sum(len(indices) for _, indices in incomplete)
        transition_writing_status(
            self.db,
            project,
            None,
            project.writing_status if live else WritingStatus.WRITING,
            writing_error=None,
            writing_completed_at=None,
            failed_scenes=0,
            total_scenes=self.store.count_scenes(self.store.list_chapters(project.id)),
        )
        self.db.commit()

        logger.info(
            "Recovered project %s: %d jobs created (%d purged) across %d chapters",
            project.id,
            created,
            purged,
            len(incomplete),
        )
        if live:
            logger.info("Project %s has a live worker; not starting another", project.id)
        else:
            self.dispatch(str(project.id), resume=True, delay=0.0)

        return RecoveryResponse(
            message=f"Queued {total_missing} missing scenes in {len(incomplete)} chapters",
            recovered_scenes=created,
            incomplete_chapters_count=len(incomplete),
            total_missing_scenes=total_missing,
            chapters=summary,
        )
