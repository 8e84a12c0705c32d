"""
Book writing orchestrator.

Owns the project writing state machine:

    idle -> queued -> generating_outlines -> writing -> completed | incomplete
                                  |             |
                                  +--> paused / failed --(resume)--> queued
    any state --(cancel)--> idle

`orchestrate()` handles user actions and returns immediately. The actual
writing happens in `tick()`, which the Celery worker runs once per scene:
each tick re-reads durable state, writes at most one scene, and dispatches
the next tick while work remains. Pause and cancel take effect at the next
tick boundary.
"""

import logging
import os
import socket
import uuid
from typing import Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConcurrentModificationError,
    CreditLedgerError,
    FatalGenerationError,
    InsufficientCreditsError,
    InvalidTransitionError,
    ProjectAccessDeniedError,
    ProjectNotFoundError,
    WritingError,
    WritingValidationError,
)
from app.models.chapter import Chapter, SceneStatus
from app.models.project import (
    ACTIVE_WRITING_STATUSES,
    Project,
    ProjectStatus,
    WritingStatus,
)
from app.models.user import User
from app.models.writing_job import JobStatus, WritingJob
from app.schemas.writing import (
    OrchestrateResponse,
    SceneOutline,
    TickResult,
    TickStatus,
    WritingAction,
)
from app.services.credit_ledger import CreditLedger
from app.services.notifications import CompletionNotifier
from app.services.outline_generator import OutlineGenerator, OutlineRequest
from app.services.outline_store import OutlineStore, utcnow
from app.services.scene_generator import SceneContext, SceneGenerator

logger = logging.getLogger(__name__)

# dispatch(project_id, resume=False, delay=0.0)
Dispatcher = Callable[..., None]

INACTIVE_WRITING_STATUSES = frozenset(set(WritingStatus) - ACTIVE_WRITING_STATUSES)
RESUMABLE_STATUSES = frozenset({WritingStatus.PAUSED, WritingStatus.FAILED})

WORKER_ID = f"{socket.gethostname()}:{os.getpid()}"


def celery_dispatch(project_id: str, resume: bool = False, delay: float = 0.0) -> None:
    from app.tasks.writing import enqueue_next_scene

    enqueue_next_scene(project_id, resume=resume, delay=delay)


def transition_writing_status(
    db: Session,
    project: Project,
    allowed_from: Optional[Iterable[WritingStatus]],
    to_status: WritingStatus,
    **fields,
) -> None:
    """
    Compare-and-swap the project's writing status on its revision.

    Extra keyword arguments are written to the same-named Project columns in
    the same UPDATE. Does not commit.

    Raises:
        InvalidTransitionError: current status is not in `allowed_from`.
        ConcurrentModificationError: another request changed the project
            since it was read.
    """
    if allowed_from is not None and project.writing_status not in allowed_from:
        raise InvalidTransitionError(f"move to {to_status.value}", project.writing_status.value)

    values = {getattr(Project, name): value for name, value in fields.items()}
    values.update(
        {
            Project.writing_status: to_status,
            Project.revision: Project.revision + 1,
            Project.last_activity_at: utcnow(),
        }
    )
    updated = (
        db.query(Project)
        .filter(Project.id == project.id, Project.revision == project.revision)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise ConcurrentModificationError("Project was modified by another request, please retry")

    logger.info(
        "Project %s writing status %s -> %s",
        project.id,
        project.writing_status.value,
        to_status.value,
    )
    db.expire(project)


class BookWriterOrchestrator:
    """Drives one project's writing pipeline within a database session."""

    def __init__(
        self,
        db: Session,
        dispatch: Optional[Dispatcher] = None,
        scene_generator: Optional[SceneGenerator] = None,
        outline_generator: Optional[OutlineGenerator] = None,
        ledger: Optional[CreditLedger] = None,
        notifier: Optional[CompletionNotifier] = None,
        scene_delay: Optional[float] = None,
    ):
        self.db = db
        self.dispatch = dispatch or celery_dispatch
        self.store = OutlineStore(db)
        self.ledger = ledger or CreditLedger(db)
        self.notifier = notifier or CompletionNotifier(db)
        self.scene_delay = settings.SCENE_DELAY_SECONDS if scene_delay is None else scene_delay
        self._scene_generator = scene_generator
        self._outline_generator = outline_generator

    # Generators are built on first use so user actions never need LLM credentials

    @property
    def scene_generator(self) -> SceneGenerator:
        if self._scene_generator is None:
            self._scene_generator = SceneGenerator()
        return self._scene_generator

    @property
    def outline_generator(self) -> OutlineGenerator:
        if self._outline_generator is None:
            self._outline_generator = OutlineGenerator()
        return self._outline_generator

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def orchestrate(
        self, project_id: UUID, action: WritingAction, user: User
    ) -> OrchestrateResponse:
        """
        Apply a user action to a project's writing pipeline.

        Ownership is checked before anything is modified.

        Raises:
            ProjectNotFoundError, ProjectAccessDeniedError,
            WritingValidationError, InsufficientCreditsError,
            ConcurrentModificationError
        """
        project = self.get_owned_project(project_id, user)
        handlers = {
            WritingAction.START: self.start,
            WritingAction.RESUME: self.resume,
            WritingAction.PAUSE: self.pause,
            WritingAction.CANCEL: self.cancel,
        }
        response = handlers[WritingAction(action)](project)
        logger.info(
            "Project %s: %s by user %s -> %s", project.id, action, user.id, response.status
        )
        return response

    def get_owned_project(self, project_id: UUID, user: User) -> Project:
        project = self.db.query(Project).filter(Project.id == project_id).first()
        if project is None:
            raise ProjectNotFoundError("Project not found")
        if project.owner_id != user.id:
            raise ProjectAccessDeniedError("Not authorized to modify this project")
        return project

    def start(self, project: Project) -> OrchestrateResponse:
        if project.is_writing_active:
            raise InvalidTransitionError("start", project.writing_status.value)
        if project.status == ProjectStatus.ARCHIVED:
            raise WritingValidationError("Archived projects cannot be written")

        chapters = self.store.list_chapters(project.id)
        if not chapters:
            raise WritingValidationError("Project has no chapters to write")

        balance = self.ledger.get_balance(project.owner_id)
        if not balance.unlimited and balance.available <= 0:
            raise InsufficientCreditsError("No word credits left for this month")

        total_scenes = self.store.count_scenes(chapters)
        self.store.reset_for_run(project.id)
        self._delete_jobs(project.id)
        self._transition(
            project,
            INACTIVE_WRITING_STATUSES,
            WritingStatus.QUEUED,
            writing_error=None,
            writing_run_id=uuid.uuid4(),
            total_scenes=total_scenes,
            completed_scenes=0,
            failed_scenes=0,
            writing_started_at=utcnow(),
            writing_completed_at=None,
        )
        self.db.commit()

        self._dispatch_or_fail(project)
        return OrchestrateResponse(
            status=WritingStatus.QUEUED.value,
            message="Book writing started in the background",
            total_scenes=total_scenes,
        )

    def pause(self, project: Project) -> OrchestrateResponse:
        if not project.is_writing_active:
            raise InvalidTransitionError("pause", project.writing_status.value)
        self._transition(project, ACTIVE_WRITING_STATUSES, WritingStatus.PAUSED)
        self._set_job_status(project.id, [JobStatus.PENDING], JobStatus.PAUSED)
        self.db.commit()
        return OrchestrateResponse(
            status=WritingStatus.PAUSED.value,
            message="Writing paused. A scene already in progress will finish first.",
        )

    def resume(self, project: Project) -> OrchestrateResponse:
        if project.writing_status not in RESUMABLE_STATUSES:
            raise InvalidTransitionError("resume", project.writing_status.value)

        reset = self.store.reset_failed_scenes(project.id)
        self._set_job_status(
            project.id, [JobStatus.PAUSED, JobStatus.FAILED], JobStatus.PENDING
        )
        total_scenes = self.store.count_scenes(self.store.list_chapters(project.id))
        self._transition(
            project,
            RESUMABLE_STATUSES,
            WritingStatus.QUEUED,
            writing_error=None,
            failed_scenes=0,
            total_scenes=total_scenes,
        )
        self.db.commit()
        if reset:
            logger.info("Project %s: %d failed scenes queued for retry", project.id, reset)

        self._dispatch_or_fail(project, resume=True)
        return OrchestrateResponse(
            status=WritingStatus.QUEUED.value,
            message="Writing resumed",
            total_scenes=total_scenes,
        )

    def cancel(self, project: Project) -> OrchestrateResponse:
        self.store.reset_for_run(project.id)
        self._delete_jobs(project.id)
        self._transition(
            project,
            None,
            WritingStatus.IDLE,
            writing_error=None,
            completed_scenes=0,
            failed_scenes=0,
        )
        self.db.commit()
        return OrchestrateResponse(
            status=WritingStatus.IDLE.value,
            message="Writing cancelled. Already written text has been kept.",
        )

    # ------------------------------------------------------------------
    # Worker tick
    # ------------------------------------------------------------------

    def tick(self, project_id: UUID, resume: bool = False) -> TickResult:
        """Advance the project by at most one scene (or one round of outlines)."""
        project = (
            self.db.query(Project).filter(Project.id == project_id).populate_existing().first()
        )
        if project is None:
            return TickResult(status=TickStatus.STOPPED, message="Project not found")
        if not project.is_writing_active:
            return self._stopped(project)

        if resume:
            self._sync_counters(project)

        chapters = self.store.list_chapters(project.id)
        if not chapters:
            message = "Project has no chapters to write"
            self._try_transition(project, ACTIVE_WRITING_STATUSES, WritingStatus.FAILED, writing_error=message)
            return TickResult(status=TickStatus.FAILED, message=message, error=message)

        missing_outlines = [c for c in chapters if not c.total_scenes]
        if missing_outlines:
            return self._generate_outlines(project, chapters, missing_outlines)

        if project.writing_status != WritingStatus.WRITING:
            if not self._try_transition(project, ACTIVE_WRITING_STATUSES, WritingStatus.WRITING):
                return self._stopped(project)

        target = self._next_target(project)
        if target is None:
            return self._finalize(project)
        chapter, scene_index, job = target

        return self._write_scene(project, chapter, scene_index, job)

    def _write_scene(
        self,
        project: Project,
        chapter: Chapter,
        scene_index: int,
        job: Optional[WritingJob],
    ) -> TickResult:
        scene = SceneOutline.model_validate(chapter.scenes[scene_index])

        if not self.ledger.can_consume(project.owner_id, scene.target_words):
            message = "Not enough word credits to continue writing"
            self._release_job(job, JobStatus.PAUSED)
            self._try_transition(
                project, ACTIVE_WRITING_STATUSES, WritingStatus.PAUSED, writing_error=message
            )
            logger.info("Project %s paused: insufficient credits", project.id)
            return TickResult(status=TickStatus.STOPPED, message=message, error=message)

        token = self.store.claim_scene(chapter, scene_index)
        if token is None:
            self._release_job(job, JobStatus.PENDING)
            return TickResult(
                status=TickStatus.STOPPED,
                message="Scene is being written by another worker",
                chapter_id=str(chapter.id),
                scene_index=scene_index,
            )

        context = SceneContext(
            chapter_title=chapter.title,
            scene_index=scene_index,
            scene_count=chapter.total_scenes,
            scene=scene,
            genre=project.genre,
            subgenre=project.subgenre,
            target_audience=project.target_audience,
            story_idea=project.story_idea,
            story_structure=project.story_structure,
            previous_text=self.store.previous_text(chapter.id),
        )

        try:
            draft = self.scene_generator.generate_scene(context)
        except FatalGenerationError as e:
            return self._fail_scene(project, chapter, scene_index, token, job, e.message)
        except Exception:
            self.store.release_claim(chapter.id, scene_index, token)
            self._release_job(job, JobStatus.PENDING)
            raise

        written = self.store.complete_scene(
            chapter.id, scene_index, token, draft.paragraphs, draft.word_count
        )
        if written is None:
            self._release_job(job, JobStatus.PENDING)
            return TickResult(
                status=TickStatus.STOPPED,
                message="Scene claim was revoked while writing; output discarded",
                chapter_id=str(chapter.id),
                scene_index=scene_index,
            )

        total_words = self._sync_counters(project)
        self._debit(project, written, scene_index, token, draft.word_count)
        if job is not None:
            self._delete_job(job)

        self.db.refresh(project)
        result = TickResult(
            status=TickStatus.SCENE_COMPLETED,
            message=f"Wrote scene {scene_index + 1} of '{written.title}'",
            chapter_id=str(written.id),
            scene_index=scene_index,
            words_written=draft.word_count,
            total_words=total_words,
        )

        if not project.is_writing_active:
            # Paused or cancelled while this scene was being written
            logger.info(
                "Project %s is %s; not scheduling another scene",
                project.id,
                project.writing_status.value,
            )
            return result

        if self._has_remaining_work(project.id):
            self.dispatch(str(project.id), resume=False, delay=self.scene_delay)
            return result

        finished = self._finalize(project)
        finished.chapter_id = result.chapter_id
        finished.scene_index = scene_index
        finished.words_written = draft.word_count
        return finished

    def _fail_scene(
        self,
        project: Project,
        chapter: Chapter,
        scene_index: int,
        token: str,
        job: Optional[WritingJob],
        error: str,
    ) -> TickResult:
        message = f"Scene {scene_index + 1} of '{chapter.title}' failed: {error}"
        logger.error("Project %s: %s", project.id, message)

        self.store.fail_scene(chapter.id, scene_index, token, error)
        if job is not None:
            job.status = JobStatus.FAILED
            job.last_error = error
            job.locked_by = None
            self.db.commit()

        self._try_transition(
            project,
            ACTIVE_WRITING_STATUSES,
            WritingStatus.FAILED,
            writing_error=message,
            failed_scenes=self.store.count_failed_scenes(project.id),
        )
        return TickResult(
            status=TickStatus.FAILED,
            message=message,
            chapter_id=str(chapter.id),
            scene_index=scene_index,
            error=message,
        )

    def _generate_outlines(
        self, project: Project, chapters: list[Chapter], missing: list[Chapter]
    ) -> TickResult:
        if project.writing_status != WritingStatus.GENERATING_OUTLINES:
            if not self._try_transition(
                project, ACTIVE_WRITING_STATUSES, WritingStatus.GENERATING_OUTLINES
            ):
                return self._stopped(project)

        scenes_per_chapter = settings.DEFAULT_SCENES_PER_CHAPTER
        words_per_scene = 1000
        if project.target_word_count:
            words_per_scene = max(
                300, project.target_word_count // (len(chapters) * scenes_per_chapter)
            )

        for chapter in missing:
            self.db.refresh(project)
            if not project.is_writing_active:
                return self._stopped(project)

            self.store.mark_outline_generating(chapter)
            request = OutlineRequest(
                chapter_title=chapter.title,
                chapter_summary=chapter.summary,
                chapter_number=chapters.index(chapter) + 1,
                chapter_count=len(chapters),
                genre=project.genre,
                story_idea=project.story_idea,
                story_structure=project.story_structure,
                scene_count=scenes_per_chapter,
                words_per_scene=words_per_scene,
            )
            try:
                scenes = self.outline_generator.generate_outline(request)
            except FatalGenerationError as e:
                message = f"Outline generation failed for '{chapter.title}': {e.message}"
                logger.error("Project %s: %s", project.id, message)
                self.store.mark_outline_failed(chapter, e.message)
                self._try_transition(
                    project, ACTIVE_WRITING_STATUSES, WritingStatus.FAILED, writing_error=message
                )
                return TickResult(
                    status=TickStatus.OUTLINE_ERROR,
                    message=message,
                    chapter_id=str(chapter.id),
                    error=message,
                )
            self.store.set_outline(chapter, scenes)

        total_scenes = self.store.count_scenes(self.store.list_chapters(project.id))
        self.db.query(Project).filter(Project.id == project.id).update(
            {Project.total_scenes: total_scenes, Project.last_activity_at: utcnow()},
            synchronize_session=False,
        )
        self.db.commit()

        self.dispatch(str(project.id), resume=False, delay=0.0)
        return TickResult(
            status=TickStatus.OUTLINES_READY,
            message=f"Outlined {len(missing)} chapters ({total_scenes} scenes in total)",
        )

    def _finalize(self, project: Project) -> TickResult:
        failed = self.store.count_failed_scenes(project.id)
        total_words = self.store.project_word_count(project.id)
        completed = self.store.count_completed_scenes(project.id)

        if failed:
            message = f"{failed} scenes could not be written"
            if not self._try_transition(
                project,
                ACTIVE_WRITING_STATUSES,
                WritingStatus.INCOMPLETE,
                writing_error=message,
                failed_scenes=failed,
                completed_scenes=completed,
                word_count=total_words,
            ):
                return self._stopped(project)
            return TickResult(status=TickStatus.INCOMPLETE, message=message, total_words=total_words)

        if not self._try_transition(
            project,
            ACTIVE_WRITING_STATUSES,
            WritingStatus.COMPLETED,
            writing_error=None,
            writing_completed_at=utcnow(),
            completed_scenes=completed,
            word_count=total_words,
        ):
            return self._stopped(project)

        logger.info("Project %s completed: %d words", project.id, total_words)
        self.db.refresh(project)
        self.notifier.notify_completion(project)
        return TickResult(
            status=TickStatus.COMPLETED,
            message="Book writing completed",
            total_words=total_words,
        )

    # ------------------------------------------------------------------
    # Work selection
    # ------------------------------------------------------------------

    def _next_target(self, project: Project) -> Optional[tuple[Chapter, int, Optional[WritingJob]]]:
        """Recovery jobs first (priority, then sort order), then the first unwritten scene."""
        while True:
            job = (
                self.db.query(WritingJob)
                .filter(
                    WritingJob.project_id == project.id,
                    WritingJob.status == JobStatus.PENDING,
                )
                .order_by(WritingJob.priority.desc(), WritingJob.sort_order, WritingJob.created_at)
                .first()
            )
            if job is None:
                break

            claimed = (
                self.db.query(WritingJob)
                .filter(WritingJob.id == job.id, WritingJob.status == JobStatus.PENDING)
                .update(
                    {
                        WritingJob.status: JobStatus.PROCESSING,
                        WritingJob.locked_by: WORKER_ID,
                        WritingJob.locked_at: utcnow(),
                        WritingJob.attempts: WritingJob.attempts + 1,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
            if claimed != 1:
                continue
            self.db.refresh(job)

            chapter = self.store.get_chapter(job.chapter_id)
            if (
                chapter is None
                or job.scene_index >= chapter.total_scenes
                or chapter.scenes[job.scene_index].get("status") == SceneStatus.COMPLETED
            ):
                logger.info("Skipping writing job %s: scene already done or gone", job.id)
                self._delete_job(job)
                continue
            return chapter, job.scene_index, job

        found = self.store.find_next_scene(project.id)
        if found is None:
            return None
        chapter, scene_index = found
        return chapter, scene_index, None

    def _has_remaining_work(self, project_id: UUID) -> bool:
        pending_job = (
            self.db.query(WritingJob.id)
            .filter(
                WritingJob.project_id == project_id,
                WritingJob.status == JobStatus.PENDING,
            )
            .first()
        )
        return pending_job is not None or self.store.find_next_scene(project_id) is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        project: Project,
        allowed_from: Optional[Iterable[WritingStatus]],
        to_status: WritingStatus,
        **fields,
    ) -> None:
        transition_writing_status(self.db, project, allowed_from, to_status, **fields)

    def _try_transition(
        self,
        project: Project,
        allowed_from: Optional[Iterable[WritingStatus]],
        to_status: WritingStatus,
        **fields,
    ) -> bool:
        """Worker-side transition: commits on success, False if the race was lost."""
        try:
            self.db.refresh(project)
            self._transition(project, allowed_from, to_status, **fields)
            self.db.commit()
            return True
        except (ConcurrentModificationError, InvalidTransitionError) as e:
            logger.info(
                "Project %s: not moving to %s (%s)", project.id, to_status.value, e.message
            )
            return False

    def _stopped(self, project: Project) -> TickResult:
        self.db.refresh(project)
        return TickResult(
            status=TickStatus.STOPPED,
            message=f"Writing is {project.writing_status.value}",
        )

    def _sync_counters(self, project: Project) -> int:
        """Recompute project progress from chapter state. Does not touch the status."""
        total_words = self.store.project_word_count(project.id)
        self.db.query(Project).filter(Project.id == project.id).update(
            {
                Project.word_count: total_words,
                Project.completed_scenes: self.store.count_completed_scenes(project.id),
                Project.last_activity_at: utcnow(),
            },
            synchronize_session=False,
        )
        self.db.commit()
        return total_words

    def _debit(
        self, project: Project, chapter: Chapter, scene_index: int, token: str, words: int
    ) -> None:
        """Charge the owner for a written scene. Failures never undo the scene."""
        try:
            self.ledger.debit(
                project.owner_id,
                words,
                idempotency_key=f"scene:{chapter.id}:{scene_index}:{token}",
                project_id=project.id,
                description=f"Scene {scene_index + 1} of '{chapter.title}'",
            )
        except (CreditLedgerError, SQLAlchemyError):
            self.db.rollback()
            logger.exception(
                "Failed to debit %d words for project %s (chapter %s, scene %d)",
                words,
                project.id,
                chapter.id,
                scene_index,
            )

    def _dispatch_or_fail(self, project: Project, resume: bool = False) -> None:
        try:
            self.dispatch(str(project.id), resume=resume, delay=0.0)
        except Exception as e:
            logger.exception("Could not queue writing worker for project %s", project.id)
            self._try_transition(
                project,
                None,
                WritingStatus.FAILED,
                writing_error="Could not queue the writing worker",
            )
            raise WritingError("Could not queue the writing worker", status_code=503) from e

    def _delete_jobs(self, project_id: UUID, statuses: Optional[list[JobStatus]] = None) -> int:
        query = self.db.query(WritingJob).filter(WritingJob.project_id == project_id)
        if statuses is not None:
            query = query.filter(WritingJob.status.in_(statuses))
        return query.delete(synchronize_session=False)

    def _delete_job(self, job: WritingJob) -> None:
        self.db.query(WritingJob).filter(WritingJob.id == job.id).delete(
            synchronize_session=False
        )
        self.db.commit()

    def _set_job_status(
        self, project_id: UUID, from_statuses: list[JobStatus], to_status: JobStatus
    ) -> None:
        self.db.query(WritingJob).filter(
            WritingJob.project_id == project_id,
            WritingJob.status.in_(from_statuses),
        ).update({WritingJob.status: to_status}, synchronize_session=False)

    def _release_job(self, job: Optional[WritingJob], status: JobStatus) -> None:
        if job is None:
            return
        self.db.query(WritingJob).filter(WritingJob.id == job.id).update(
            {WritingJob.status: status, WritingJob.locked_by: None, WritingJob.locked_at: None},
            synchronize_session=False,
        )
        self.db.commit()
