"""Tests for recovering interrupted writing runs."""
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.core.exceptions import (
    ProjectAccessDeniedError,
    ProjectNotFoundError,
    WritingValidationError,
)
from app.models.chapter import Chapter, SceneStatus
from app.models.project import Project, WritingStatus
from app.models.writing_job import RECOVERY_JOB_PRIORITY, JobStatus, JobType, WritingJob
from app.schemas.writing import TickStatus, WritingAction
from app.services.outline_store import utcnow
from app.services.recovery import RecoveryScanner, missing_scene_indices

from conftest import SCENE_TEXT, FakeLLM, make_scene


def _chapters(db: Session, project: Project):
    return (
        db.query(Chapter)
        .filter(Chapter.project_id == project.id)
        .order_by(Chapter.sort_order)
        .populate_existing()
        .all()
    )


def _jobs(db: Session, project: Project):
    return (
        db.query(WritingJob)
        .filter(WritingJob.project_id == project.id)
        .order_by(WritingJob.sort_order)
        .all()
    )


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def interrupted(db, make_project, owner):
    """Two chapters; the worker died while writing the last scene of chapter 1."""
    project = make_project(owner, scenes_per_chapter=(3, 3), target_word_count=6000)
    first, second = _chapters(db, project)
    first.scene_outline = [
        make_scene(0, status="completed"),
        make_scene(1, status="completed"),
        make_scene(2, status="writing"),
    ]
    first.scenes_completed = 2
    first.word_count = 1600
    first.claim_token = "dead-worker"
    second.scene_outline = [make_scene(i, status="completed") for i in range(3)]
    second.scenes_completed = 3
    second.word_count = 2400
    project.writing_status = WritingStatus.WRITING
    db.commit()
    return project


class TestMissingScenes:
    def test_trailing_scenes_are_missing(self, db, interrupted):
        first, second = _chapters(db, interrupted)

        assert missing_scene_indices(first) == [2]
        assert missing_scene_indices(second) == []


class TestRecover:
    def test_requeues_missing_scene(self, db, dispatcher, interrupted, owner):
        response = RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)

        assert response.success
        assert response.recovered_scenes == 1
        assert response.incomplete_chapters_count == 1
        assert response.total_missing_scenes == 1
        assert response.chapters[0].title == "Chapter 1"

        jobs = _jobs(db, interrupted)
        assert len(jobs) == 1
        job = jobs[0]
        assert job.scene_index == 2
        assert job.status == JobStatus.PENDING
        assert job.priority == RECOVERY_JOB_PRIORITY
        assert job.sort_order == 2
        assert job.scene_outline["title"] == "Scene 3"

        first = _chapters(db, interrupted)[0]
        assert first.claim_token is None
        assert first.scenes[2]["status"] == SceneStatus.PENDING

        db.refresh(interrupted)
        assert interrupted.writing_status == WritingStatus.WRITING
        assert dispatcher.calls[-1]["resume"] is True

    def test_recover_is_idempotent(self, db, dispatcher, interrupted, owner):
        scanner = RecoveryScanner(db, dispatch=dispatcher)

        scanner.recover(interrupted.id, user=owner)
        scanner.recover(interrupted.id, user=owner)

        jobs = _jobs(db, interrupted)
        assert [(job.scene_index, job.status) for job in jobs] == [(2, JobStatus.PENDING)]

    def test_in_flight_job_is_not_duplicated(self, db, dispatcher, interrupted, owner):
        first = _chapters(db, interrupted)[0]
        db.add(
            WritingJob(
                project_id=interrupted.id,
                chapter_id=first.id,
                job_type=JobType.WRITE_SCENE,
                scene_index=2,
                status=JobStatus.PROCESSING,
                priority=RECOVERY_JOB_PRIORITY,
            )
        )
        db.commit()

        response = RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)

        assert response.recovered_scenes == 0
        assert response.total_missing_scenes == 1
        assert len(_jobs(db, interrupted)) == 1

    def test_stale_failed_jobs_are_replaced(self, db, dispatcher, interrupted, owner):
        first = _chapters(db, interrupted)[0]
        db.add(
            WritingJob(
                project_id=interrupted.id,
                chapter_id=first.id,
                job_type=JobType.WRITE_SCENE,
                scene_index=2,
                status=JobStatus.FAILED,
                last_error="boom",
            )
        )
        db.commit()

        RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)

        jobs = _jobs(db, interrupted)
        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.PENDING

    def test_failed_project_is_reactivated(self, db, dispatcher, interrupted, owner):
        interrupted.writing_status = WritingStatus.FAILED
        interrupted.writing_error = "Unexpected error: worker lost"
        db.commit()

        RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)

        db.refresh(interrupted)
        assert interrupted.writing_status == WritingStatus.WRITING
        assert interrupted.writing_error is None

    def test_nothing_missing(self, db, dispatcher, make_project, owner):
        project = make_project(owner, scenes_per_chapter=(2,), target_word_count=2000)
        chapter = _chapters(db, project)[0]
        chapter.scene_outline = [make_scene(i, status="completed") for i in range(2)]
        chapter.scenes_completed = 2
        chapter.word_count = 1500
        db.commit()

        response = RecoveryScanner(db, dispatch=dispatcher).recover(project.id, user=owner)

        assert response.message == "No missing scenes found"
        assert response.recovered_scenes == 0
        assert response.total_words == 1500
        assert response.target_words == 2000
        assert response.percentage == 75
        assert dispatcher.count == 0

    def test_unknown_project(self, db, dispatcher, owner):
        import uuid

        with pytest.raises(ProjectNotFoundError):
            RecoveryScanner(db, dispatch=dispatcher).recover(uuid.uuid4(), user=owner)

    def test_other_user_is_rejected(self, db, dispatcher, interrupted, make_user):
        with pytest.raises(ProjectAccessDeniedError):
            RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=make_user())

        assert _jobs(db, interrupted) == []

    def test_admin_can_recover_any_project(self, db, dispatcher, interrupted, make_user):
        admin = make_user(is_superuser=True)

        response = RecoveryScanner(db, dispatch=dispatcher).recover(
            interrupted.id, user=admin, admin=True
        )

        assert response.recovered_scenes == 1


class TestRecoveredRunFinishes:
    def test_worker_writes_recovered_scene_and_completes(
        self, db, dispatcher, make_orchestrator, interrupted, owner, deliveries
    ):
        RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)
        orchestrator = make_orchestrator()

        result = orchestrator.tick(interrupted.id, resume=True)

        assert result.status == TickStatus.COMPLETED
        assert result.scene_index == 2
        assert _jobs(db, interrupted) == []
        first = _chapters(db, interrupted)[0]
        assert first.scenes_completed == 3
        db.refresh(interrupted)
        assert interrupted.writing_status == WritingStatus.COMPLETED
        assert len(deliveries) == 1

    def test_recovering_live_run_keeps_its_worker_claim(
        self, db, dispatcher, make_orchestrator, make_project, owner
    ):
        project = make_project(owner, scenes_per_chapter=(2,))

        def recover_then_write():
            RecoveryScanner(db, dispatch=dispatcher).recover(project.id, user=owner)
            return SCENE_TEXT

        orchestrator = make_orchestrator(llm=FakeLLM(script=[recover_then_write]))
        orchestrator.orchestrate(project.id, WritingAction.START, owner)

        result = orchestrator.tick(project.id)

        assert result.status == TickStatus.SCENE_COMPLETED
        assert _chapters(db, project)[0].scenes_completed == 1
        assert [job.scene_index for job in _jobs(db, project)] == [1]
        # start + the tick's own follow-up; recovery added no chain
        assert dispatcher.count == 2


class TestRecoverLiveRun:
    def test_no_second_worker_chain(self, db, dispatcher, make_orchestrator, make_project, owner):
        project = make_project(owner, scenes_per_chapter=(3,))
        orchestrator = make_orchestrator()
        orchestrator.orchestrate(project.id, WritingAction.START, owner)
        orchestrator.tick(project.id)
        assert dispatcher.count == 2

        response = RecoveryScanner(db, dispatch=dispatcher).recover(project.id, user=owner)

        assert response.recovered_scenes == 2
        assert dispatcher.count == 2
        db.refresh(project)
        assert project.writing_status == WritingStatus.WRITING

        # Only the chain's own queued tick runs; each tick queues at most one more
        results = [orchestrator.tick(project.id) for _ in range(2)]
        assert [r.status for r in results] == [TickStatus.SCENE_COMPLETED, TickStatus.COMPLETED]
        assert [r.scene_index for r in results] == [1, 2]
        assert dispatcher.count == 3

    def test_repeated_recover_never_dispatches(self, db, dispatcher, make_orchestrator, make_project, owner):
        project = make_project(owner, scenes_per_chapter=(3,))
        orchestrator = make_orchestrator()
        orchestrator.orchestrate(project.id, WritingAction.START, owner)
        orchestrator.tick(project.id)
        scanner = RecoveryScanner(db, dispatch=dispatcher)

        scanner.recover(project.id, user=owner)
        scanner.recover(project.id, user=owner)

        assert dispatcher.count == 2
        assert [job.scene_index for job in _jobs(db, project)] == [1, 2]

    def test_stalled_active_run_is_restarted(self, db, dispatcher, interrupted, owner):
        stale = utcnow() - timedelta(hours=1)
        db.query(Project).filter(Project.id == interrupted.id).update(
            {Project.last_activity_at: stale}, synchronize_session=False
        )
        db.commit()

        RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)

        assert dispatcher.count == 1
        assert dispatcher.calls[0]["resume"] is True


class TestRecoverValidation:
    def test_project_without_chapters(self, db, dispatcher, make_project, owner):
        empty = make_project(owner, scenes_per_chapter=())

        with pytest.raises(WritingValidationError) as exc_info:
            RecoveryScanner(db, dispatch=dispatcher).recover(empty.id, user=owner)

        assert exc_info.value.status_code == 400
        assert dispatcher.count == 0
        assert _jobs(db, empty) == []

    def test_completed_timestamp_is_cleared(self, db, dispatcher, interrupted, owner):
        interrupted.writing_status = WritingStatus.INCOMPLETE
        interrupted.writing_completed_at = utcnow()
        db.commit()

        RecoveryScanner(db, dispatch=dispatcher).recover(interrupted.id, user=owner)

        db.refresh(interrupted)
        assert interrupted.writing_status == WritingStatus.WRITING
        assert interrupted.writing_completed_at is None
