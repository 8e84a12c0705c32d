"""Tests for the Celery worker tick task."""
import pytest

from app.models.project import Project, WritingStatus
from app.schemas.writing import WritingAction
from app.tasks import writing as writing_tasks

from conftest import FakeLLM


@pytest.fixture
def task_db(db, monkeypatch):
    monkeypatch.setattr(writing_tasks, "get_db_session", lambda: db)
    return db


class TestEnqueue:
    def test_enqueue_uses_countdown(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            writing_tasks.process_next_scene_task,
            "apply_async",
            lambda **kwargs: calls.append(kwargs),
        )

        writing_tasks.enqueue_next_scene("abc", resume=True, delay=8.0)
        writing_tasks.enqueue_next_scene("abc")

        assert calls[0] == {"args": ["abc"], "kwargs": {"resume": True}, "countdown": 8.0}
        assert calls[1]["countdown"] is None


class TestProcessNextScene:
    def test_tick_result_is_returned(self, task_db, monkeypatch, make_orchestrator, make_user, make_project):
        owner = make_user()
        project = make_project(owner, scenes_per_chapter=(2,))
        orchestrator = make_orchestrator()
        orchestrator.orchestrate(project.id, WritingAction.START, owner)
        monkeypatch.setattr(writing_tasks, "BookWriterOrchestrator", lambda db: orchestrator)

        result = writing_tasks.process_next_scene_task(str(project.id))

        assert result["status"] == "scene_completed"
        assert result["scene_index"] == 0

    def test_crash_marks_project_failed(self, task_db, monkeypatch, make_orchestrator, make_user, make_project):
        owner = make_user()
        project = make_project(owner, scenes_per_chapter=(2,))
        orchestrator = make_orchestrator(llm=FakeLLM(script=[KeyError("surprise")]))
        project_id = project.id
        orchestrator.orchestrate(project.id, WritingAction.START, owner)
        monkeypatch.setattr(writing_tasks, "BookWriterOrchestrator", lambda db: orchestrator)

        with pytest.raises(KeyError):
            writing_tasks.process_next_scene_task(str(project.id))

        project = task_db.query(Project).filter(Project.id == project_id).one()
        assert project.writing_status == WritingStatus.FAILED
        assert project.writing_error.startswith("Unexpected error")
