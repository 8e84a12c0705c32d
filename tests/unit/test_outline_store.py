"""Tests for scene state persistence and the chapter claim lease."""
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.models.chapter import Chapter, ChapterWritingStatus, SceneStatus
from app.models.content_block import ContentBlock
from app.services.outline_store import OutlineStore, utcnow


@pytest.fixture
def store(db: Session):
    return OutlineStore(db, claim_ttl_seconds=900)


@pytest.fixture
def chapter(make_user, make_project, store):
    project = make_project(make_user(), scenes_per_chapter=(3,))
    return store.list_chapters(project.id)[0]


def _blocks(db: Session, chapter: Chapter):
    return (
        db.query(ContentBlock)
        .filter(ContentBlock.chapter_id == chapter.id)
        .order_by(ContentBlock.sort_order)
        .all()
    )


class TestClaims:
    def test_claim_marks_scene_writing(self, store, chapter):
        token = store.claim_scene(chapter, 0)

        assert token
        assert chapter.claim_token == token
        assert chapter.scenes[0]["status"] == SceneStatus.WRITING
        assert chapter.writing_status == ChapterWritingStatus.WRITING

    def test_live_claim_blocks_second_claim(self, store, chapter):
        assert store.claim_scene(chapter, 0)

        assert store.claim_scene(chapter, 1) is None

    def test_stale_revision_loses_claim(self, db, store, chapter):
        stale_revision = chapter.revision
        # Another writer bumps the row; this session still holds the old snapshot
        db.query(Chapter).filter(Chapter.id == chapter.id).update(
            {Chapter.revision: Chapter.revision + 1}, synchronize_session=False
        )
        assert chapter.revision == stale_revision

        assert store.claim_scene(chapter, 0) is None

    def test_expired_lease_can_be_taken_over(self, db, store, chapter):
        assert store.claim_scene(chapter, 0)
        db.query(Chapter).filter(Chapter.id == chapter.id).update(
            {Chapter.claimed_at: utcnow() - timedelta(seconds=901)},
            synchronize_session=False,
        )
        db.commit()
        db.refresh(chapter)

        assert store.claim_scene(chapter, 0) is not None


class TestCompleteScene:
    def test_blocks_are_appended_in_order(self, db, store, chapter):
        token = store.claim_scene(chapter, 0)
        store.complete_scene(chapter.id, 0, token, ["One.", "Two."], 2)
        db.refresh(chapter)
        token = store.claim_scene(chapter, 1)
        store.complete_scene(chapter.id, 1, token, ["Three."], 1)

        blocks = _blocks(db, chapter)
        assert [b.content for b in blocks] == ["One.", "Two.", "Three."]
        assert [b.sort_order for b in blocks] == [0, 1, 2]
        assert [b.scene_index for b in blocks] == [0, 0, 1]

    def test_progress_and_claim_are_updated(self, db, store, chapter):
        token = store.claim_scene(chapter, 0)

        written = store.complete_scene(chapter.id, 0, token, ["One.", "Two."], 42)

        assert written.scenes_completed == 1
        assert written.word_count == 42
        assert written.claim_token is None
        assert written.scenes[0]["status"] == SceneStatus.COMPLETED
        assert written.writing_status == ChapterWritingStatus.WRITING

    def test_last_scene_completes_chapter(self, db, store, chapter):
        for index in range(3):
            db.refresh(chapter)
            token = store.claim_scene(chapter, index)
            store.complete_scene(chapter.id, index, token, [f"Scene {index}."], 2)

        db.refresh(chapter)
        assert chapter.scenes_completed == 3
        assert chapter.writing_status == ChapterWritingStatus.COMPLETED

    def test_revoked_claim_discards_output(self, db, store, chapter):
        token = store.claim_scene(chapter, 0)
        store.reopen_scenes(chapter, [0])
        db.commit()

        assert store.complete_scene(chapter.id, 0, token, ["Lost."], 1) is None
        assert _blocks(db, chapter) == []
        db.refresh(chapter)
        assert chapter.scenes_completed == 0
        assert chapter.scenes[0]["status"] == SceneStatus.PENDING

    def test_fail_scene(self, db, store, chapter):
        token = store.claim_scene(chapter, 1)

        assert store.fail_scene(chapter.id, 1, token, "provider said no")

        db.refresh(chapter)
        assert chapter.scenes[1]["status"] == SceneStatus.FAILED
        assert chapter.writing_error == "provider said no"
        assert chapter.claim_token is None

    def test_release_claim_returns_scene_to_pending(self, db, store, chapter):
        token = store.claim_scene(chapter, 2)

        assert store.release_claim(chapter.id, 2, token)

        db.refresh(chapter)
        assert chapter.scenes[2]["status"] == SceneStatus.PENDING
        assert chapter.claim_token is None


class TestReads:
    def test_find_next_scene_skips_completed(self, db, store, chapter):
        token = store.claim_scene(chapter, 0)
        store.complete_scene(chapter.id, 0, token, ["x"], 1)

        found_chapter, index = store.find_next_scene(chapter.project_id)

        assert found_chapter.id == chapter.id
        assert index == 1

    def test_previous_text_is_a_trailing_window(self, db, store, chapter):
        token = store.claim_scene(chapter, 0)
        store.complete_scene(chapter.id, 0, token, ["a" * 1500, "b" * 1500], 2)

        text = store.previous_text(chapter.id, max_chars=2000)

        assert len(text) == 2000
        assert text.endswith("b" * 1500)
        assert text.startswith("a" * 498 + "\n\n")

    def test_previous_text_empty_for_new_chapter(self, store, chapter):
        assert store.previous_text(chapter.id) == ""

    def test_reset_for_run_keeps_prose(self, db, store, chapter):
        token = store.claim_scene(chapter, 0)
        store.complete_scene(chapter.id, 0, token, ["Kept."], 1)

        store.reset_for_run(chapter.project_id)
        db.commit()

        db.refresh(chapter)
        assert chapter.scenes_completed == 0
        assert all(s["status"] == SceneStatus.PENDING for s in chapter.scenes)
        assert [b.content for b in _blocks(db, chapter)] == ["Kept."]

    def test_count_scenes_estimates_missing_outlines(self, make_user, make_project, store):
        project = make_project(make_user(), scenes_per_chapter=(3, 0))

        assert store.count_scenes(store.list_chapters(project.id), default_per_chapter=5) == 8
