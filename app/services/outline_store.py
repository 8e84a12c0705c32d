"""
Chapter and scene outline persistence.

Scene state lives inside each chapter's `scene_outline` JSON list. Every
write goes through this store so the per-scene status, `scenes_completed`
and the chapter's claim lease stay consistent with each other.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from app.core.config import settings
from app.models.chapter import Chapter, ChapterWritingStatus, GenerationStatus, SceneStatus
from app.models.content_block import ContentBlock

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _with_scene_status(scenes: list[dict], index: int, status: str) -> list[dict]:
    """Copy of `scenes` with one scene's status replaced. Never mutates in place."""
    updated = list(scenes)
    updated[index] = {**updated[index], "status": status}
    return updated


def _count_completed(scenes: list[dict]) -> int:
    return sum(1 for scene in scenes if scene.get("status") == SceneStatus.COMPLETED)


def _write_scenes(chapter: Chapter, scenes: list[dict]) -> None:
    chapter.scene_outline = scenes
    flag_modified(chapter, "scene_outline")


class OutlineStore:
    """Reads and writes chapter scene state for one database session."""

    def __init__(self, db: Session, claim_ttl_seconds: Optional[int] = None):
        self.db = db
        self.claim_ttl = timedelta(
            seconds=claim_ttl_seconds or settings.SCENE_CLAIM_TTL_SECONDS
        )

    # Reads

    def list_chapters(self, project_id: UUID) -> list[Chapter]:
        return (
            self.db.query(Chapter)
            .filter(Chapter.project_id == project_id)
            .order_by(Chapter.sort_order, Chapter.created_at)
            .all()
        )

    def get_chapter(self, chapter_id: UUID) -> Optional[Chapter]:
        return self.db.query(Chapter).filter(Chapter.id == chapter_id).first()

    @staticmethod
    def count_scenes(chapters: list[Chapter], default_per_chapter: Optional[int] = None) -> int:
        """Total scenes, estimating chapters that have no outline yet."""
        default = default_per_chapter or settings.DEFAULT_SCENES_PER_CHAPTER
        return sum(chapter.total_scenes or default for chapter in chapters)

    def find_next_scene(self, project_id: UUID) -> Optional[tuple[Chapter, int]]:
        """First scene in chapter/scene order that still needs writing."""
        for chapter in self.list_chapters(project_id):
            for index, scene in enumerate(chapter.scenes):
                if scene.get("status", SceneStatus.PENDING) in (
                    SceneStatus.PENDING,
                    SceneStatus.WRITING,
                ):
                    return chapter, index
        return None

    def count_failed_scenes(self, project_id: UUID) -> int:
        return sum(
            1
            for chapter in self.list_chapters(project_id)
            for scene in chapter.scenes
            if scene.get("status") == SceneStatus.FAILED
        )

    def count_completed_scenes(self, project_id: UUID) -> int:
        return sum(c.scenes_completed or 0 for c in self.list_chapters(project_id))

    def project_word_count(self, project_id: UUID) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(Chapter.word_count), 0))
            .filter(Chapter.project_id == project_id)
            .scalar()
        )
        return int(total or 0)

    def previous_text(self, chapter_id: UUID, max_chars: Optional[int] = None) -> str:
        """Trailing window of the chapter's prose, newest blocks read first."""
        max_chars = max_chars or settings.PREVIOUS_CONTEXT_CHARS
        collected: list[str] = []
        length = 0
        blocks = (
            self.db.query(ContentBlock.content)
            .filter(ContentBlock.chapter_id == chapter_id)
            .order_by(ContentBlock.sort_order.desc())
            .limit(100)
            .all()
        )
        for (content,) in blocks:
            collected.append(content)
            length += len(content) + 2
            if length >= max_chars:
                break
        text = "\n\n".join(reversed(collected))
        return text[-max_chars:]

    # Writes

    def set_outline(self, chapter: Chapter, scenes: list[dict]) -> None:
        normalized = [{**scene, "status": SceneStatus.PENDING} for scene in scenes]
        _write_scenes(chapter, normalized)
        chapter.scenes_completed = 0
        chapter.writing_status = ChapterWritingStatus.OUTLINE_READY
        chapter.writing_error = None
        chapter.revision = (chapter.revision or 0) + 1
        self.db.commit()

    def mark_outline_generating(self, chapter: Chapter) -> None:
        chapter.writing_status = ChapterWritingStatus.GENERATING_OUTLINE
        self.db.commit()

    def mark_outline_failed(self, chapter: Chapter, message: str) -> None:
        chapter.writing_status = ChapterWritingStatus.FAILED
        chapter.writing_error = message
        self.db.commit()

    def reset_for_run(self, project_id: UUID) -> None:
        """Every scene back to pending for a fresh start or after cancel. Prose is kept."""
        for chapter in self.list_chapters(project_id):
            scenes = [{**scene, "status": SceneStatus.PENDING} for scene in chapter.scenes]
            _write_scenes(chapter, scenes)
            chapter.scenes_completed = 0
            chapter.writing_status = ChapterWritingStatus.PENDING
            chapter.generation_status = GenerationStatus.PENDING
            chapter.writing_error = None
            chapter.claim_token = None
            chapter.claimed_at = None
            chapter.revision = (chapter.revision or 0) + 1

    def reset_failed_scenes(self, project_id: UUID) -> int:
        """Failed scenes back to pending so a resumed run retries them."""
        reset = 0
        for chapter in self.list_chapters(project_id):
            scenes = chapter.scenes
            failed = [i for i, s in enumerate(scenes) if s.get("status") == SceneStatus.FAILED]
            if not failed and chapter.writing_status != ChapterWritingStatus.FAILED:
                continue
            for index in failed:
                scenes = _with_scene_status(scenes, index, SceneStatus.PENDING)
            _write_scenes(chapter, scenes)
            chapter.writing_status = ChapterWritingStatus.WRITING
            chapter.writing_error = None
            chapter.claim_token = None
            chapter.claimed_at = None
            chapter.revision = (chapter.revision or 0) + 1
            reset += len(failed)
        return reset

    def reopen_scenes(self, chapter: Chapter, indices: list[int]) -> None:
        """
        Put unfinished scenes at `indices` back to pending and drop the chapter's
        claim. A worker still generating under the old claim will find it gone
        and discard its output.
        """
        scenes = chapter.scenes
        for index in indices:
            if 0 <= index < len(scenes) and scenes[index].get("status") != SceneStatus.COMPLETED:
                scenes = _with_scene_status(scenes, index, SceneStatus.PENDING)
        _write_scenes(chapter, scenes)
        chapter.writing_status = ChapterWritingStatus.WRITING
        chapter.generation_status = GenerationStatus.IN_PROGRESS
        chapter.writing_error = None
        chapter.claim_token = None
        chapter.claimed_at = None
        chapter.revision = (chapter.revision or 0) + 1

    def claim_scene(self, chapter: Chapter, scene_index: int) -> Optional[str]:
        """
        Atomically mark a scene as being written by this worker.

        Succeeds only if the chapter is unchanged since it was read and holds
        no live claim. Returns the claim token, or None if another worker won.
        """
        token = uuid.uuid4().hex
        now = utcnow()
        scenes = _with_scene_status(chapter.scenes, scene_index, SceneStatus.WRITING)

        updated = (
            self.db.query(Chapter)
            .filter(
                Chapter.id == chapter.id,
                Chapter.revision == chapter.revision,
                or_(Chapter.claim_token.is_(None), Chapter.claimed_at < now - self.claim_ttl),
            )
            .update(
                {
                    Chapter.claim_token: token,
                    Chapter.claimed_at: now,
                    Chapter.scene_outline: scenes,
                    Chapter.writing_status: ChapterWritingStatus.WRITING,
                    Chapter.generation_status: GenerationStatus.IN_PROGRESS,
                    Chapter.revision: Chapter.revision + 1,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        if updated != 1:
            logger.info(
                "Scene %d of chapter %s is claimed by another worker", scene_index, chapter.id
            )
            return None

        self.db.refresh(chapter)
        return token

    def _claimed_chapter(self, chapter_id: UUID, token: str) -> Optional[Chapter]:
        return (
            self.db.query(Chapter)
            .filter(Chapter.id == chapter_id, Chapter.claim_token == token)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def complete_scene(
        self,
        chapter_id: UUID,
        scene_index: int,
        token: str,
        paragraphs: list[str],
        word_count: int,
    ) -> Optional[Chapter]:
        """
        Append the scene's blocks and mark it completed, all in one commit.

        Returns None without writing anything if the claim was revoked
        (cancel, restart or recovery) while the scene was being generated.
        """
        chapter = self._claimed_chapter(chapter_id, token)
        if chapter is None:
            self.db.rollback()
            logger.warning(
                "Claim on chapter %s was revoked; discarding scene %d", chapter_id, scene_index
            )
            return None

        last_order = (
            self.db.query(func.max(ContentBlock.sort_order))
            .filter(ContentBlock.chapter_id == chapter.id)
            .scalar()
        )
        next_order = 0 if last_order is None else last_order + 1
        for offset, paragraph in enumerate(paragraphs):
            self.db.add(
                ContentBlock(
                    chapter_id=chapter.id,
                    block_type="paragraph",
                    content=paragraph,
                    sort_order=next_order + offset,
                    scene_index=scene_index,
                )
            )

        scenes = _with_scene_status(chapter.scenes, scene_index, SceneStatus.COMPLETED)
        _write_scenes(chapter, scenes)
        chapter.scenes_completed = _count_completed(scenes)
        chapter.word_count = (chapter.word_count or 0) + word_count
        chapter.writing_error = None
        chapter.claim_token = None
        chapter.claimed_at = None
        chapter.revision = (chapter.revision or 0) + 1

        if chapter.scenes_completed >= len(scenes):
            chapter.writing_status = ChapterWritingStatus.COMPLETED
            chapter.generation_status = GenerationStatus.COMPLETED
        else:
            chapter.writing_status = ChapterWritingStatus.WRITING
            chapter.generation_status = GenerationStatus.IN_PROGRESS

        self.db.commit()
        return chapter

    def fail_scene(self, chapter_id: UUID, scene_index: int, token: str, message: str) -> bool:
        chapter = self._claimed_chapter(chapter_id, token)
        if chapter is None:
            self.db.rollback()
            return False

        _write_scenes(chapter, _with_scene_status(chapter.scenes, scene_index, SceneStatus.FAILED))
        chapter.writing_status = ChapterWritingStatus.FAILED
        chapter.generation_status = GenerationStatus.FAILED
        chapter.writing_error = message
        chapter.claim_token = None
        chapter.claimed_at = None
        chapter.revision = (chapter.revision or 0) + 1
        self.db.commit()
        return True

    def release_claim(self, chapter_id: UUID, scene_index: int, token: str) -> bool:
        """Give a claimed scene back as pending without writing it."""
        chapter = self._claimed_chapter(chapter_id, token)
        if chapter is None:
            self.db.rollback()
            return False

        _write_scenes(chapter, _with_scene_status(chapter.scenes, scene_index, SceneStatus.PENDING))
        chapter.claim_token = None
        chapter.claimed_at = None
        chapter.revision = (chapter.revision or 0) + 1
        self.db.commit()
        return True
