from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SCENE_WORDS = 1000


class WritingAction(str, Enum):
    START = "start"
    RESUME = "resume"
    PAUSE = "pause"
    CANCEL = "cancel"


class OrchestrateRequest(BaseModel):
    action: WritingAction


class OrchestrateResponse(BaseModel):
    success: bool = True
    status: str
    message: str
    total_scenes: int | None = None


class SceneOutline(BaseModel):
    """One scene descriptor inside a chapter's scene outline."""

    # Keys added by the frontend editor are carried through untouched
    model_config = ConfigDict(extra="allow")

    title: str = ""
    pov: str | None = None
    location: str | None = None
    time: str | None = None
    description: str = ""
    key_events: list[str] = Field(default_factory=list)
    emotional_arc: str | None = None
    target_words: int = DEFAULT_SCENE_WORDS
    status: str = "pending"

    @field_validator("target_words", mode="before")
    @classmethod
    def _default_target_words(cls, value):
        if value in (None, "") or (isinstance(value, (int, float)) and value <= 0):
            return DEFAULT_SCENE_WORDS
        return value

    @field_validator("key_events", mode="before")
    @classmethod
    def _listify_key_events(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class TickStatus(str, Enum):
    SCENE_COMPLETED = "scene_completed"
    OUTLINES_READY = "outlines_ready"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    STOPPED = "stopped"
    FAILED = "failed"
    OUTLINE_ERROR = "outline_error"


class TickResult(BaseModel):
    status: TickStatus
    message: str = ""
    chapter_id: str | None = None
    scene_index: int | None = None
    words_written: int = 0
    total_words: int | None = None
    error: Optional[str] = None


class ChapterRecovery(BaseModel):
    chapter_id: str
    title: str
    missing_scenes: int


class RecoveryResponse(BaseModel):
    success: bool = True
    message: str
    recovered_scenes: int = 0
    incomplete_chapters_count: int = 0
    total_missing_scenes: int = 0
    chapters: list[ChapterRecovery] = Field(default_factory=list)
    # Only set when nothing needed recovering
    total_words: int | None = None
    target_words: int | None = None
    percentage: int | None = None
