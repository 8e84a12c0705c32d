"""
Chapter scene outline generator.

Asks the outline model for a JSON list of scene descriptors for a chapter
that has none yet.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from app.core.config import settings
from app.core.exceptions import TransientGenerationError
from app.schemas.writing import SceneOutline
from app.services.llm import LLMService, get_llm_service
from app.services.retry import RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

OUTLINE_SYSTEM_PROMPT = (
    "You are a professional book editor who plans chapters scene by scene. "
    "Always answer with valid JSON only."
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


@dataclass
class OutlineRequest:
    chapter_title: str
    chapter_summary: Optional[str]
    chapter_number: int
    chapter_count: int
    genre: Optional[str] = None
    story_idea: Optional[str] = None
    story_structure: Any = None
    scene_count: int = 5
    words_per_scene: int = 1000


def parse_scene_outline(raw: str) -> list[dict]:
    """
    Parse model output into validated scene dicts.

    Accepts a bare JSON array, an object with a "scenes" key, and either
    wrapped in a markdown code fence.
    """
    cleaned = _CODE_FENCE.sub("", raw.strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise TransientGenerationError(f"Outline was not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("scenes")
    if not isinstance(data, list) or not data:
        raise TransientGenerationError("Outline JSON did not contain a list of scenes")

    try:
        scenes = [SceneOutline.model_validate(item) for item in data]
    except ValidationError as e:
        raise TransientGenerationError(f"Outline scenes failed validation: {e}") from e

    return [scene.model_copy(update={"status": "pending"}).model_dump() for scene in scenes]


def build_outline_prompt(request: OutlineRequest) -> str:
    prompt = f"""Plan chapter {request.chapter_number} of {request.chapter_count}: "{request.chapter_title}".
"""
    if request.chapter_summary:
        prompt += f"\nChapter summary:\n{request.chapter_summary}\n"
    if request.genre:
        prompt += f"\nGenre: {request.genre}\n"
    if request.story_idea:
        prompt += f"\nStory premise:\n{request.story_idea}\n"
    if request.story_structure:
        prompt += (
            "\nStory structure:\n"
            f"{json.dumps(request.story_structure, indent=2, ensure_ascii=False)}\n"
        )

    prompt += f"""
Break the chapter into {request.scene_count} scenes of about {request.words_per_scene} words each.

ANSWER WITH A JSON ARRAY ONLY, one object per scene:
[
  {{
    "title": "Scene title",
    "pov": "Point-of-view character",
    "location": "Where it happens",
    "time": "When it happens",
    "description": "What happens in the scene",
    "key_events": ["event 1", "event 2"],
    "emotional_arc": "How the mood shifts",
    "target_words": {request.words_per_scene}
  }}
]"""
    return prompt


class OutlineGenerator:
    """Generates scene outlines for chapters."""

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        model: Optional[str] = None,
    ):
        self.llm = llm or get_llm_service()
        self.policy = policy or RetryPolicy.from_settings()
        self.sleep = sleep
        self.model = model or settings.OUTLINE_MODEL

    def generate_outline(self, request: OutlineRequest) -> list[dict]:
        prompt = build_outline_prompt(request)

        def attempt() -> list[dict]:
            response = self.llm.generate(
                prompt=prompt,
                system_prompt=OUTLINE_SYSTEM_PROMPT,
                model=self.model,
                max_tokens=4000,
                temperature=0.7,
            )
            return parse_scene_outline(response.content or "")

        scenes = run_with_retry(
            attempt,
            self.policy,
            sleep=self.sleep,
            description=f"outline for '{request.chapter_title}'",
        )
        logger.info("Generated %d-scene outline for '%s'", len(scenes), request.chapter_title)
        return scenes
