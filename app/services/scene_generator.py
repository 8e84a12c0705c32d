"""
Scene content generator.

Turns one scene descriptor plus its surrounding context into prose by calling
the writing model, retrying transient provider failures with backoff.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from app.core.config import settings
from app.core.exceptions import TransientGenerationError
from app.schemas.writing import SceneOutline
from app.services.llm import LLMService, get_llm_service
from app.services.retry import RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

SCENE_TEMPERATURE = 0.8
MAX_SCENE_TOKENS = 8000

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n+")

SYSTEM_PROMPTS = {
    "fiction": """You are a bestselling novelist. Write gripping, emotionally rich prose.
Rules:
- Literary style with vivid description and natural dialogue
- Keep every character's voice and personality consistent
- Build tension and emotional depth
- The scene should stand on its own while fitting the larger story
- Output only the scene text, no headings or commentary""",
    "adult": """You are an experienced romance novelist writing for adult readers.
Rules:
- Sensual, literary style; intimate scenes are tasteful
- Focus on emotion and the relationship as much as the physical
- Use rich sensory description
- Chemistry between the characters must feel authentic
- Output only the scene text, no headings or commentary""",
    "nonfiction": """You are an experienced non-fiction author. Write clear, informative text.
Rules:
- Accessible language with professional accuracy
- Structured, logical progression
- Practical examples and applications
- Highlight key points and summarise where useful
- Output only the section text, no headings or commentary""",
    "children": """You are a beloved children's storybook author.
Rules:
- Simple, warm language suitable for young readers
- Short sentences and short paragraphs
- Gentle humour, wonder, and a clear emotional beat
- Nothing frightening or inappropriate
- Output only the story text, no headings or commentary""",
}


def select_prompt_style(genre: Optional[str], subgenre: Optional[str], audience: Optional[str]) -> str:
    """Map project metadata to one of SYSTEM_PROMPTS."""
    genre = (genre or "").lower()
    subgenre = (subgenre or "").lower()
    audience = (audience or "").lower()

    if genre in ("children", "childrens", "storybook") or audience == "children":
        return "children"
    if genre in ("nonfiction", "non_fiction", "non-fiction"):
        return "nonfiction"
    if subgenre in ("erotic", "erotica", "adult"):
        return "adult"
    return "fiction"


def split_paragraphs(text: str) -> list[str]:
    """Split generated text into paragraph blocks on blank lines."""
    return [p.strip() for p in _PARAGRAPH_SPLIT.split(text.strip()) if p.strip()]


def count_words(text: str) -> int:
    return len(text.split())


@dataclass
class SceneContext:
    """Everything the writing model needs to produce one scene."""

    chapter_title: str
    scene_index: int
    scene_count: int
    scene: SceneOutline
    genre: Optional[str] = None
    subgenre: Optional[str] = None
    target_audience: Optional[str] = None
    story_idea: Optional[str] = None
    story_structure: Any = None
    previous_text: str = ""

    @property
    def target_words(self) -> int:
        return self.scene.target_words


@dataclass
class SceneDraft:
    text: str
    paragraphs: list[str] = field(default_factory=list)
    word_count: int = 0
    model: str = ""
    attempts: int = 1


def build_user_prompt(context: SceneContext) -> str:
    scene = context.scene
    key_events = "\n".join(f"- {event}" for event in scene.key_events) or "- (none specified)"

    prompt = f"""Write a scene based on the following outline:

Chapter: {context.chapter_title}
Scene {context.scene_index + 1}/{context.scene_count}"""
    if scene.title:
        prompt += f"\nScene title: {scene.title}"

    prompt += f"""

POV: {scene.pov or "Third person"}
Location: {scene.location or "Unspecified"}
Time: {scene.time or "Unspecified"}

Description: {scene.description}

Key events:
{key_events}

Emotional arc: {scene.emotional_arc or "Unspecified"}

Target length: ~{scene.target_words} words"""

    if context.story_idea:
        prompt += f"\n\nStory premise:\n{context.story_idea}"

    if context.previous_text:
        tail = context.previous_text[-settings.PREVIOUS_CONTEXT_CHARS:]
        prompt += f"\n\nPrevious content from this chapter (continue from here):\n{tail}"

    if context.story_structure:
        prompt += (
            "\n\nStory structure:\n"
            f"{json.dumps(context.story_structure, indent=2, ensure_ascii=False)}"
        )

    return prompt


class SceneGenerator:
    """Generates scene prose through the LLM service."""

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
        self.model = model or settings.WRITING_MODEL

    def generate_scene(self, context: SceneContext) -> SceneDraft:
        """
        Generate prose for one scene.

        Raises:
            FatalGenerationError: provider rejected the request, or every
                attempt failed transiently.
        """
        style = select_prompt_style(context.genre, context.subgenre, context.target_audience)
        system_prompt = SYSTEM_PROMPTS[style]
        user_prompt = build_user_prompt(context)
        max_tokens = min(context.target_words * 2, MAX_SCENE_TOKENS)
        attempts = 0

        def attempt() -> str:
            nonlocal attempts
            attempts += 1
            response = self.llm.generate(
                prompt=user_prompt,
                system_prompt=system_prompt,
                model=self.model,
                max_tokens=max_tokens,
                temperature=SCENE_TEMPERATURE,
            )
            text = (response.content or "").strip()
            if not text:
                raise TransientGenerationError("Model returned empty scene text")
            return text

        text = run_with_retry(
            attempt,
            self.policy,
            sleep=self.sleep,
            description=f"scene {context.scene_index + 1} of '{context.chapter_title}'",
        )
        paragraphs = split_paragraphs(text)
        word_count = count_words(text)

        logger.info(
            "Generated scene %d/%d of '%s': %d words in %d paragraphs (%d attempts)",
            context.scene_index + 1,
            context.scene_count,
            context.chapter_title,
            word_count,
            len(paragraphs),
            attempts,
        )
        return SceneDraft(
            text=text,
            paragraphs=paragraphs,
            word_count=word_count,
            model=self.model,
            attempts=attempts,
        )
