"""
LLM Client Service for AI-powered text generation.

Provides a unified interface for calling Claude (Anthropic) and GPT (OpenAI) models.
Provider errors are translated into TransientGenerationError (retry) or
FatalGenerationError (give up) so callers never handle SDK exceptions directly.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import anthropic
import openai

from app.core.config import settings
from app.core.exceptions import FatalGenerationError, TransientGenerationError

logger = logging.getLogger(__name__)

# HTTP statuses from a provider that are worth retrying
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504, 529})


class ModelProvider(str, Enum):
    """Supported model providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    estimated_cost: float
    stop_reason: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ModelConfig:
    """Configuration for a specific model."""
    provider: ModelProvider
    model_id: str
    max_tokens: int
    input_cost_per_1k: float  # USD per 1000 input tokens
    output_cost_per_1k: float  # USD per 1000 output tokens


MODELS = {
    # Anthropic models
    "claude-sonnet-4-20250514": ModelConfig(
        provider=ModelProvider.ANTHROPIC,
        model_id="claude-sonnet-4-20250514",
        max_tokens=8192,
        input_cost_per_1k=0.003,
        output_cost_per_1k=0.015,
    ),
    "claude-3-5-haiku-20241022": ModelConfig(
        provider=ModelProvider.ANTHROPIC,
        model_id="claude-3-5-haiku-20241022",
        max_tokens=8192,
        input_cost_per_1k=0.0008,
        output_cost_per_1k=0.004,
    ),
    # OpenAI models
    "gpt-4o": ModelConfig(
        provider=ModelProvider.OPENAI,
        model_id="gpt-4o",
        max_tokens=8192,
        input_cost_per_1k=0.0025,
        output_cost_per_1k=0.01,
    ),
    "gpt-4o-mini": ModelConfig(
        provider=ModelProvider.OPENAI,
        model_id="gpt-4o-mini",
        max_tokens=8192,
        input_cost_per_1k=0.00015,
        output_cost_per_1k=0.0006,
    ),
}


def get_model_config(model: str) -> ModelConfig:
    """Look up a model, falling back to its name prefix for unlisted versions."""
    config = MODELS.get(model)
    if config:
        return config
    if model.startswith("claude"):
        provider = ModelProvider.ANTHROPIC
    elif model.startswith(("gpt", "o1", "o3")):
        provider = ModelProvider.OPENAI
    else:
        raise ValueError(f"Unknown model: {model}")
    return ModelConfig(provider, model, 8192, 0.0, 0.0)


def _retry_after_seconds(response) -> Optional[float]:
    if response is None:
        return None
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def classify_status_error(provider: str, status_code: int, message: str, response=None):
    """Build the pipeline exception for a provider HTTP error."""
    text = f"{provider} API error {status_code}: {message}"
    if status_code in RETRYABLE_STATUS_CODES:
        return TransientGenerationError(
            text,
            provider_status=status_code,
            retry_after=_retry_after_seconds(response),
        )
    return FatalGenerationError(text)


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    provider: str = ""

    def __init__(self, model: str):
        self.model = model
        self.config = get_model_config(model)

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text from a prompt."""

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Calculate estimated cost for the request."""
        input_cost = (input_tokens / 1000) * self.config.input_cost_per_1k
        output_cost = (output_tokens / 1000) * self.config.output_cost_per_1k
        return input_cost + output_cost


class AnthropicClient(BaseLLMClient):
    """Anthropic Claude client."""

    provider = "Anthropic"

    def __init__(self, model: str = "claude-sonnet-4-20250514"):
        super().__init__(model)
        if not settings.ANTHROPIC_API_KEY:
            raise FatalGenerationError("ANTHROPIC_API_KEY is not configured")

        # Retries are handled by the pipeline's own backoff policy
        self.client = anthropic.Anthropic(
            api_key=settings.ANTHROPIC_API_KEY,
            timeout=settings.LLM_REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text using Claude."""
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt or "You are a helpful AI assistant.",
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIStatusError as e:
            raise classify_status_error(self.provider, e.status_code, e.message, e.response) from e
        except anthropic.APITimeoutError as e:
            raise TransientGenerationError(f"{self.provider} request timed out") from e
        except anthropic.APIConnectionError as e:
            raise TransientGenerationError(f"{self.provider} connection error: {e}") from e

        content = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        input_tokens = message.usage.input_tokens
        output_tokens = message.usage.output_tokens

        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=self._calculate_cost(input_tokens, output_tokens),
            stop_reason=message.stop_reason,
        )


class OpenAIClient(BaseLLMClient):
    """OpenAI GPT client."""

    provider = "OpenAI"

    def __init__(self, model: str = "gpt-4o"):
        super().__init__(model)
        if not settings.OPENAI_API_KEY:
            raise FatalGenerationError("OPENAI_API_KEY is not configured")

        self.client = openai.OpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.LLM_REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text using GPT."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.APIStatusError as e:
            raise classify_status_error(self.provider, e.status_code, e.message, e.response) from e
        except openai.APITimeoutError as e:
            raise TransientGenerationError(f"{self.provider} request timed out") from e
        except openai.APIConnectionError as e:
            raise TransientGenerationError(f"{self.provider} connection error: {e}") from e

        content = response.choices[0].message.content or ""
        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0

        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=self._calculate_cost(input_tokens, output_tokens),
            stop_reason=response.choices[0].finish_reason,
        )


class LLMService:
    """
    High-level LLM service that manages multiple clients.

    Model routing:
    - Scene prose: WRITING_MODEL
    - Chapter scene outlines: OUTLINE_MODEL
    """

    def __init__(self):
        self._clients: dict[str, BaseLLMClient] = {}
        self.writing_model = settings.WRITING_MODEL
        self.outline_model = settings.OUTLINE_MODEL

    def get_client(self, model: Optional[str] = None) -> BaseLLMClient:
        """Get or create a client for the specified model."""
        model = model or self.writing_model

        if model not in self._clients:
            config = get_model_config(model)
            if config.provider == ModelProvider.ANTHROPIC:
                self._clients[model] = AnthropicClient(model)
            elif config.provider == ModelProvider.OPENAI:
                self._clients[model] = OpenAIClient(model)
            else:
                raise ValueError(f"Unknown provider: {config.provider}")

        return self._clients[model]

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text using the specified or default model."""
        client = self.get_client(model)
        response = client.generate(
            prompt=prompt,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        logger.debug(
            "LLM call model=%s tokens=%d cost=$%.4f stop=%s",
            response.model,
            response.total_tokens,
            response.estimated_cost,
            response.stop_reason,
        )
        return response


# Singleton instance
_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get the global LLM service instance."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
