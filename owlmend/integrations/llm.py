"""LLM integration. Every model call made by OwlMend goes through this module.

litellm is isolated here so routing, fallback and provider swaps live in one
place. Provides:

- acompletion(): thin pass-through to litellm.acompletion
- LLMConfig, LLMClient: per-task routing, fallback models, typed errors, mock mode
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


async def acompletion(**kwargs: Any) -> Any:
    """Async completion; delegates to litellm.acompletion."""
    import litellm

    return await litellm.acompletion(**kwargs)


class LLMError(Exception):
    """Base exception for LLM integration errors."""

    def __init__(self, message: str, *, model: str | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.model = model
        self.cause = cause


class AuthenticationError(LLMError):
    """API key invalid or missing."""


class RateLimitError(LLMError):
    """Provider rate limit exceeded (retriable)."""


class ContextWindowExceededError(LLMError):
    """Prompt exceeds the model context window."""


class ServiceUnavailableError(LLMError):
    """Provider unavailable; fallback models may be attempted."""


class TaskRouting(BaseModel):
    """Route one task type (e.g. ``propose_fix``) to a model."""

    task_type: str
    model: str
    fallback_models: list[str] = Field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None


class LLMConfig(BaseModel):
    """Model selection and retry behavior for LLMClient."""

    default_model: str = "gpt-4o-mini"
    fallback_models: list[str] = Field(default_factory=list)
    task_routing: list[TaskRouting] = Field(default_factory=list)
    temperature: float = 0.0
    max_tokens: int = 2048
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    mock_mode: bool = False
    mock_responses: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_integration_config(cls, config: Any) -> LLMConfig:
        """Build from the ``integrations.llm`` section of owlmend.yaml."""
        return cls(
            default_model=config.model,
            fallback_models=list(config.fallback_models),
            temperature=config.temperature,
            mock_mode=config.mock_mode,
        )


@dataclass
class LLMResponse:
    """Unified LLM response shape."""

    content: str | None
    model: str
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMClient:
    """Wrapper over litellm with task routing and model fallback."""

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        if not config.mock_mode:
            import litellm

            litellm.drop_params = True

    def _route(self, task_type: str | None) -> tuple[str, list[str], float, int]:
        if task_type:
            for routing in self.config.task_routing:
                if routing.task_type == task_type:
                    return (
                        routing.model,
                        list(routing.fallback_models),
                        routing.temperature if routing.temperature is not None else self.config.temperature,
                        routing.max_tokens if routing.max_tokens is not None else self.config.max_tokens,
                    )
        return (
            self.config.default_model,
            list(self.config.fallback_models),
            self.config.temperature,
            self.config.max_tokens,
        )

    def _wrap_error(self, e: Exception, model: str) -> LLMError:
        """Map a litellm exception to a typed LLMError."""
        msg = str(e)
        err_name = type(e).__name__
        msg_lower = msg.lower()
        logger.warning(
            "LLM call failed model=%s error_type=%s message=%s",
            model,
            err_name,
            msg[:200] + ("..." if len(msg) > 200 else ""),
        )
        if "Authentication" in err_name or "authentication" in msg_lower:
            return AuthenticationError(msg, model=model, cause=e)
        if "RateLimit" in err_name or "rate_limit" in msg_lower or "too many requests" in msg_lower:
            return RateLimitError(msg, model=model, cause=e)
        if "ContextWindow" in err_name or ("context" in msg_lower and "window" in msg_lower):
            return ContextWindowExceededError(msg, model=model, cause=e)
        return ServiceUnavailableError(f"LLM call failed: {msg}", model=model, cause=e)

    async def _call_with_fallback(self, params: dict[str, Any], fallback_models: list[str]) -> tuple[Any, str]:
        models_to_try = [params["model"]] + fallback_models
        last_error: Exception | None = None
        last_model = params["model"]
        for index, model in enumerate(models_to_try):
            last_model = model
            for attempt in range(1, max(1, self.config.max_retries) + 1):
                try:
                    return await acompletion(**{**params, "model": model}), model
                except Exception as e:
                    last_error = e
                    err_name = type(e).__name__
                    if "Authentication" in err_name:
                        raise self._wrap_error(e, model) from e
                    rate_limited = "RateLimit" in err_name or "rate_limit" in str(e).lower()
                    if rate_limited and attempt < self.config.max_retries:
                        await asyncio.sleep(self.config.retry_delay_seconds * (2 ** (attempt - 1)))
                        continue
                    break
            if index < len(models_to_try) - 1:
                logger.warning("Model %s failed, trying fallback: %s", model, last_error)
        if last_error is not None:
            raise self._wrap_error(last_error, last_model) from last_error
        raise ServiceUnavailableError("All models failed", model=last_model)

    @staticmethod
    def _parse_response(response: Any, model: str) -> LLMResponse:
        message = response.choices[0].message
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=getattr(message, "content", None) or None,
            model=model,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        task_type: str | None = None,
        *,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Run one completion with routing and fallback."""
        if self.config.mock_mode:
            key = task_type or "default"
            content = self.config.mock_responses.get(key, self.config.mock_responses.get("default", ""))
            return LLMResponse(content=content, model="mock", prompt_tokens=0, completion_tokens=0)
        model, fallback, temperature, max_tokens = self._route(task_type)
        params: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        response, used_model = await self._call_with_fallback(params, fallback)
        return self._parse_response(response, used_model)
