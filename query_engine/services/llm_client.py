"""
LLM collaborator adapter.

Callers build an LLMRequest and get back an LLMResponse or a typed
QueryGenerationError. Every call is bounded by an explicit timeout.
"""
import logging
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import openai
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from query_engine.services import settings
from query_engine.services.models import LLMNetworkError, ModelUnavailableError
from query_engine.services.runtime import log_event, run_with_timeout

logger = logging.getLogger("llm_client")


@dataclass
class LLMRequest:
    prompt: str
    task_type: str = "general"
    max_tokens: int = 1000
    temperature: float = 0.0


@dataclass
class LLMResponse:
    content: str
    usage: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMClient(Protocol):
    def generate(self, request: LLMRequest) -> LLMResponse:
        ...


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content or "")


class LangChainLLMClient:
    """LLMClient backed by any LangChain chat model (ChatOpenAI in production)."""

    def __init__(self, chat_model: BaseChatModel, timeout_s: float = 10.0, model_name: Optional[str] = None):
        self.chat_model = chat_model
        self.timeout_s = timeout_s
        self.model_name = model_name or getattr(chat_model, "model_name", None) or type(chat_model).__name__

    def generate(self, request: LLMRequest) -> LLMResponse:
        bound = self.chat_model.bind(max_tokens=request.max_tokens, temperature=request.temperature)
        started = time.perf_counter()
        try:
            message = run_with_timeout(lambda: bound.invoke(request.prompt), self.timeout_s)
        except FuturesTimeoutError as exc:
            self._log_failure(request, "timeout", started)
            raise ModelUnavailableError(
                f"LLM call for {request.task_type} timed out after {self.timeout_s}s"
            ) from exc
        except openai.APITimeoutError as exc:
            # APITimeoutError subclasses APIConnectionError
            self._log_failure(request, "provider_timeout", started)
            raise ModelUnavailableError(f"LLM call for {request.task_type} timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            self._log_failure(request, "network", started)
            raise LLMNetworkError(f"LLM network error: {exc}") from exc
        except Exception as exc:
            self._log_failure(request, type(exc).__name__, started)
            raise ModelUnavailableError(f"LLM call failed: {exc}") from exc

        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
        usage = dict(getattr(message, "usage_metadata", None) or {})
        metadata = dict(getattr(message, "response_metadata", None) or {})
        metadata.setdefault("model", self.model_name)
        metadata["task_type"] = request.task_type
        metadata["elapsed_ms"] = elapsed_ms
        return LLMResponse(content=_message_text(message), usage=usage, metadata=metadata)

    def _log_failure(self, request: LLMRequest, reason: str, started: float) -> None:
        log_event(
            logger,
            logging.WARNING,
            "llm_call_failed",
            task_type=request.task_type,
            model=self.model_name,
            reason=reason,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )


def build_chat_model_from_env(model_name: Optional[str] = None) -> ChatOpenAI:
    kwargs: Dict[str, Any] = {
        "model": model_name or settings.LLM_MODEL,
        "temperature": 0.0,
        "timeout": settings.LLM_TIMEOUT_S,
        "max_retries": 0,
    }
    if settings.OPENAI_API_KEY:
        kwargs["api_key"] = settings.OPENAI_API_KEY
    if settings.LLM_BASE_URL:
        kwargs["base_url"] = settings.LLM_BASE_URL
    return ChatOpenAI(**kwargs)


def build_llm_client_from_env(model_name: Optional[str] = None) -> LangChainLLMClient:
    chat_model = build_chat_model_from_env(model_name)
    return LangChainLLMClient(chat_model, timeout_s=settings.LLM_TIMEOUT_S, model_name=chat_model.model_name)
