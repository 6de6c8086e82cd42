# src/titan_orchestrator/llm/client.py

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from ..tasks.task_models import Task, TaskCompleted, TaskEvent, TaskProgress
from .prompts import SYSTEM_PROMPT, build_task_prompt

logger = logging.getLogger(__name__)

# Progress reported while tokens stream in approaches this value; completion sets 1.0.
_PROGRESS_CEILING = 0.95
_PROGRESS_ON_CONNECT = 0.05


@dataclass(slots=True)
class InferenceOptions:
    """Runtime-adjustable backend options (model, temperature, keys)."""

    api_key: str | None
    base_url: str
    models: list[str]
    temperature: float = 0.7
    max_tokens: int = 4000
    first_token_timeout: float = 20.0
    read_timeout: float = 25.0
    connect_timeout: float = 5.0
    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Any) -> InferenceOptions:
        return cls(
            api_key=getattr(settings, "openai_api_key", None),
            base_url=str(getattr(settings, "openai_base_url", "") or ""),
            models=list(getattr(settings, "llm_models", []) or []),
            temperature=float(getattr(settings, "temperature", 0.7)),
            max_tokens=int(getattr(settings, "max_tokens", 4000)),
            first_token_timeout=float(getattr(settings, "first_token_timeout_seconds", 20.0)),
            read_timeout=float(getattr(settings, "read_timeout_seconds", 25.0)),
            connect_timeout=float(getattr(settings, "connect_timeout_seconds", 5.0)),
            extra_headers=dict(getattr(settings, "extra_headers", {}) or {}),
        )

    def is_configured(self) -> bool:
        return bool((self.api_key or "").strip()) and bool(self.base_url.strip()) and bool(self.models)


def _is_auth_error(exc: Exception) -> bool:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return True
    return exc.__class__.__name__ in {"AuthenticationError", "PermissionDeniedError", "UnauthorizedError"}


def _is_rate_limit_error(exc: Exception) -> bool:
    if isinstance(exc, openai.RateLimitError):
        return True
    return exc.__class__.__name__ in {"RateLimitError", "TooManyRequestsError"}


def _is_connection_error(exc: Exception) -> bool:
    if isinstance(exc, (openai.APIConnectionError, httpx.TimeoutException, TimeoutError)):
        return True
    return exc.__class__.__name__ in {"APIConnectionError", "APITimeoutError", "ReadTimeout", "ConnectTimeout"}


def _is_not_found_error(exc: Exception) -> bool:
    if isinstance(exc, openai.NotFoundError):
        return True
    return exc.__class__.__name__ == "NotFoundError"


def friendly_llm_error_message(err: Exception | str) -> str:
    msg = str(err).strip() or "LLM error."
    if "API key is not set" in msg:
        return "AI backend is not configured (missing API key). Use /key <api-key> or set TITAN_OPENAI_API_KEY."
    if "model list is empty" in msg:
        return "AI backend is not configured (no models). Set TITAN_LLM_MODELS or use /set model <name>."
    if "base URL is not set" in msg:
        return "AI backend is not configured (missing base URL). Set TITAN_OPENAI_BASE_URL."
    return msg


async def _close_stream(stream: Any) -> None:
    """Best-effort close for streaming responses."""
    close = getattr(stream, "close", None)
    if not callable(close):
        return
    try:
        res = close()
        if inspect.isawaitable(res):
            await res
    except Exception:
        logger.debug("LLM: stream close failed", exc_info=True)


def _chunk_text(chunk: Any) -> str | None:
    try:
        delta = chunk.choices[0].delta
    except (AttributeError, IndexError):
        return None
    return getattr(delta, "content", None) if delta is not None else None


class OpenAIInferenceClient:
    """
    Streaming task execution against an OpenAI-compatible chat completions API.

    Behavior (per task):
    - Tries models in priority order.
    - No first content token within first_token_timeout -> try the next model.
    - 404 (model not available) -> try next, and skip that model for an hour.
    - Rate limit / network issues -> try next.
    - Auth issues -> fail fast.
    - Once a model has produced output, errors are final (no mid-answer switch).
    """

    def __init__(self, options: InferenceOptions, *, sdk_client: AsyncOpenAI | None = None) -> None:
        self._options = options
        self._client: AsyncOpenAI | None = sdk_client
        self._live: set[str] = set()  # task ids with an open stream
        self._cancelled: set[str] = set()
        self._bad_models: dict[str, float] = {}  # model -> retry_at (monotonic)

    @property
    def options(self) -> InferenceOptions:
        return self._options

    def is_configured(self) -> bool:
        return self._options.is_configured()

    def set_api_key(self, api_key: str | None) -> None:
        self._options.api_key = (api_key or "").strip() or None
        self._client = None
        logger.info("LLM: API key %s", "set" if self._options.api_key else "cleared")

    def update_option(self, key: str, value: Any) -> None:
        k = key.strip().lower().replace("-", "_")
        if k == "model":
            name = str(value).strip()
            if not name:
                raise ValueError("model name is empty")
            self._options.models = [name, *[m for m in self._options.models if m != name]]
        elif k == "models":
            models = [m.strip() for m in str(value).replace(",", " ").split() if m.strip()]
            if not models:
                raise ValueError("model list is empty")
            self._options.models = models
        elif k == "temperature":
            self._options.temperature = max(0.0, min(2.0, float(value)))
        elif k in ("max_tokens", "maxtokens"):
            self._options.max_tokens = max(1, int(value))
        elif k == "base_url":
            self._options.base_url = str(value).strip()
            self._client = None
        else:
            raise ValueError(f"unknown option: {key}")
        logger.info("LLM: option %s updated", k)

    def _get_client(self) -> AsyncOpenAI:
        """
        Lazily create and cache the SDK client.

        Automatic retries are disabled so a failing model falls through to the next one quickly.
        """
        if self._client is not None:
            return self._client

        opts = self._options
        if not (opts.api_key or "").strip():
            raise RuntimeError("LLM API key is not set. Set TITAN_OPENAI_API_KEY in your .env.")
        if not opts.base_url.strip():
            raise RuntimeError("LLM base URL is not set. Set TITAN_OPENAI_BASE_URL in your .env.")

        self._client = AsyncOpenAI(
            base_url=opts.base_url,
            api_key=str(opts.api_key),
            timeout=self._timeout(),
            max_retries=0,
        )
        return self._client

    def _timeout(self) -> httpx.Timeout:
        opts = self._options
        return httpx.Timeout(
            connect=opts.connect_timeout,
            read=max(opts.read_timeout, opts.first_token_timeout),
            write=10.0,
            pool=opts.connect_timeout,
        )

    async def cancel(self, task_id: str) -> None:
        # The open stream checks this set between chunks and closes the response.
        if task_id not in self._live:
            logger.debug("LLM: cancel for task %s ignored (no open stream)", task_id)
            return
        self._cancelled.add(task_id)
        logger.info("LLM: cancel requested for task %s", task_id)

    async def execute_stream(self, task: Task) -> AsyncIterator[TaskEvent]:
        self._cancelled.discard(task.id)
        opts = self._options
        models = [m.strip() for m in opts.models if m and m.strip()]
        if not models:
            raise RuntimeError("LLM model list is empty. Set TITAN_LLM_MODELS in your .env.")

        client = self._get_client()
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_task_prompt(task)},
        ]

        last_error: Exception | None = None
        now = time.monotonic()

        self._live.add(task.id)
        try:
            for model in models:
                retry_at = self._bad_models.get(model)
                if retry_at is not None and retry_at > now:
                    continue

                logger.info(
                    "LLM: task %s trying model=%s (first_token_timeout=%.1fs)",
                    task.id,
                    model,
                    opts.first_token_timeout,
                )
                t0 = time.monotonic()
                deadline = t0 + opts.first_token_timeout
                stream = None
                text = ""
                progress = 0.0

                try:
                    stream = await asyncio.wait_for(
                        client.chat.completions.create(
                            model=model,
                            stream=True,
                            messages=messages,
                            temperature=opts.temperature,
                            max_tokens=opts.max_tokens,
                            extra_headers=opts.extra_headers or None,
                        ),
                        timeout=opts.first_token_timeout,
                    )
                    progress += _PROGRESS_ON_CONNECT
                    yield TaskProgress(progress_delta=_PROGRESS_ON_CONNECT)

                    chunks = stream.__aiter__()
                    while True:
                        if task.id in self._cancelled:
                            logger.info("LLM: task %s cancelled mid-stream", task.id)
                            return
                        try:
                            if not text:
                                remaining = deadline - time.monotonic()
                                if remaining <= 0:
                                    raise TimeoutError(f"First token timeout on model: {model}")
                                chunk = await asyncio.wait_for(anext(chunks), timeout=remaining)
                            else:
                                chunk = await anext(chunks)
                        except StopAsyncIteration:
                            break

                        content = _chunk_text(chunk)
                        if not content:
                            continue
                        if not text:
                            logger.info("LLM: first token from model=%s (%.2fs)", model, time.monotonic() - t0)
                        text += content
                        step = (_PROGRESS_CEILING - progress) * 0.05
                        progress += step
                        yield TaskProgress(progress_delta=step, partial_result=text)

                    if text:
                        logger.debug("LLM: task %s completed with model=%s", task.id, model)
                        yield TaskCompleted(result=text)
                        return

                    last_error = RuntimeError(f"Model returned no content: {model}")

                except Exception as e:
                    if text:
                        # Partial answer already delivered; switching models would garble it.
                        raise
                    last_error = e

                    if _is_auth_error(e):
                        raise RuntimeError(
                            "LLM authentication failed. Check your API key (TITAN_OPENAI_API_KEY)."
                        ) from e

                    if _is_not_found_error(e):
                        self._bad_models[model] = time.monotonic() + 3600.0
                        logger.info("LLM: model not available (404): %s", model)
                    elif _is_rate_limit_error(e):
                        logger.info("LLM: rate-limited on model=%s, trying next", model)
                    elif _is_connection_error(e):
                        logger.info("LLM: network/timeout error on model=%s, trying next", model)
                    else:
                        logger.info("LLM: error on model=%s (%s), trying next", model, e.__class__.__name__)
                    continue

                finally:
                    if stream is not None:
                        await _close_stream(stream)
        finally:
            self._live.discard(task.id)
            self._cancelled.discard(task.id)

        if last_error is not None:
            if _is_rate_limit_error(last_error):
                raise RuntimeError("LLM is rate-limited. Try again later.") from last_error
            if _is_connection_error(last_error):
                raise RuntimeError("LLM network/timeout error. Try again later or change models.") from last_error
            raise RuntimeError("All LLM models failed.") from last_error

        raise RuntimeError("All LLM models failed.")
