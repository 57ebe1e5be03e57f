from __future__ import annotations

import base64
import json
import threading
from typing import Any, Protocol, runtime_checkable

import openai
from openai import OpenAI

from damflow_core.config import Config
from damflow_core.errors import (
    InferenceTimeoutError,
    PermanentError,
    RateLimitExceeded,
    RecoverableError,
)
from damflow_core.ingestion.rate_limit import ModelRateLimiter

MessageContent = str | list[dict[str, Any]]


@runtime_checkable
class ModelClient(Protocol):
    def complete_json(
        self,
        *,
        model: str,
        system: str,
        content: MessageContent,
        temperature: float,
        retry: bool = False,
    ) -> dict[str, Any]: ...

    def transcribe(self, path: str) -> str: ...

    def embed(self, text: str) -> list[float]: ...


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(data: bytes, mime_type: str = "image/jpeg") -> dict[str, Any]:
    encoded = base64.b64encode(data).decode("ascii")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
    }


def parse_json_object(text: str | None) -> dict[str, Any]:
    if not text:
        raise PermanentError("Model returned an empty response")
    start = text.find("{")
    end = text.rfind("}") + 1
    if start == -1 or end <= start:
        raise PermanentError("Model response did not contain a JSON object")
    try:
        payload = json.loads(text[start:end])
    except ValueError as exc:
        raise PermanentError(f"Model returned malformed JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PermanentError("Model response JSON is not an object")
    return payload


def _translate_error(exc: openai.OpenAIError, call: str) -> Exception:
    if isinstance(exc, openai.APITimeoutError):
        return InferenceTimeoutError(f"{call} timed out")
    if isinstance(exc, openai.RateLimitError):
        return RateLimitExceeded(f"{call} was rate limited")
    if isinstance(exc, openai.APIConnectionError):
        return RecoverableError(f"{call} connection failed: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500 or exc.status_code in {408, 409}:
            return RecoverableError(f"{call} failed with {exc.status_code}")
        return PermanentError(f"{call} rejected with {exc.status_code}: {exc}")
    return PermanentError(f"{call} failed: {exc}")


class OpenAIModelClient:
    """OpenAI-compatible implementation of :class:`ModelClient`.

    Generation calls never retry automatically; embeddings and transcription
    retry up to ``MODEL_MAX_RETRIES`` times inside the SDK.
    """

    def __init__(self, config: Config, limiter: ModelRateLimiter | None = None) -> None:
        self.config = config
        self.limiter = limiter or ModelRateLimiter(config.model_calls_per_min)
        self._client: OpenAI | None = None
        self._lock = threading.Lock()

    def _get_client(self) -> OpenAI:
        with self._lock:
            if self._client is None:
                if not self.config.openai_api_key:
                    raise PermanentError("OPENAI_API_KEY is not configured")
                self._client = OpenAI(
                    api_key=self.config.openai_api_key,
                    base_url=self.config.openai_base_url,
                    timeout=self.config.model_timeout_s,
                    max_retries=0,
                )
            return self._client

    def _retrying_client(self) -> OpenAI:
        return self._get_client().with_options(
            max_retries=self.config.model_max_retries
        )

    def complete_json(
        self,
        *,
        model: str,
        system: str,
        content: MessageContent,
        temperature: float,
        retry: bool = False,
    ) -> dict[str, Any]:
        client = self._retrying_client() if retry else self._get_client()
        self.limiter.acquire()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": content},
                ],
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as exc:
            raise _translate_error(exc, "chat completion") from exc
        if not response.choices:
            raise PermanentError("Model returned no choices")
        return parse_json_object(response.choices[0].message.content)

    def transcribe(self, path: str) -> str:
        client = self._retrying_client()
        self.limiter.acquire()
        try:
            with open(path, "rb") as handle:
                result = client.audio.transcriptions.create(
                    model=self.config.transcribe_model_name,
                    file=handle,
                )
        except openai.OpenAIError as exc:
            raise _translate_error(exc, "transcription") from exc
        return (getattr(result, "text", None) or "").strip()

    def embed(self, text: str) -> list[float]:
        client = self._retrying_client()
        self.limiter.acquire()
        try:
            response = client.embeddings.create(
                model=self.config.embedding_model_name,
                input=text,
            )
        except openai.OpenAIError as exc:
            raise _translate_error(exc, "embedding") from exc
        if not response.data:
            raise PermanentError("Embedding response contained no vectors")
        return [float(value) for value in response.data[0].embedding]
