"""LLM provider client: embeddings + chat completions (OpenAI-compatible REST)."""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol
from uuid import uuid4

import httpx

from apps.backend.config import get_settings
from apps.backend.services.errors import PortalEngineError, TransientDependencyError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.openai.com/v1"
_CITE_RE = re.compile(r"\[S(\d+)\]")

SYSTEM_PROMPT = (
    "You are the assistant on a candidate's personal portal. Answer recruiter questions "
    "using ONLY the profile excerpts provided. Cite excerpts as [S1], [S2] after the facts "
    "they support. If the excerpts do not contain the answer, say that it is not covered "
    "in this profile. Never invent employers, dates, skills or contact details."
)


PERSONALITIES: dict[str, str] = {
    "professional": "Keep a professional, neutral tone.",
    "friendly": "Keep a warm, friendly tone while staying factual.",
    "concise": "Answer in one or two short sentences.",
    "technical": "Prefer precise technical wording; name tools and technologies explicitly.",
}
DEFAULT_ALLOWED_TOPICS = ("experience", "skills", "education", "projects", "achievements")


@dataclass(frozen=True)
class ChatSettings:
    """Настройки ассистента конкретного портала; None = глобальное значение провайдера."""

    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None
    personality: str = "professional"
    allowed_topics: tuple[str, ...] = DEFAULT_ALLOWED_TOPICS

    @classmethod
    def from_dict(cls, raw: dict | None) -> "ChatSettings":
        raw = raw or {}
        topics = raw.get("allowed_topics")
        return cls(
            temperature=raw.get("temperature"),
            max_tokens=raw.get("max_tokens"),
            system_prompt=raw.get("system_prompt") or None,
            personality=raw.get("personality") or "professional",
            allowed_topics=tuple(topics) if topics else DEFAULT_ALLOWED_TOPICS,
        )


def build_system_prompt(settings: ChatSettings | None = None) -> str:
    settings = settings or ChatSettings()
    parts = [SYSTEM_PROMPT, PERSONALITIES.get(settings.personality, PERSONALITIES["professional"])]
    if settings.allowed_topics:
        parts.append(
            "Only discuss these topics: " + ", ".join(settings.allowed_topics)
            + ". For anything else, say that it is not covered in this profile."
        )
    # owner instructions come after the grounding rules and cannot lift them
    if settings.system_prompt:
        parts.append("Additional instructions from the profile owner:\n" + settings.system_prompt.strip())
    return "\n\n".join(parts)


def _httpx_verify_setting() -> bool | str:
    """
    SSL verify control:
    - LLM_CA_BUNDLE=/path/to/ca.pem -> use custom CA bundle
    - LLM_INSECURE_SSL=1 -> disable verify (not recommended)
    """
    ca_bundle = (os.getenv("LLM_CA_BUNDLE") or "").strip()
    if ca_bundle:
        return ca_bundle
    insecure = (os.getenv("LLM_INSECURE_SSL") or "").strip().lower()
    if insecure in ("1", "true", "yes", "on"):
        return False
    return True


def _normalize_err(err: str) -> str:
    if not err:
        return "unknown_error"
    low = err.lower()
    if "connection reset by peer" in low or "errno 104" in low:
        return "connection_reset"
    if "certificate verify failed" in low:
        return "ssl_verify_failed"
    if "timeout" in low or "timed out" in low:
        return "timeout"
    return err[:200]


def _request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json_body: dict | None = None,
    timeout: float = 15,
) -> tuple[httpx.Response | None, dict, str | None]:
    try:
        r = httpx.request(
            method,
            url,
            headers=headers,
            json=json_body,
            timeout=timeout,
            verify=_httpx_verify_setting(),
        )
        payload = r.json() if r.content else {}
        return r, payload if isinstance(payload, dict) else {}, None
    except (httpx.RequestError, OSError, ValueError) as e:
        return None, {}, _normalize_err(str(e))


def _headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Accept": "application/json",
        "Content-Type": "application/json",
        "X-Request-Id": str(uuid4()),
    }


def _raise_for_status(r: httpx.Response | None, data: dict, err: str | None) -> None:
    if err:
        raise TransientDependencyError(err, code="llm_unavailable")
    if r is None:
        raise TransientDependencyError("no_response", code="llm_unavailable")
    if r.status_code == 429 or r.status_code >= 500:
        raise TransientDependencyError(f"http_{r.status_code}", code="llm_unavailable")
    if r.status_code >= 400:
        msg = data.get("error")
        if isinstance(msg, dict):
            msg = msg.get("message")
        raise PortalEngineError(str(msg or r.status_code)[:200], code="llm_rejected")


def create_embeddings(
    api_base: str,
    api_key: str,
    model: str,
    texts: list[str],
    timeout: float = 30,
) -> tuple[list[list[float]], dict | None]:
    if not api_key:
        raise PortalEngineError("missing_api_key", code="llm_misconfigured")
    if not model:
        raise PortalEngineError("missing_model", code="llm_misconfigured")
    base = (api_base or DEFAULT_API_BASE).rstrip("/")
    logger.info("llm_embeddings_request %s", json.dumps({"model": model, "batch": len(texts)}, ensure_ascii=False))
    r, data, err = _request_json(
        "POST",
        f"{base}/embeddings",
        headers=_headers(api_key),
        json_body={"model": model, "input": texts},
        timeout=timeout,
    )
    _raise_for_status(r, data, err)
    vectors: list[list[float]] = []
    for it in data.get("data") or []:
        vec = it.get("embedding") if isinstance(it, dict) else None
        if isinstance(vec, list):
            vectors.append([float(x) for x in vec])
    if len(vectors) != len(texts):
        raise TransientDependencyError("embedding_count_mismatch", code="llm_bad_response")
    return vectors, data.get("usage")


def chat_complete(
    api_base: str,
    api_key: str,
    model: str,
    messages: list[dict[str, Any]],
    temperature: float = 0.2,
    max_tokens: int = 500,
    timeout: float = 60,
) -> tuple[str, dict | None]:
    if not api_key:
        raise PortalEngineError("missing_api_key", code="llm_misconfigured")
    base = (api_base or DEFAULT_API_BASE).rstrip("/")
    logger.info("llm_chat_request %s", json.dumps({"model": model, "messages": len(messages)}, ensure_ascii=False))
    payload = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    r, data, err = _request_json("POST", f"{base}/chat/completions", headers=_headers(api_key), json_body=payload, timeout=timeout)
    _raise_for_status(r, data, err)
    choices = data.get("choices") or []
    if isinstance(choices, list) and choices:
        msg = choices[0].get("message") or {}
        content = msg.get("content")
        if content:
            return str(content), data.get("usage")
    raise TransientDependencyError("empty_response", code="llm_bad_response")


@dataclass
class Completion:
    text: str
    used_chunk_ids: list[int] = field(default_factory=list)
    usage: dict | None = None


class LLMProvider(Protocol):
    model_version: str

    def embed(self, text: str) -> list[float]: ...

    def complete(
        self,
        context: list[dict[str, Any]],
        history: list[dict[str, str]],
        chat_settings: ChatSettings | None = None,
    ) -> Completion: ...


def render_context(context: list[dict[str, Any]]) -> str:
    lines = []
    for i, c in enumerate(context, start=1):
        section = c.get("section") or "Profile"
        lines.append(f"[S{i}] ({section}) {(c.get('text') or '').strip()}")
    return "\n\n".join(lines)


def parse_used_chunk_ids(answer: str, context: list[dict[str, Any]]) -> list[int]:
    out: list[int] = []
    for m in _CITE_RE.finditer(answer or ""):
        idx = int(m.group(1)) - 1
        if 0 <= idx < len(context):
            cid = context[idx].get("chunk_id")
            if isinstance(cid, int) and cid not in out:
                out.append(cid)
    return out


class HttpLLMProvider:
    def __init__(
        self,
        api_base: str,
        api_key: str,
        embedding_model: str,
        chat_model: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 500,
        embed_timeout: float = 30,
        completion_timeout: float = 60,
    ) -> None:
        self.api_base = api_base
        self.api_key = api_key
        self.embedding_model = embedding_model
        self.chat_model = chat_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.embed_timeout = embed_timeout
        self.completion_timeout = completion_timeout

    @property
    def model_version(self) -> str:
        return self.embedding_model

    def embed(self, text: str) -> list[float]:
        vectors, _usage = create_embeddings(
            self.api_base, self.api_key, self.embedding_model, [text], timeout=self.embed_timeout
        )
        return vectors[0]

    def complete(
        self,
        context: list[dict[str, Any]],
        history: list[dict[str, str]],
        chat_settings: ChatSettings | None = None,
    ) -> Completion:
        cs = chat_settings or ChatSettings()
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(cs)},
            {"role": "system", "content": "Profile excerpts:\n\n" + render_context(context)},
        ]
        for h in history:
            role = "assistant" if h.get("role") == "assistant" else "user"
            messages.append({"role": role, "content": h.get("text") or ""})
        text, usage = chat_complete(
            self.api_base,
            self.api_key,
            self.chat_model,
            messages,
            temperature=self.temperature if cs.temperature is None else float(cs.temperature),
            max_tokens=self.max_tokens if cs.max_tokens is None else int(cs.max_tokens),
            timeout=self.completion_timeout,
        )
        return Completion(text=text, used_chunk_ids=parse_used_chunk_ids(text, context), usage=usage)


@lru_cache
def get_llm_provider() -> LLMProvider:
    s = get_settings()
    return HttpLLMProvider(
        s.llm_api_base,
        s.llm_api_key,
        s.embedding_model,
        s.chat_model,
        temperature=s.chat_temperature,
        max_tokens=s.chat_max_tokens,
        embed_timeout=s.embed_timeout_seconds,
        completion_timeout=s.completion_timeout_seconds,
    )
