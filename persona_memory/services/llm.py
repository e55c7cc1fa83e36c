"""
Completion service client (OpenAI-compatible /chat/completions).

  - Retries 429 / 5xx / timeouts / transport errors with capped exponential backoff + jitter
  - Falls back once to the other configured provider
  - JSON mode for episode summaries and fact extraction, parsed tolerantly
  - Character-based token estimates for prompt budgeting
  - One pooled httpx client per process

The memory tiers receive this module (or any object exposing chat_text,
chat_simple and chat_json) as a constructor argument.
"""

import asyncio
import json
import logging
import random
import re
import time
from typing import Any, NamedTuple, Optional

import httpx

from ..core.config import get_settings
from ..core.flags import get_flags

logger = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"

# ── Shared HTTP client ───────────────────────────────────────────────

_client: Optional[httpx.AsyncClient] = None


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=90, write=30, pool=10),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _client


def set_client(client: Optional[httpx.AsyncClient]) -> None:
    """Install a preconfigured client (custom transport, proxies). None resets to lazy creation."""
    global _client
    _client = client


async def close_client():
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
    _client = None


# ── Providers ────────────────────────────────────────────────────────

class Provider(NamedTuple):
    name: str
    base_url: str
    api_key: str
    model: str


def _provider(name: str) -> Provider:
    settings = get_settings()
    if name == "gemini":
        return Provider("gemini", GEMINI_OPENAI_BASE_URL, settings.gemini_api_key, settings.default_llm_model)
    return Provider("openai", settings.openai_base_url, settings.openai_api_key, settings.default_llm_model)


def _candidates(explicit: Optional[str]) -> list[Provider]:
    """Primary provider, then the other one if it has a key. An explicit choice gets no fallback."""
    primary = _provider((explicit or get_flags().llm_provider).lower())
    if explicit:
        return [primary]
    other = _provider("openai" if primary.name == "gemini" else "gemini")
    return [primary, other] if other.api_key else [primary]


# ── Retry ────────────────────────────────────────────────────────────

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 16.0


def _backoff(attempt: int) -> float:
    return min(MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))


async def _post_with_retry(
    client: httpx.AsyncClient, url: str, payload: dict, headers: dict
) -> httpx.Response:
    last_exc: Optional[Exception] = None

    for attempt in range(MAX_RETRIES + 1):
        final = attempt == MAX_RETRIES
        try:
            resp = await client.post(url, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_exc = e
            delay = _backoff(attempt)
            logger.warning(
                "Completion request failed (attempt %d/%d): %s",
                attempt + 1, MAX_RETRIES + 1, e or type(e).__name__,
            )
            if not final:
                await asyncio.sleep(delay)
            continue

        if resp.status_code in RETRYABLE_STATUS:
            retry_after = resp.headers.get("retry-after")
            delay = float(retry_after) if retry_after else _backoff(attempt)
            logger.warning(
                "Completion service returned %d (attempt %d/%d)",
                resp.status_code, attempt + 1, MAX_RETRIES + 1,
            )
            last_exc = httpx.HTTPStatusError(
                f"{resp.status_code} from completion service", request=resp.request, response=resp
            )
            if not final:
                await asyncio.sleep(delay)
            continue

        if resp.status_code >= 400:
            logger.error("Completion service error %d: %s", resp.status_code, resp.text[:500])
        resp.raise_for_status()
        return resp

    raise last_exc or RuntimeError("Completion request failed after retries")


# ── Chat ─────────────────────────────────────────────────────────────

async def chat(
    messages: list[dict],
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    response_format: Optional[dict] = None,
    provider: Optional[str] = None,
) -> dict:
    """
    One chat completion. Returns the raw response body.
    Raises ValueError when the chosen provider has no API key, otherwise the
    last provider's error once every candidate has failed.
    """
    settings = get_settings()
    providers = _candidates(provider)

    if not providers[0].api_key:
        raise ValueError(
            f"No API key for LLM provider '{providers[0].name}'. "
            "Set OPENAI_API_KEY or GEMINI_API_KEY."
        )

    client = _get_client()
    for index, p in enumerate(providers):
        payload: dict[str, Any] = {
            "model": model or p.model,
            "messages": messages,
            "temperature": settings.default_llm_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or settings.default_llm_max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        start = time.monotonic()
        try:
            resp = await _post_with_retry(
                client,
                f"{p.base_url.rstrip('/')}/chat/completions",
                payload,
                {"Authorization": f"Bearer {p.api_key}", "Content-Type": "application/json"},
            )
        except Exception as e:
            logger.error("Completion via %s failed after %.1fs: %s", p.name, time.monotonic() - start, e)
            if index + 1 < len(providers):
                logger.info("Falling back to %s", providers[index + 1].name)
                continue
            raise

        data = resp.json()
        usage = data.get("usage") or {}
        logger.info(
            "Completion %s via %s: %dms | in=%d out=%d tokens | model=%s",
            "json" if response_format else "text",
            p.name,
            int((time.monotonic() - start) * 1000),
            usage.get("prompt_tokens", 0),
            usage.get("completion_tokens", 0),
            payload["model"],
        )
        return data

    raise RuntimeError("No completion provider configured")


def _first_content(response: dict) -> str:
    try:
        return response["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError):
        raise ValueError("Malformed completion response: no choices")


def _with_system(prompt: str, system: str) -> list[dict]:
    messages = [{"role": "system", "content": system}] if system else []
    messages.append({"role": "user", "content": prompt})
    return messages


async def chat_text(
    messages: list[dict],
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    model: Optional[str] = None,
) -> str:
    """Assembled message list in, reply text out."""
    response = await chat(messages, model=model, temperature=temperature, max_tokens=max_tokens)
    return _first_content(response)


async def chat_simple(
    prompt: str,
    system: str = "",
    model: Optional[str] = None,
    temperature: float = 0.7,
    max_tokens: int = 2048,
) -> str:
    return await chat_text(
        _with_system(prompt, system), temperature=temperature, max_tokens=max_tokens, model=model,
    )


async def chat_json(
    prompt: str,
    system: str = "",
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: int = 1500,
) -> Any:
    """
    JSON-mode completion, parsed. Runs at MEMORY_LLM_TEMPERATURE unless told otherwise.
    Raises ValueError when the reply is not JSON.
    """
    if temperature is None:
        temperature = get_settings().memory_llm_temperature

    response = await chat(
        _with_system(prompt, system),
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        response_format={"type": "json_object"},
    )
    return parse_json_response(_first_content(response))


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_response(text: str) -> Any:
    """Parse a model reply as JSON, tolerating markdown code fences."""
    cleaned = (text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1)
    if not cleaned:
        raise ValueError("Empty JSON response")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f"Unparseable JSON response: {e}") from e


# ── Token estimation ─────────────────────────────────────────────────

def estimate_tokens(text: str) -> int:
    """~4 characters per token for English. Good enough for budgeting, not billing."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def estimate_messages_tokens(messages: list[dict]) -> int:
    # 4 tokens of framing per message, 2 to prime the reply
    return sum(4 + estimate_tokens(m.get("content") or "") for m in messages) + 2
