#!/usr/bin/env python3
"""Async Azure OpenAI helper providing `chat_completion` with optional retry, a per-call timeout,
content filter handling, normalized content extraction and optional post-processing. Raises
`UpstreamError` when no usable completion is obtained.

The event summarizer always calls with `retries=0`; the retry loop only runs for callers
that opt in explicitly."""
from __future__ import annotations
from typing import List, Dict, Any, Optional, Callable
from asyncio import sleep, wait_for, TimeoutError

from openai import AsyncAzureOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError, UpstreamError

logger = get_logger("llm_client")

TRUNCATED_PLACEHOLDER = "[Truncated output: no content returned]"
RETRY_DELAY_BASE = 2.0

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the Azure OpenAI async client if configuration is present."""
    global _client
    if _client is not None:
        return _client
    if not (config.OPENAI_API_KEY and config.AZURE_ENDPOINT and config.OPENAI_API_VERSION and config.DEPLOYMENT_NAME):
        logger.debug("Missing Azure OpenAI config; client will not initialize")
        return None
    endpoint = (
        f"https://{config.AZURE_ENDPOINT}" if not str(config.AZURE_ENDPOINT).startswith("http") else config.AZURE_ENDPOINT
    )
    _client = AsyncAzureOpenAI(
        api_key=config.OPENAI_API_KEY,
        api_version=config.OPENAI_API_VERSION,
        azure_endpoint=endpoint,
    )
    return _client


def _content_filter_error(error: Exception) -> Optional[ContentFilterError]:
    """Map an Azure content-policy rejection onto ContentFilterError, if that is what `error` is."""
    body = getattr(error, "body", {}) or {}
    error_obj = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_obj, dict):
        return None
    code = error_obj.get("code")
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if code == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        return ContentFilterError(message=error_obj.get("message", "Content filtered"), details=error_obj)
    return None


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", {}) or {}
    if isinstance(message, dict) and message.get("refusal"):
        return ""
    content = getattr(message, "content", None) if not isinstance(message, dict) else message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                ptype = part.get("type")
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    texts.append(txt.strip())
                elif ptype not in ("text", "output_text", None):
                    logger.debug("Ignoring non-text part type=%s keys=%s", ptype, list(part.keys()))
        return "\n".join(texts).strip()
    return ""


def _response_text(resp: Any, purpose: str) -> str:
    """Join the text of every choice; raises UpstreamError when nothing usable came back."""
    choices = getattr(resp, "choices", None) or []
    if not choices:
        logger.error("No choices in %s response: %s", purpose, resp)
        raise UpstreamError(f"No choices in {purpose} response")

    fragments: List[str] = []
    refusal_detected = False
    for ch in choices:
        msg_obj = getattr(ch, "message", {}) or {}
        refusal_flag = msg_obj.get("refusal") if isinstance(msg_obj, dict) else getattr(msg_obj, "refusal", None)
        if refusal_flag:
            refusal_detected = True
            logger.warning("Refusal detected in %s response: %s", purpose, refusal_flag)
        txt = _extract_text(ch)
        if txt:
            fragments.append(txt)
    if refusal_detected and not fragments:
        raise UpstreamError(f"Model refused the {purpose} request")

    raw = "\n".join(fragments).strip()
    if raw:
        return raw

    finish_reasons = {getattr(c, "finish_reason", None) for c in choices if getattr(c, "finish_reason", None)}
    if "length" in finish_reasons:
        logger.warning(
            "Truncated output with empty content (%s); returning placeholder. choices=%s",
            purpose,
            [
                {
                    "finish_reason": getattr(c, "finish_reason", None),
                    "message_content_repr": repr(getattr(getattr(c, "message", None), "content", None))[:300],
                }
                for c in choices
            ],
        )
        return TRUNCATED_PLACEHOLDER
    logger.error("Empty content in %s response despite choices (finish_reasons=%s)", purpose, finish_reasons)
    raise UpstreamError(f"Empty content in {purpose} response")


async def chat_completion(
    messages: List[Dict[str, str]] = None,
    *,
    purpose: str = "generic",
    retries: int = 0,
    temperature: Optional[float] = None,
    timeout: Optional[float] = None,
    postprocess: Optional[Callable[[str], str]] = None,
    client_override: Optional[Any] = None,
) -> str:
    """Execute an Azure OpenAI chat completion and return its text.

    Each attempt is bounded by `timeout` (default LLM_TIMEOUT). Raises
    `ContentFilterError` on policy violations and `UpstreamError` when the
    client is unavailable or every attempt fails.
    """
    if not messages:
        raise UpstreamError("chat_completion called without messages")

    client = client_override or _get_client()
    if client is None:
        logger.warning("Azure OpenAI client unavailable; cannot run %s", purpose)
        raise UpstreamError("Azure OpenAI client is not configured")

    limit = timeout if timeout is not None else config.LLM_TIMEOUT
    params: Dict[str, Any] = {
        "model": config.DEPLOYMENT_NAME,
        "messages": messages,
    }
    if temperature is not None:
        params["temperature"] = temperature

    attempt = 0
    while True:
        try:
            resp = await wait_for(client.chat.completions.create(**params), timeout=limit)
            raw = _response_text(resp, purpose)
            return postprocess(raw) if postprocess else raw
        except (ContentFilterError, UpstreamError):
            raise
        except TimeoutError as e:
            failure: Exception = UpstreamError(f"{purpose} request timed out after {limit}s")
            cause = e
        except OpenAIError as e:
            filtered = _content_filter_error(e)
            if filtered:
                raise filtered from e
            failure = UpstreamError(f"{purpose} request failed: {e}")
            cause = e
        except Exception as e:
            filtered = _content_filter_error(e)
            if filtered:
                raise filtered from e
            failure = UpstreamError(f"{purpose} unexpected failure: {e}")
            cause = e

        attempt += 1
        if attempt > retries:
            logger.error("%s (after %d attempt(s))", failure, attempt)
            raise failure from cause
        delay = RETRY_DELAY_BASE * (2 ** (attempt - 1))
        logger.warning("%s. Backoff %ss (attempt %d/%d)", failure, delay, attempt, retries)
        await sleep(delay)


__all__ = ["chat_completion", "TRUNCATED_PLACEHOLDER"]
