"""
LLM client for the tutor chat and practice-question generation.

Calling contract (never raises; callers map error codes to HTTP responses):
- `chat_completion(messages) -> (text, err_code)`
- `generate_json(prompt, system=...) -> (obj, err_code)` where obj is a parsed
  JSON array or object.

Env:
- LLM_PROVIDER: "deepseek" (default) or "openai"; both use the OpenAI-compatible
  chat API through `langchain_openai`.
- DEEPSEEK_API_KEY / OPENAI_API_KEY (required for the selected provider)
- LLM_BASE_URL: override the API base URL (default: https://api.deepseek.com)
- LLM_MODEL (default: deepseek-chat), LLM_TEMPERATURE, LLM_MAX_OUTPUT_TOKENS
- LLM_TIMEOUT_SECONDS: HTTP timeout (default: 60, range: 5-300)
- LLM_MOCK=1: return a deterministic stub (no external calls)
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, replace
from typing import Any, List, Optional, Sequence, Tuple

from iprof.llm.schemas import ChatTurn

DEEPSEEK_BASE_URL = "https://api.deepseek.com"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _provider() -> str:
    return (os.getenv("LLM_PROVIDER") or "").strip().lower() or "deepseek"


def _api_key(provider: str) -> str:
    if provider == "openai":
        return (os.getenv("OPENAI_API_KEY") or "").strip()
    return (os.getenv("DEEPSEEK_API_KEY") or "").strip()


def llm_configured() -> bool:
    return _env_bool("LLM_MOCK", False) or bool(_api_key(_provider()))


def _strip_fences(text: str) -> str:
    t = text.strip()
    if t.startswith("```"):
        t = re.sub(r"^```[a-zA-Z]*\s*", "", t)
        t = re.sub(r"\s*```$", "", t)
        t = t.strip()
    return t


def _extract_json_value(text: str) -> Optional[Any]:
    """
    Best-effort extraction for when a model wraps JSON in code fences or adds extra text.

    Returns the first balanced JSON array or object found, or None.
    """
    if not text:
        return None
    t = _strip_fences(text)

    if (t.startswith("[") and t.endswith("]")) or (t.startswith("{") and t.endswith("}")):
        try:
            return json.loads(t)
        except ValueError:
            pass

    # Fallback: scan for the first balanced JSON substring and parse it.
    in_str = False
    escape = False
    stack: List[str] = []
    start = None

    for i, ch in enumerate(t):
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_str = not in_str
            continue
        if in_str:
            continue

        if ch in "[{":
            if not stack:
                start = i
            stack.append("]" if ch == "[" else "}")
        elif ch in "]}":
            if stack and stack[-1] == ch:
                stack.pop()
                if not stack and start is not None:
                    try:
                        return json.loads(t[start : i + 1])
                    except ValueError:
                        start = None
                        continue
            else:
                stack = []
                start = None
    return None


def _mock_questions(count: int) -> List[dict]:
    return [
        {
            "question_type": "true_false",
            "difficulty": "easy",
            "question": f"LLM_MOCK question {i + 1}: mock mode makes no external call.",
            "answer": "true",
            "correct_option": "true",
            "explanation": "LLM_MOCK is enabled.",
        }
        for i in range(max(1, count))
    ]


@dataclass(frozen=True)
class LLMConfig:
    model: str
    temperature: float
    max_output_tokens: int
    timeout: int = 60
    base_url: str = DEEPSEEK_BASE_URL


def _load_config() -> LLMConfig:
    model = (os.getenv("LLM_MODEL") or "").strip() or "deepseek-chat"
    try:
        temperature = float((os.getenv("LLM_TEMPERATURE") or "").strip() or "0.7")
    except ValueError:
        temperature = 0.7
    try:
        max_output_tokens = int((os.getenv("LLM_MAX_OUTPUT_TOKENS") or "").strip() or "1500")
    except ValueError:
        max_output_tokens = 1500
    try:
        timeout = int((os.getenv("LLM_TIMEOUT_SECONDS") or "").strip() or "60")
    except ValueError:
        timeout = 60

    base_url = (os.getenv("LLM_BASE_URL") or "").strip().rstrip("/")
    if not base_url and _provider() == "deepseek":
        base_url = DEEPSEEK_BASE_URL

    # Keep bounds sane
    temperature = max(0.0, min(temperature, 2.0))
    max_output_tokens = max(64, min(max_output_tokens, 8192))
    timeout = max(5, min(timeout, 300))

    return LLMConfig(
        model=model,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout=timeout,
        base_url=base_url,
    )


def _classify_error(e: Exception, *, model: str) -> str:
    msg = str(e or "").replace("\n", " ").strip()
    up = msg.upper()

    if isinstance(e, TimeoutError):
        return "timeout"
    if "408" in msg:
        return "timeout"
    if "504" in msg:
        return "gateway_timeout"
    if "TIMEOUT" in up or "TIMED OUT" in up:
        return "timeout"

    if "403" in msg or "PERMISSION" in up:
        return "permission_denied"
    if "401" in msg or "UNAUTHENTICATED" in up:
        return "unauthenticated"
    if "402" in msg or "INSUFFICIENT BALANCE" in up:
        return "insufficient_balance"
    if "404" in msg or "NOT FOUND" in up:
        return f"model_not_found:{model}"
    if "429" in msg or ("RATE" in up and "LIMIT" in up):
        return "rate_limited"
    if "MAX_TOKENS" in up or "CONTEXT LENGTH" in up:
        return "max_tokens_truncated"
    if "API_KEY" in up and ("INVALID" in up or "MISSING" in up):
        return "unauthenticated"

    return f"llm_error:{type(e).__name__}"


def _get_llm_instance(provider: str, cfg: LLMConfig) -> Tuple[Any, Optional[str]]:
    """
    Return the LangChain chat model for the provider.

    Returns: (llm_instance, error_code). Exactly one is None.
    """
    if provider not in ("deepseek", "openai"):
        return None, "provider_not_configured"

    api_key = _api_key(provider)
    if not api_key:
        return None, "missing_api_key"

    try:
        from langchain_openai import ChatOpenAI  # type: ignore[import-not-found]
    except ImportError:
        return None, "sdk_import_failed:langchain_openai"

    kwargs: dict = {
        "model": cfg.model,
        "temperature": cfg.temperature,
        "max_tokens": cfg.max_output_tokens,
        "api_key": api_key,
        "timeout": cfg.timeout,
        "max_retries": 0,
    }
    if cfg.base_url:
        kwargs["base_url"] = cfg.base_url
    return ChatOpenAI(**kwargs), None


def _to_langchain_messages(system: Optional[str], turns: Sequence[ChatTurn]) -> list:
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

    out: list = []
    if system:
        out.append(SystemMessage(content=system))
    for turn in turns:
        if turn.role == "assistant":
            out.append(AIMessage(content=turn.content))
        else:
            out.append(HumanMessage(content=turn.content))
    return out


def chat_completion(
    turns: Sequence[ChatTurn],
    *,
    system: Optional[str] = None,
    max_output_tokens: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Plain-text chat completion.

    Returns: (text, err_code). Exactly one is non-None.
    """
    if _env_bool("LLM_MOCK", False):
        last = turns[-1].content if turns else ""
        return f"LLM_MOCK enabled: no external call was made. You said: {last}", None

    p = _provider()
    cfg = _load_config()
    if max_output_tokens:
        cfg = replace(cfg, max_output_tokens=max(64, min(int(max_output_tokens), 8192)))

    llm, err = _get_llm_instance(p, cfg)
    if err:
        return None, err

    try:
        msg = llm.invoke(_to_langchain_messages(system, turns))
    except Exception as e:
        return None, _classify_error(e, model=cfg.model)

    text = str(getattr(msg, "content", "") or "").strip()
    return (text, None) if text else (None, "empty_response")


def generate_json(
    prompt: str,
    *,
    system: Optional[str] = None,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    mock_count: int = 3,
) -> Tuple[Optional[Any], Optional[str]]:
    """
    JSON-mode call: the model is asked for JSON and the first array/object is parsed.

    Returns: (obj, err_code). Exactly one is non-None. Unparseable output is
    `json_parse_failed`; there is no repair or retry.
    """
    if _env_bool("LLM_MOCK", False):
        return _mock_questions(mock_count), None

    p = _provider()
    cfg = _load_config()
    if temperature is not None:
        cfg = replace(cfg, temperature=max(0.0, min(float(temperature), 2.0)))
    if max_output_tokens:
        cfg = replace(cfg, max_output_tokens=max(64, min(int(max_output_tokens), 8192)))

    llm, err = _get_llm_instance(p, cfg)
    if err:
        return None, err

    try:
        msg = llm.invoke(_to_langchain_messages(system, [ChatTurn(role="user", content=prompt)]))
    except Exception as e:
        return None, _classify_error(e, model=cfg.model)

    obj = _extract_json_value(str(getattr(msg, "content", None) or ""))
    return (obj, None) if obj is not None else (None, "json_parse_failed")
