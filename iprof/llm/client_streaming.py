"""
Streaming LLM client for the student tutor chat.

Yields the reply progressively so the browser can render it as it arrives.
Question generation keeps using the blocking `generate_json` in client.py.

Usage:
    async for chunk in stream_chat(turns, system=prompt):
        if chunk.error:
            ...
        print(chunk.content, end="", flush=True)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, AsyncGenerator, Dict, Optional, Sequence

from iprof.llm.client import (
    _classify_error,
    _env_bool,
    _get_llm_instance,
    _load_config,
    _provider,
    _to_langchain_messages,
)
from iprof.llm.schemas import ChatTurn


@dataclass
class LLMStreamChunk:
    """Single chunk of streamed content."""

    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        return self.metadata.get("error")


async def stream_chat(
    turns: Sequence[ChatTurn],
    *,
    system: Optional[str] = None,
    temperature: Optional[float] = None,
    batch_size: int = 5,
    batch_timeout_ms: int = 100,
) -> AsyncGenerator[LLMStreamChunk, None]:
    """
    Stream a plain-text chat reply.

    Tokens are batched (`batch_size` tokens or `batch_timeout_ms`, whichever
    comes first). Failures never raise: they end the stream with a chunk whose
    metadata carries the error code.
    """
    if _env_bool("LLM_MOCK", False):
        last = turns[-1].content if turns else ""
        yield LLMStreamChunk(content=f"LLM_MOCK enabled: no external call was made. You said: {last}")
        return

    cfg = _load_config()
    if temperature is not None:
        cfg = replace(cfg, temperature=max(0.0, min(float(temperature), 2.0)))

    llm, err = _get_llm_instance(_provider(), cfg)
    if err:
        yield LLMStreamChunk(content="", metadata={"error": err})
        return

    buffer = []
    try:
        last_flush_time = time.time()
        batch_timeout_sec = batch_timeout_ms / 1000.0

        async for chunk in llm.astream(_to_langchain_messages(system, turns)):  # type: ignore[attr-defined]
            content = getattr(chunk, "content", "")
            if not isinstance(content, str) or not content:
                continue

            buffer.append(content)

            elapsed = time.time() - last_flush_time
            if len(buffer) >= batch_size or elapsed >= batch_timeout_sec:
                yield LLMStreamChunk(content="".join(buffer))
                buffer.clear()
                last_flush_time = time.time()

        if buffer:
            yield LLMStreamChunk(content="".join(buffer))

    except asyncio.CancelledError:
        # Client went away mid-stream.
        raise

    except Exception as e:
        if buffer:
            yield LLMStreamChunk(content="".join(buffer))
        yield LLMStreamChunk(
            content="",
            metadata={"error": _classify_error(e, model=cfg.model), "error_type": type(e).__name__},
        )
