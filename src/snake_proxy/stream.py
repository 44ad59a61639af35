# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_veritas

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

from fastapi.responses import StreamingResponse
from loguru import logger

SSE_MEDIA_TYPE = "text/event-stream"
DONE_FRAME = "data: [DONE]\n\n"
CHUNK_OBJECT = "chat.completion.chunk"
DEFAULT_PACING_SECONDS = 0.03

_MISSING = object()


def sse_frame(payload: Any, raw: bool = False) -> str:
    """
    Wire-frames one payload as compact JSON. With `raw`, a text payload is
    sent verbatim instead.
    """
    if not raw:
        payload = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {payload}\n\n"


def split_words(content: str) -> List[str]:
    """
    Splits content on whitespace. Every word except the last keeps a single
    trailing space so the deltas concatenate back into readable text.
    """
    words = content.split()
    return [word + " " for word in words[:-1]] + words[-1:]


def _envelope(document: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": document.get("id", "unknown"),
        "object": CHUNK_OBJECT,
        "created": document.get("created", 0),
        "model": document.get("model", "unknown"),
    }


def _parse(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return _MISSING


def iter_payloads(body: bytes) -> Iterator[Tuple[str, bool]]:
    """
    Yields (frame, paced) for every frame synthesized from a buffered response.
    `paced` marks word deltas, which are followed by the pacing delay.
    The [DONE] sentinel is not included.
    """
    document = _parse(body)

    if document is _MISSING:
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("SSE: Response is neither JSON nor UTF-8 text, sending only [DONE]")
            return
        logger.warning(f"SSE: Failed to parse response as JSON, sending raw text: {text[:200]!r}")
        yield sse_frame(text, raw=True), False
        return

    choices = document.get("choices") if isinstance(document, dict) else None
    if not isinstance(choices, list):
        logger.warning("SSE: No choices field found in response, sending it as one chunk")
        yield sse_frame(document), False
        return

    if not choices:
        logger.warning("SSE: Choices array is empty")
        return

    first_choice = choices[0]
    message = first_choice.get("message") if isinstance(first_choice, dict) else None
    content = message.get("content") if isinstance(message, dict) else None

    if not isinstance(content, str):
        logger.warning("SSE: No content found in message field, sending the choice as-is")
        yield sse_frame({**_envelope(document), "choices": [first_choice]}), False
        return

    words = split_words(content)
    logger.info(f"SSE: Split {len(content)} chars of content into {len(words)} words")

    for word in words:
        chunk = _envelope(document)
        chunk["choices"] = [{"index": 0, "delta": {"content": word}, "finish_reason": None}]
        yield sse_frame(chunk), True

    final_chunk = _envelope(document)
    # The default applies only when the field is absent; an explicit null is kept
    finish_reason = first_choice.get("finish_reason", "stop")
    final_chunk["choices"] = [{"index": 0, "delta": {}, "finish_reason": finish_reason}]
    if "usage" in document:
        final_chunk["usage"] = document["usage"]
    yield sse_frame(final_chunk), False


async def iter_event_stream(body: bytes, pacing: float = DEFAULT_PACING_SECONDS) -> AsyncIterator[str]:
    """
    Produces SSE frames for a buffered response, ending with exactly one [DONE].

    Drained by StreamingResponse; when the client goes away Starlette stops
    pulling and closes this generator, which ends production.
    """
    for frame, paced in iter_payloads(body):
        yield frame
        if paced and pacing > 0:
            await asyncio.sleep(pacing)
    logger.debug("SSE: Sending [DONE] marker")
    yield DONE_FRAME


def synthesize_event_stream(
    status_code: int,
    body: bytes,
    pacing: Optional[float] = None,
) -> StreamingResponse:
    """
    Presents a complete upstream response as a Server-Sent-Events stream.

    Args:
        status_code: The upstream status, preserved on the stream response.
        body: The fully buffered upstream body.
        pacing: Seconds between word frames. Defaults to DEFAULT_PACING_SECONDS.

    Returns:
        StreamingResponse: text/event-stream response with caching disabled.
    """
    return StreamingResponse(
        iter_event_stream(body, DEFAULT_PACING_SECONDS if pacing is None else pacing),
        status_code=status_code,
        media_type=SSE_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
