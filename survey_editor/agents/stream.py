# survey_editor/agents/stream.py
from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from survey_editor.app.errors import CompletionTransportError
from survey_editor.app.logging import get_logger

logger = get_logger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


def delta_content(event: Dict[str, Any]) -> Optional[str]:
    # choices[0].delta.content; anything else carries no text.
    try:
        content = event["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) and content else None


class SSEDecoder:
    """
    Incremental decoder for a chat-completion event stream.

    Bytes go in through `feed`; complete `data:` lines come out as text
    deltas. A trailing partial line (or a partial UTF-8 sequence) is kept
    until a later chunk completes it. After the `[DONE]` line the decoder is
    finished and ignores further input.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[str]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._drain(lines)

    def close(self) -> List[str]:
        # End of transport: whatever is left is the last line.
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._drain([tail]) if tail else []

    def _drain(self, lines: List[str]) -> List[str]:
        deltas: List[str] = []
        for line in lines:
            delta = self._handle_line(line.rstrip("\r"))
            if self.done:
                break
            if delta:
                deltas.append(delta)
        return deltas

    def _handle_line(self, line: str) -> Optional[str]:
        if not line.startswith(DATA_PREFIX):
            # Blank separators, comments and event: lines.
            return None
        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return None
        if payload == DONE_MARKER:
            self.done = True
            return None

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self.skipped += 1
            logger.debug("Skipping malformed stream frame", extra={"frame": payload[:200]})
            return None
        if not isinstance(event, dict):
            self.skipped += 1
            return None

        upstream_error = event.get("error")
        if upstream_error:
            message = upstream_error.get("message") if isinstance(upstream_error, dict) else str(upstream_error)
            raise CompletionTransportError(str(message or "streaming request failed"))

        return delta_content(event)


async def iter_deltas(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield text deltas, in arrival order, from a chunked byte stream."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            return

    for delta in decoder.close():
        yield delta
    if not decoder.done:
        logger.warning("Stream ended without a [DONE] marker")
