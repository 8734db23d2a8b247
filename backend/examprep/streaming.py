"""
Server-Sent-Events framing for the analysis stream.

Server side: `sse_frame` / `SSE_DONE` build `data: <json>` frames.

Client side: `SSEDecoder` turns arbitrarily split network chunks back into
decoded events, and `StreamingStageController` maps those events onto the
coarse PipelineStage state machine plus an accumulated report text.

Three event shapes are understood:
- `{"type": "pipeline_event", "stage", "status", "details"}` progress markers
- provider token objects carrying `choices[0].delta.content`
- legacy `{"stage": "analysis", "content"}` / `{"stage": "web_search_complete"}`
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

from pydantic import BaseModel

from .schemas import PipelineStage

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"


class _Done:
    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()
_INVALID = object()


def sse_frame(payload: Any) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return f"data: {json.dumps(payload, ensure_ascii=True)}\n\n"


def _try_json(data: str) -> Any:
    try:
        return json.loads(data)
    except ValueError:
        return _INVALID


def delta_content(event: Any) -> Optional[str]:
    """Return `choices[0].delta.content` of a provider token object, if any."""
    if not isinstance(event, dict):
        return None
    try:
        content = event["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) and content else None


class EmptyAnalysisError(Exception):
    """The stream finished without producing any report text."""


class StreamCancelledError(Exception):
    """The consumer abandoned the stream before it finished."""


# ============================================================================
# DECODER
# ============================================================================

class SSEDecoder:
    """
    Incremental `data:` line decoder.

    Only newline-terminated lines are processed, so the decoded event sequence
    does not depend on where the network split the bytes. A `data:` payload
    that is not valid JSON is held back and joined with the next data line;
    the held fragment is dropped once it exceeds `max_pending_chars`.
    """

    max_pending_chars = 64 * 1024

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending = ""

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += self._decoder.decode(chunk)
        events: List[Any] = []
        while True:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            events.extend(self._process_line(line))
        return events

    def flush(self) -> List[Any]:
        """Process whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        events = self._process_line(line) if line else []
        if self._pending:
            logger.warning("Dropping incomplete frame at end of stream: %r", self._pending[:80])
            self._pending = ""
        return events

    def _process_line(self, line: str) -> List[Any]:
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip() or line.startswith(":") or not line.startswith("data:"):
            return []
        data = line[5:].strip()
        if data == "[DONE]":
            return [DONE]
        return self._parse(data)

    def _parse(self, data: str) -> List[Any]:
        if self._pending:
            joined = self._pending + data
            parsed = _try_json(joined)
            if parsed is not _INVALID:
                self._pending = ""
                return [parsed]
            parsed = _try_json(data)
            if parsed is not _INVALID:
                logger.warning("Dropping unparseable frame fragment: %r", self._pending[:80])
                self._pending = ""
                return [parsed]
            self._pending = joined
        else:
            parsed = _try_json(data)
            if parsed is not _INVALID:
                return [parsed]
            self._pending = data
        if len(self._pending) > self.max_pending_chars:
            logger.warning("Dropping oversized unparseable frame (%s chars)", len(self._pending))
            self._pending = ""
        return []


# ============================================================================
# STAGE CONTROLLER
# ============================================================================

# Section headings of the rendered report and the status they announce
_SECTION_STATUS = (
    (("METHODOLOGY",), "Stage 3: Building methodology & hit ratios..."),
    (("YEAR-WISE HIT RATIO", "Hit Ratio"), "Stage 4: Generating high probability questions..."),
    (("HIGH PROBABILITY QUESTIONS",), "Stage 4: Generating high probability questions..."),
    (("SUGGESTED APPROACH", "Phase 1:"), "Stage 5: Creating study approach..."),
)


class StreamingStageController:
    """
    Consume an analysis event stream and expose stage, status and text.

    Callbacks fire only on change. After `cancel()` no callback fires and the
    underlying chunk iterator is closed when `consume` returns.
    """

    def __init__(
        self,
        *,
        on_stage: Optional[Callable[[PipelineStage], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.on_stage = on_stage
        self.on_status = on_status
        self.on_delta = on_delta
        self.stage = PipelineStage.VISION
        self.status = ""
        self.result: Optional[dict] = None
        self.error: Optional[str] = None
        self.finished = False
        self._parts: List[str] = []
        self._cancelled = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    async def consume(self, chunks: AsyncIterator[bytes]) -> str:
        """
        Drive the controller from a byte-chunk iterator until `[DONE]` or EOF.

        Returns:
            str: The accumulated report text

        Raises:
            EmptyAnalysisError: The stream ended without any report text
            StreamCancelledError: `cancel()` was called while consuming
        """
        decoder = SSEDecoder()
        try:
            async for chunk in chunks:
                if self._cancelled:
                    break
                for event in decoder.feed(chunk):
                    if event is DONE:
                        return self._finish()
                    self.handle(event)
                    if self._cancelled:
                        break
            if self._cancelled:
                raise StreamCancelledError("analysis stream abandoned by consumer")
            for event in decoder.flush():
                if event is DONE:
                    break
                self.handle(event)
            return self._finish()
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    def handle(self, event: Any) -> None:
        """Apply one decoded event."""
        if self._cancelled or not isinstance(event, dict):
            return

        if event.get("type") == "pipeline_event":
            self._on_pipeline_event(event)
            return
        if event.get("type") == "result":
            self.result = event.get("result")
            return

        content = delta_content(event)
        if content:
            self._advance(PipelineStage.PRESENTATION)
            self._append(content)
            return

        stage = event.get("stage")
        if stage == "web_search_complete":
            self._advance(PipelineStage.FUSION)
            self._set_status("Stage 2: Searching previous question papers...")
        elif stage == "analysis" and event.get("content"):
            self._advance(PipelineStage.BRAIN)
            self._append(str(event["content"]))

    def _on_pipeline_event(self, event: dict) -> None:
        stage = str(event.get("stage") or "")
        status = str(event.get("status") or "")
        if stage == "vision" and status == "complete":
            self._advance(PipelineStage.SEARCH)
        elif stage == "search" and status == "complete":
            self._advance(PipelineStage.FUSION)
        elif stage in ("fusion", "brain", "presentation"):
            self._advance(PipelineStage(stage))
        if status == "error":
            self.error = event.get("details") or f"{stage} stage failed"
        self._set_status(event.get("details") or f"Entering {stage} phase...")

    def _advance(self, stage: PipelineStage) -> None:
        if stage.rank <= self.stage.rank:
            return
        self.stage = stage
        if self.on_stage is not None:
            self.on_stage(stage)

    def _set_status(self, status: str) -> None:
        if status == self.status:
            return
        self.status = status
        if self.on_status is not None:
            self.on_status(status)

    def _append(self, content: str) -> None:
        self._parts.append(content)
        if self.on_delta is not None:
            self.on_delta(content)
        text = self.text
        for markers, status in reversed(_SECTION_STATUS):
            if any(m in text for m in markers):
                self._set_status(status)
                break

    def _finish(self) -> str:
        self.finished = True
        text = self.text
        if not text.strip():
            raise EmptyAnalysisError(self.error or "Analysis produced no results. Please try again.")
        self._advance(PipelineStage.PRESENTATION)
        return text
