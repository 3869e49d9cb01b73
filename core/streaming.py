"""Pull-based tagged chunk streams for incremental generation output."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional

from core.code_extractor import FENCE, looks_like_code

CHUNK_REASONING = "reasoning"
CHUNK_CODE = "code"
CHUNK_COMPLETE = "complete"
CHUNK_ERROR = "error"
CHUNK_KINDS = (CHUNK_REASONING, CHUNK_CODE, CHUNK_COMPLETE, CHUNK_ERROR)

STREAM_OPEN = "open"
STREAM_CLOSING = "closing"
STREAM_CLOSED = "closed"


@dataclass(frozen=True)
class TaggedChunk:
    kind: str
    content: str = ""


@dataclass
class StreamOutcome:
    """Channels assembled from a fully consumed stream."""

    code: str = ""
    reasoning: str = ""
    completed: bool = False
    error: Optional[str] = None
    chunks: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


class TaggedStream:
    """Iterator over ``TaggedChunk`` values with a single owned lifecycle state.

    The state only moves forward: open -> closing -> closed. Once closed no
    further chunks are emitted. ``abort()`` may be called at any time and
    never raises.
    """

    def __init__(
        self,
        producer: Iterable[TaggedChunk],
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self._producer = iter(producer)
        self._on_close = on_close
        self.state = STREAM_OPEN
        self.metadata: dict[str, Any] = {}

    def __iter__(self) -> "TaggedStream":
        return self

    def __next__(self) -> TaggedChunk:
        if self.state != STREAM_OPEN:
            raise StopIteration
        try:
            chunk = next(self._producer)
        except StopIteration:
            self._shutdown()
            raise
        except Exception as exc:
            self._shutdown()
            return TaggedChunk(CHUNK_ERROR, str(exc) or exc.__class__.__name__)
        if chunk.kind == CHUNK_ERROR:
            self._shutdown()
        return chunk

    def __enter__(self) -> "TaggedStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.abort()

    @property
    def closed(self) -> bool:
        return self.state == STREAM_CLOSED

    def abort(self) -> None:
        """Stop emission and release the upstream connection."""

        if self.state != STREAM_OPEN:
            return
        self._shutdown()

    def _shutdown(self) -> None:
        self.state = STREAM_CLOSING
        close = getattr(self._producer, "close", None)
        try:
            if callable(close):
                close()
            if self._on_close is not None:
                self._on_close()
        except Exception as exc:
            print(f"[Stream] upstream close failed: {exc}")
        finally:
            self.state = STREAM_CLOSED

    def collect(self, listener: Optional[Callable[[TaggedChunk], None]] = None) -> StreamOutcome:
        """Drain the stream, forwarding each chunk to ``listener``."""

        outcome = StreamOutcome()
        code_parts: list[str] = []
        reasoning_parts: list[str] = []
        for chunk in self:
            outcome.chunks += 1
            if listener is not None:
                listener(chunk)
            if chunk.kind == CHUNK_CODE:
                code_parts.append(chunk.content)
            elif chunk.kind == CHUNK_REASONING:
                reasoning_parts.append(chunk.content)
            elif chunk.kind == CHUNK_COMPLETE:
                outcome.completed = True
            elif chunk.kind == CHUNK_ERROR:
                outcome.error = chunk.content or "stream error"
        outcome.code = "".join(code_parts)
        outcome.reasoning = "".join(reasoning_parts)
        outcome.metadata = dict(self.metadata)
        return outcome


class CodeChannelFilter:
    """Line-buffered filter routing streamed text to code or reasoning channels.

    Lines inside a fenced block are code; fence lines themselves are dropped;
    everything else is classified with ``looks_like_code``.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_fence = False

    def _classify(self, line: str) -> Optional[TaggedChunk]:
        body = line.rstrip("\n")
        if body.strip().startswith(FENCE):
            self._in_fence = not self._in_fence
            return None
        if self._in_fence or looks_like_code(body):
            return TaggedChunk(CHUNK_CODE, line)
        return TaggedChunk(CHUNK_REASONING, line)

    def feed(self, text: str) -> list[TaggedChunk]:
        self._buffer += text
        chunks: list[TaggedChunk] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            chunk = self._classify(line + "\n")
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def flush(self) -> list[TaggedChunk]:
        if not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        chunk = self._classify(line)
        return [chunk] if chunk is not None else []


def iter_completion_deltas(response: Iterable[Any], usage: Optional[dict[str, int]] = None) -> Iterator[str]:
    """Yield text deltas from an OpenAI-style streamed chat completion.

    Chunks without the expected shape are skipped. When the final chunk
    carries usage, it is copied into ``usage``.
    """

    for event in response:
        event_usage = getattr(event, "usage", None)
        if usage is not None and event_usage is not None:
            usage["prompt_tokens"] = int(getattr(event_usage, "prompt_tokens", 0) or 0)
            usage["completion_tokens"] = int(getattr(event_usage, "completion_tokens", 0) or 0)
        try:
            delta = event.choices[0].delta.content
        except (AttributeError, IndexError, TypeError):
            continue
        if isinstance(delta, str) and delta:
            yield delta
