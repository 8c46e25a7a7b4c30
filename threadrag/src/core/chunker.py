"""
ThreadRAG - TextChunker
========================
Deterministic recursive character splitter with overlapping windows.

Strategy:
    1. Split on the highest-priority separator present in the text
       (``"\\n\\n"`` → ``"\\n"`` → ``" "`` → single characters).
    2. Any piece still larger than ``chunk_size`` is split again with
       the next separator.
    3. The resulting pieces are greedily packed into windows of at most
       ``chunk_size`` characters; each new window starts with up to
       ``chunk_overlap`` characters of trailing context from the last.

Separators stay attached to the piece they end, so the chunks (with the
repeated overlap removed) concatenate back to the input exactly.  Chunks
are computed as ``(start, end)`` spans over the original text; ``split``
simply slices them out.

Usage:
    from threadrag.src.core.chunker import TextChunker
    chunks = TextChunker(chunk_size=1000, chunk_overlap=200).split(text)
"""

from __future__ import annotations

from collections import deque

from threadrag.config.settings import settings
from threadrag.src.core.errors import RequestValidationError

# ── Type Aliases ──────────────────────────────────────────────────────
Span = tuple[int, int]

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ", "")


class TextChunker:
    """
    Split text into overlapping, size-bounded chunks.

    Parameters
    ----------
    chunk_size
        Maximum characters per chunk.  Defaults to ``settings.CHUNK_SIZE``.
    chunk_overlap
        Maximum characters repeated from the previous chunk.  Must be
        strictly smaller than ``chunk_size``.
    separators
        Split boundaries in priority order; the empty string means
        "split between characters" and must come last.

    Raises
    ------
    RequestValidationError
        If the sizes are non-positive or the overlap is not below the size.
    """

    __slots__ = ("chunk_size", "chunk_overlap", "_separators")

    def __init__(self, chunk_size: int | None = None, chunk_overlap: int | None = None, separators: tuple[str, ...] = DEFAULT_SEPARATORS) -> None:
        self.chunk_size: int = settings.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap: int = settings.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        if self.chunk_size < 1:
            raise RequestValidationError("Invalid chunking options", f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise RequestValidationError("Invalid chunking options", f"chunk_overlap must not be negative, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise RequestValidationError("Invalid chunking options", f"chunk_overlap ({self.chunk_overlap}) must be smaller than chunk_size ({self.chunk_size})")
        if not separators or separators[-1] != "":
            separators = (*separators, "")
        self._separators = separators


    def split(self, text: str) -> list[str]:
        """Return the chunks of *text*; empty input yields no chunks."""
        return [text[start:end] for start, end in self.split_spans(text)]


    def split_spans(self, text: str) -> list[Span]:
        """Return ``(start, end)`` offsets of each chunk within *text*."""
        if not text:
            return []
        if len(text) <= self.chunk_size:
            return [(0, len(text))]

        pieces = self._atomize(text, 0, len(text), self._separators)
        return self._merge(pieces)

    # ── Recursive splitting ────────────────────────────────────────────

    def _atomize(self, text: str, start: int, end: int, separators: tuple[str, ...]) -> list[Span]:
        """Break ``text[start:end]`` into contiguous spans of at most ``chunk_size``."""
        if end - start <= self.chunk_size:
            return [(start, end)]

        sep, remaining = separators[0], separators[1:]
        if sep and text.find(sep, start, end) == -1:
            return self._atomize(text, start, end, remaining)

        spans: list[Span] = []
        for piece_start, piece_end in self._split_keep(text, start, end, sep):
            if piece_end - piece_start <= self.chunk_size:
                spans.append((piece_start, piece_end))
            else:
                spans.extend(self._atomize(text, piece_start, piece_end, remaining))
        return spans


    @staticmethod
    def _split_keep(text: str, start: int, end: int, sep: str) -> list[Span]:
        """Split on *sep*, keeping each separator at the end of its piece."""
        if not sep:
            return [(i, i + 1) for i in range(start, end)]

        spans: list[Span] = []
        cursor = start
        while cursor < end:
            hit = text.find(sep, cursor, end)
            if hit == -1:
                spans.append((cursor, end))
                break
            piece_end = hit + len(sep)
            spans.append((cursor, piece_end))
            cursor = piece_end
        return spans

    # ── Window packing ─────────────────────────────────────────────────

    def _merge(self, pieces: list[Span]) -> list[Span]:
        """Greedily pack contiguous pieces into overlapping windows."""
        chunks: list[Span] = []
        window: deque[Span] = deque()
        total = 0

        for piece in pieces:
            length = piece[1] - piece[0]
            if window and total + length > self.chunk_size:
                chunks.append((window[0][0], window[-1][1]))
                # Keep only trailing context that fits the overlap and leaves room for *piece*
                while window and (total > self.chunk_overlap or total + length > self.chunk_size):
                    head = window.popleft()
                    total -= head[1] - head[0]
            window.append(piece)
            total += length

        if window:
            chunks.append((window[0][0], window[-1][1]))
        return chunks
