"""
Fixed-Window Chunker
════════════════════

  text:   |──────────────────────── 2400 chars ────────────────────────|
  chunk0: [0 ─────────── 1000)
  chunk1:            [800 ─────────── 1800)
  chunk2:                       [1600 ─────────── 2400)

  window  = settings.chunk_size     (1000 chars)
  overlap = settings.chunk_overlap  (200 chars)
  stride  = window − overlap        (800 chars)

Properties:
  - the final window may be shorter than `window`
  - empty text → no chunks
  - chunk[0] + Σ chunk[i][overlap:] for i ≥ 1 reconstructs the text exactly
"""

from __future__ import annotations

from dataclasses import dataclass

from dms.core.config import settings


@dataclass(frozen=True)
class TextChunk:
    index: int     # position in the document, 0-based
    start: int     # character offset of the first char in the source text
    text:  str

    @property
    def end(self) -> int:
        return self.start + len(self.text)


def chunk_text(
    text: str,
    size: int | None = None,
    overlap: int | None = None,
) -> list[TextChunk]:
    size = settings.chunk_size if size is None else size
    overlap = settings.chunk_overlap if overlap is None else overlap
    if size <= 0:
        raise ValueError("chunk size must be positive")
    if overlap < 0 or overlap >= size:
        raise ValueError("overlap must be >= 0 and < size")

    chunks: list[TextChunk] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        chunks.append(TextChunk(index=len(chunks), start=start, text=text[start:end]))
        if end >= len(text):
            break
        start += size - overlap
    return chunks
