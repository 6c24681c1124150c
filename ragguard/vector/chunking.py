"""
Ingest chunking: split content into overlapping, sentence-aligned windows.
"""

from typing import List

from ..core.config import CHUNK_OVERLAP, CHUNK_SIZE

MIN_CHUNK_LENGTH = 10
SENTENCE_BREAK_RATIO = 0.7
SENTENCE_ENDINGS = ".!?"


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[str]:
    """
    Split text into chunks of at most chunk_size characters.

    A window is cut back to its last sentence ending when that ending falls
    past 70% of the window. The next window starts `overlap` characters
    before the cut, moved forward to a word boundary. Chunks of 10 characters
    or fewer after stripping are dropped.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")

    text = text or ""
    if len(text) <= chunk_size:
        return _keep([text.strip()])

    chunks = []
    start = 0
    length = len(text)

    while start < length:
        end = min(start + chunk_size, length)
        window = text[start:end]

        if end < length:
            last_break = max(window.rfind(ch) for ch in SENTENCE_ENDINGS)
            if last_break > chunk_size * SENTENCE_BREAK_RATIO:
                window = window[:last_break + 1]
                end = start + len(window)

        chunks.append(window.strip())
        if end >= length:
            break

        next_start = max(end - overlap, start + 1)
        # Start the overlap on a word boundary when there is one inside it.
        space = text.find(" ", next_start, end)
        if space != -1:
            next_start = space + 1
        start = next_start

    return _keep(chunks)


def _keep(chunks: List[str]) -> List[str]:
    return [c for c in chunks if len(c) > MIN_CHUNK_LENGTH]
