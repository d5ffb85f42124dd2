"""NDJSON stream decoding tolerant of arbitrary chunk boundaries.

Network reads do not respect record boundaries: a chunk may end in the
middle of a line, or even in the middle of a multi-byte UTF-8 sequence.
``LineDecoder`` keeps the unterminated tail and joins it with the next
chunk, so every way of splitting the same byte stream yields the same
sequence of lines.
"""

import codecs
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator

logger = logging.getLogger("verifystream.decoder")


class LineDecoder:
    """Incremental bytes -> complete text lines."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the lines it completed."""
        if not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return self._collect(complete)

    def finish(self) -> None:
        """Flush at end of stream. An unterminated trailing line is dropped."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        if tail.strip():
            logger.warning(
                "Stream ended with a truncated record (%d chars), discarding: %.80s",
                len(tail),
                tail,
            )

    @property
    def pending(self) -> str:
        return self._buffer

    def _collect(self, raw_lines: list[str]) -> list[str]:
        lines = [line.strip() for line in raw_lines]
        return [line for line in lines if line]


def decode_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Synchronous variant of ``iter_lines`` for already-buffered data."""
    decoder = LineDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.finish()


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Lazily yield complete lines from an async stream of byte chunks.

    Terminates when ``chunks`` is exhausted. Cancellation propagates from the
    pending chunk read; lines of a chunk already split are yielded one at a
    time so the consumer can stop between them.
    """
    decoder = LineDecoder()
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            yield line
    decoder.finish()
