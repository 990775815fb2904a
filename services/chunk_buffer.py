"""Batching of streamed model text before it is pushed to listeners."""
from typing import Callable, List, Optional, Sequence

FlushCallback = Callable[[str, str], None]


class ChunkBuffer:
    """
    Accumulates streamed text and releases it in batches.

    Pending text is flushed once it reaches ``threshold`` characters or
    contains one of the ``break_on`` markers, whichever happens first.
    ``finalize`` flushes whatever is left at the end of a stream.

    Each flush calls ``on_flush(chunk, full_text)`` where ``chunk`` is the text
    released by this flush and ``full_text`` everything seen so far.
    """

    def __init__(
        self,
        threshold: int = 200,
        break_on: Sequence[str] = ("\n",),
        on_flush: Optional[FlushCallback] = None,
    ):
        self.threshold = threshold
        self.break_on: List[str] = list(break_on)
        self.on_flush = on_flush
        self._pending = ""
        self._full_text = ""
        self._closed = False

    @property
    def full_text(self) -> str:
        return self._full_text

    @property
    def pending(self) -> str:
        return self._pending

    def append(self, text: str) -> None:
        """Add streamed text, flushing immediately when a trigger is hit."""
        if self._closed:
            raise RuntimeError("Cannot append to a finalized ChunkBuffer")
        if not text:
            return
        self._pending += text
        self._full_text += text
        if self.should_flush():
            self.flush()

    def should_flush(self) -> bool:
        if not self._pending:
            return False
        if len(self._pending) >= self.threshold:
            return True
        return any(marker in self._pending for marker in self.break_on)

    def flush(self) -> str:
        """Release pending text; returns "" and skips the callback when nothing is pending."""
        chunk = self._pending
        if not chunk:
            return ""
        self._pending = ""
        if self.on_flush:
            self.on_flush(chunk, self._full_text)
        return chunk

    def finalize(self) -> str:
        """Flush the remainder regardless of threshold and close the buffer."""
        chunk = self.flush()
        self._closed = True
        return chunk
