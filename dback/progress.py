"""Byte-counting stream decorator used by every transfer path."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Callable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024  # 256 KB per read/write call

ProgressCallback = Callable[[int, "int | None"], None]


@dataclass
class TransferProgress:
    """Cumulative bytes seen on one stream end of a single transfer."""

    transferred: int = 0
    total: int | None = None

    @property
    def fraction(self) -> float | None:
        """Fraction complete (0.0 – 1.0), or None when the total is unknown."""
        if self.total is None:
            return None
        if self.total <= 0:
            return 1.0
        return min(1.0, self.transferred / self.total)


class ProgressStream:
    """Wraps a readable or writable binary stream and counts bytes through it.

    Each ``read``/``write`` adds the byte count to :attr:`progress` and then
    calls *observer* with ``(transferred, total)`` on the same thread, so
    progress reports never get ahead of the data.  The observer is advisory:
    an exception it raises is logged and the transfer carries on.

    The wrapper never buffers; it hands each call straight to the wrapped
    stream.
    """

    def __init__(
        self,
        stream: BinaryIO,
        total: int | None = None,
        observer: ProgressCallback | None = None,
    ) -> None:
        self._stream = stream
        self._observer = observer
        self.progress = TransferProgress(total=total)

    @property
    def transferred(self) -> int:
        return self.progress.transferred

    def _advance(self, n: int) -> None:
        if n <= 0:
            return
        self.progress.transferred += n
        if self._observer:
            try:
                self._observer(self.progress.transferred, self.progress.total)
            except Exception:
                logger.exception("Exception in progress observer")

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            self._advance(len(data))
        return data

    def write(self, data: bytes) -> int:
        written = self._stream.write(data)
        # Raw streams may report a short write; buffered ones return None.
        self._advance(len(data) if written is None else written)
        return len(data) if written is None else written

    def __len__(self) -> int:
        # Lets HTTP clients derive Content-Length from the wrapper.
        return self.progress.total or 0

    def close(self) -> None:
        self._stream.close()

    def __getattr__(self, name: str):
        return getattr(self._stream, name)
