"""
Spooling of document content into an owned, re-readable blob.

Content is buffered in memory up to a threshold and spills to a temporary
file beyond it. spool_stream() scopes the blob: it is released when the
block exits, whether the caller succeeded or not.
"""

import logging
import tempfile
from contextlib import contextmanager
from typing import BinaryIO, Iterable, Iterator, Union

from ..errors import FetchFailedError

logger = logging.getLogger(__name__)

DEFAULT_SPOOL_THRESHOLD = 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

Content = Union[bytes, bytearray, BinaryIO, Iterable[bytes]]


class SpooledBlob:
    """Owned copy of a document payload."""

    def __init__(self, threshold: int = DEFAULT_SPOOL_THRESHOLD):
        self.threshold = threshold
        self.size = 0
        self.released = False
        self._file = tempfile.SpooledTemporaryFile(max_size=threshold)

    @property
    def spilled(self) -> bool:
        """True once the content has outgrown memory and lives on disk."""
        return self.size > self.threshold

    def write(self, data: bytes) -> None:
        self._check_open()
        self._file.write(data)
        self.size += len(data)

    def fill(self, content: Content) -> "SpooledBlob":
        """
        Copy all of the given content into the blob.

        Raises:
            FetchFailedError: If reading the content fails
            InterruptedError: If the read was interrupted
        """
        try:
            for chunk in _iter_content(content):
                self.write(chunk)
        except InterruptedError:
            raise
        except FetchFailedError:
            raise
        except Exception as e:
            raise FetchFailedError(f"Fetch failed: {e}") from e
        return self

    def open(self) -> BinaryIO:
        """Return the underlying file rewound to the start."""
        self._check_open()
        self._file.seek(0)
        return self._file

    def read_bytes(self) -> bytes:
        return self.open().read()

    def release(self) -> None:
        """Discard the spooled content. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        self._file.close()

    def _check_open(self) -> None:
        if self.released:
            raise ValueError("Spooled blob has been released")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


def _iter_content(content: Content) -> Iterator[bytes]:
    if isinstance(content, (bytes, bytearray, memoryview)):
        yield bytes(content)
    elif hasattr(content, "read"):
        while True:
            chunk = content.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    else:
        for chunk in content:
            if not isinstance(chunk, (bytes, bytearray, memoryview)):
                raise TypeError(f"Expected bytes chunks, got {type(chunk).__name__}")
            yield bytes(chunk)


@contextmanager
def spool_stream(content: Content, threshold: int = DEFAULT_SPOOL_THRESHOLD) -> Iterator[SpooledBlob]:
    """
    Spool content into a blob that lives for the duration of the block.

    Args:
        content: bytes, a binary file-like object, or an iterable of bytes chunks
        threshold: Bytes kept in memory before spilling to disk

    Yields:
        The filled SpooledBlob
    """
    blob = SpooledBlob(threshold)
    try:
        blob.fill(content)
        if blob.spilled:
            logger.debug(f"Spooled {blob.size} bytes to disk")
        yield blob
    finally:
        blob.release()
