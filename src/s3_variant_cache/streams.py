from botocore.exceptions import BotoCoreError
from s3_variant_cache import background
from s3_variant_cache.s3client import S3OperationError

import io
import logging
import os
import shutil
import tempfile


logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 512 * 1024
_COPY_BUFSIZE = 64 * 1024


class WindowedSeekableStream(io.RawIOBase):
    """Random-access reads over a remote object of known length.

    Reads are served from at most one cached window of ``window_size``
    bytes, aligned to a multiple of ``window_size``. A read outside the
    cached window replaces it with a freshly fetched one.
    """

    def __init__(self, reader, reference, window_size=DEFAULT_WINDOW_SIZE):
        if reference.length is None:
            raise ValueError(f"length of {reference!r} is unknown")
        if window_size <= 0:
            raise ValueError(f"window size must be positive, got {window_size}")
        self._reader = reader
        self._reference = reference
        self.window_size = window_size
        self._position = 0
        self._window_start = None
        self._window = None

    @property
    def length(self):
        return self._reference.length

    @property
    def reference(self):
        return self._reference

    def readable(self):
        return True

    def seekable(self):
        return True

    def tell(self):
        self._check_open()
        return self._position

    def seek(self, offset, whence=os.SEEK_SET):
        self._check_open()
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self._position + offset
        elif whence == os.SEEK_END:
            position = self.length + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if position < 0:
            raise ValueError(f"negative seek position {position}")
        self._position = position
        return position

    def readinto(self, buffer):
        self._check_open()
        view = memoryview(buffer).cast("B")
        wanted = len(view)
        filled = 0
        while filled < wanted and self._position < self.length:
            if not self._window_contains(self._position):
                self._load_window(self._position)
            offset = self._position - self._window_start
            count = min(len(self._window) - offset, wanted - filled)
            view[filled : filled + count] = self._window[offset : offset + count]
            filled += count
            self._position += count
        return filled

    def close(self):
        self._window = None
        self._window_start = None
        super().close()

    def _check_open(self):
        if self.closed:
            raise ValueError("I/O operation on closed file.")

    def _window_contains(self, position):
        if self._window is None:
            return False
        return self._window_start <= position < self._window_start + len(self._window)

    def _load_window(self, position):
        start = (position // self.window_size) * self.window_size
        end = min(start + self.window_size, self.length) - 1
        # A failed fetch must not leave the previous window in place.
        self._window = None
        self._window_start = None
        data = self._reader.fetch(self._reference, start, end)
        if position - start >= len(data):
            raise S3OperationError(
                f"Short read of {self._reference!r}: "
                f"requested {start}-{end}, got {len(data)} bytes"
            )
        self._window_start = start
        self._window = data


class StagedObjectStream(io.RawIOBase):
    """Seekable stream over a full download spooled to a temporary file."""

    def __init__(self, body, temp_dir=None):
        self._file = tempfile.TemporaryFile(prefix="s3obj-", dir=temp_dir)
        try:
            try:
                shutil.copyfileobj(body, self._file, _COPY_BUFSIZE)
            except BotoCoreError as e:
                raise S3OperationError("Failed to download object body") from e
            finally:
                body.close()
        except BaseException:
            self._file.close()
            raise
        self._length = self._file.tell()
        self._file.seek(0)

    @property
    def length(self):
        return self._length

    def readable(self):
        return True

    def seekable(self):
        return True

    def readinto(self, buffer):
        return self._file.readinto(buffer)

    def seek(self, offset, whence=os.SEEK_SET):
        return self._file.seek(offset, whence)

    def tell(self):
        return self._file.tell()

    def close(self):
        if not self.closed:
            self._file.close()
        super().close()


def _drain(body):
    try:
        while body.read(_COPY_BUFSIZE):
            pass
    finally:
        body.close()


def drain_async(body, executor=None):
    """Consume and close a response body off the calling thread.

    Closing an unconsumed body drops its pooled connection, so the rest of
    it is read first.
    """
    future = background.submit(executor, _drain, body)
    future.add_done_callback(
        lambda f: background.log_failure(f, "Draining response body")
    )
    return future


class DrainingStream(io.RawIOBase):
    """Readable wrapper of a response body that drains it on close."""

    def __init__(self, body, executor=None, last_modified=None, length=None):
        self._body = body
        self._executor = executor
        self.last_modified = last_modified
        self.length = length

    def readable(self):
        return True

    def readinto(self, buffer):
        if self.closed:
            raise ValueError("I/O operation on closed file.")
        view = memoryview(buffer).cast("B")
        try:
            data = self._body.read(len(view))
        except BotoCoreError as e:
            raise S3OperationError("Failed reading response body") from e
        view[: len(data)] = data
        return len(data)

    def close(self):
        if not self.closed:
            drain_async(self._body, self._executor)
        super().close()


def new_seekable_stream(
    reader,
    reference,
    chunking_enabled=True,
    chunk_size=DEFAULT_WINDOW_SIZE,
    temp_dir=None,
):
    """Return a seekable binary stream over a remote object.

    With chunking, reads are served by ranged GETs of ``chunk_size``
    windows. Without it the whole object is downloaded once and staged in
    a temporary file.
    """
    if chunking_enabled:
        if reference.length is None:
            reference.length, _ = reader.head_length(reference)
        logger.debug("Using %d-byte windows for %r", chunk_size, reference)
        return WindowedSeekableStream(reader, reference, window_size=chunk_size)
    logger.debug("Chunking is disabled; staging %r", reference)
    return StagedObjectStream(reader.open(reference), temp_dir=temp_dir)
