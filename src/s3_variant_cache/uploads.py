"""Write sinks that upload to S3 without blocking the writer.

Both uploaders buffer written bytes and publish them only when marked
complete before ``close()``. Callers wait for the upload, if at all,
through the ``completion`` future, never through ``close()``.
"""

from concurrent.futures import Future
from s3_variant_cache import background
from s3_variant_cache.interfaces import ICompletableOutputStream
from zope.interface import implementer

import enum
import io
import logging
import queue
import threading
import time


logger = logging.getLogger(__name__)

# S3 rejects smaller parts, except for the last one.
MINIMUM_PART_LENGTH = 5 * 1024 * 1024


@implementer(ICompletableOutputStream)
class CompletableOutputStream(io.RawIOBase):
    """Writable stream whose data is discarded unless marked complete."""

    def __init__(self, client, bucket, key, content_type=None, policy=None,
                 observers=(), variant=None):
        self.client = client
        self.bucket = bucket
        self.key = key
        self.content_type = content_type
        self.completion = Future()
        self._policy = policy
        self._observers = observers
        self._variant = variant
        self._complete = False

    def writable(self):
        return True

    def complete(self):
        self._complete = True

    @property
    def is_complete(self):
        return self._complete

    def write(self, data):
        if self.closed:
            raise ValueError("I/O operation on closed file.")
        view = memoryview(data).cast("B")
        self._write(view)
        return len(view)

    def _write(self, view):
        raise NotImplementedError

    def _finish(self, written):
        """Tag, notify observers and resolve the completion future.

        Called on the background thread once the upload has ended.
        """
        if written:
            if self._policy is not None:
                try:
                    self.client.put_tags(self.bucket, self.key, self._policy.new_tags())
                except Exception:
                    logger.warning(
                        "Failed to tag s3://%s/%s", self.bucket, self.key, exc_info=True
                    )
            for observer in list(self._observers):
                try:
                    observer.variant_written(self._variant)
                except Exception:
                    logger.warning("Write observer %r failed", observer, exc_info=True)
        self.completion.set_result(written)


class SingleShotAsyncUploader(CompletableOutputStream):
    """Buffers the whole object in memory and PUTs it in one request.

    S3 needs a Content-Length before any data is sent, so a stream of
    unknown length has to be buffered. The PUT runs on the executor (or a
    daemon thread) so ``close()`` returns at once.
    """

    def __init__(self, client, bucket, key, content_type=None, policy=None,
                 observers=(), variant=None, executor=None):
        super().__init__(client, bucket, key, content_type=content_type,
                         policy=policy, observers=observers, variant=variant)
        self._executor = executor
        self._buffer = io.BytesIO()

    def _write(self, view):
        self._buffer.write(view)

    def close(self):
        if self.closed:
            return
        try:
            data = self._buffer.getvalue()
            self._buffer.close()
            if self.is_complete:
                background.submit(self._executor, self._upload, data)
            else:
                logger.debug(
                    "Discarding incomplete write of %d bytes to s3://%s/%s",
                    len(data), self.bucket, self.key,
                )
                self.completion.set_result(False)
        finally:
            super().close()

    def _upload(self, data):
        written = False
        try:
            if not data:
                logger.debug("No data to upload to s3://%s/%s", self.bucket, self.key)
                return
            start = time.monotonic()
            logger.debug(
                "Uploading %d bytes to s3://%s/%s", len(data), self.bucket, self.key
            )
            self.client.put_object(
                self.bucket, self.key, data, content_type=self.content_type
            )
            written = True
            logger.debug(
                "Wrote %d bytes to s3://%s/%s in %.3fs",
                len(data), self.bucket, self.key, time.monotonic() - start,
            )
        except Exception:
            logger.warning(
                "Upload to s3://%s/%s failed", self.bucket, self.key, exc_info=True
            )
        finally:
            self._finish(written)


class UploadState(enum.Enum):
    NEW = "new"
    CREATING = "creating"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    ABORTING = "aborting"
    DONE = "done"


class TaskKind(enum.Enum):
    CREATE = "create"
    UPLOAD_PART = "upload-part"
    COMPLETE = "complete"
    ABORT = "abort"

    @property
    def terminal(self):
        return self in (TaskKind.COMPLETE, TaskKind.ABORT)


class Task:
    """One unit of work for the upload worker."""

    __slots__ = ("kind", "part_number", "data")

    def __init__(self, kind, part_number=None, data=None):
        self.kind = kind
        self.part_number = part_number
        self.data = data

    def __repr__(self):
        size = len(self.data) if self.data is not None else 0
        return f"<Task {self.kind.value} part={self.part_number} bytes={size}>"


class UploadSession:
    """Remote state of one multipart upload.

    Only the session's worker thread mutates it.
    """

    def __init__(self, bucket, key):
        self.bucket = bucket
        self.key = key
        self.upload_id = None
        self.completed_parts = []
        self.failed = False
        self.state = UploadState.NEW


class MultipartAsyncUploader(CompletableOutputStream):
    """Uploads written data in parts while it is being written.

    The first non-empty write queues the creation of the multipart upload.
    Every time the current part reaches ``part_size`` it is queued for
    upload and a new part is started. ``close()`` queues the final part and
    the completion, or an abort if the stream was not marked complete.
    A single worker thread runs the queue in order, so parts are uploaded
    in write order and completion follows every part.

    Memory use is bounded by roughly one part (plus the largest single
    write), at the price of more requests than a single PUT. Aborts lost to
    a crashed process are left to the bucket's
    AbortIncompleteMultipartUpload lifecycle rule.
    """

    def __init__(self, client, bucket, key, content_type=None, policy=None,
                 observers=(), variant=None, part_size=MINIMUM_PART_LENGTH):
        super().__init__(client, bucket, key, content_type=content_type,
                         policy=policy, observers=observers, variant=variant)
        self.part_size = max(part_size, MINIMUM_PART_LENGTH)
        self.session = UploadSession(bucket, key)
        self._queue = queue.SimpleQueue()
        self._worker = None
        self._current_part = None
        self._part_index = 0
        self._bytes_in_part = 0

    @property
    def state(self):
        return self.session.state

    def _write(self, view):
        if not len(view):
            return
        if self._current_part is None:
            self._current_part = bytearray()
        self._current_part += view
        self._bytes_in_part += len(view)
        self._create_upload_if_necessary()
        self._upload_part_if_necessary()

    def close(self):
        if self.closed:
            return
        try:
            if self._worker is None:
                # Nothing was ever written, so there is no upload to finish.
                self.session.state = UploadState.DONE
                self.completion.set_result(False)
            elif self.is_complete:
                self._enqueue(Task(TaskKind.UPLOAD_PART, self._part_index + 1,
                                   bytes(self._current_part or b"")))
                self._enqueue(Task(TaskKind.COMPLETE))
            else:
                self._enqueue(Task(TaskKind.ABORT))
            self._current_part = None
        finally:
            super().close()

    def _enqueue(self, task):
        self._queue.put(task)

    def _create_upload_if_necessary(self):
        if self._worker is None:
            self.session.state = UploadState.CREATING
            self._enqueue(Task(TaskKind.CREATE))
            self._worker = threading.Thread(
                target=self._run,
                name=f"s3-multipart-{self.key}",
                daemon=True,
            )
            self._worker.start()

    def _upload_part_if_necessary(self):
        if self._bytes_in_part >= self.part_size:
            self._enqueue(Task(TaskKind.UPLOAD_PART, self._part_index + 1,
                               bytes(self._current_part)))
            self._current_part = None
            self._bytes_in_part = 0
            self._part_index += 1

    # -- Worker --

    def _run(self):
        written = False
        handlers = {
            TaskKind.CREATE: self._create,
            TaskKind.UPLOAD_PART: self._upload_part,
            TaskKind.COMPLETE: self._complete_upload,
            TaskKind.ABORT: self._abort,
        }
        try:
            while True:
                task = self._queue.get()
                try:
                    result = handlers[task.kind](task)
                except Exception:
                    logger.warning(
                        "%r failed for s3://%s/%s", task, self.bucket, self.key,
                        exc_info=True,
                    )
                    self.session.failed = True
                    result = False
                if task.kind.terminal:
                    written = bool(result)
                    break
        finally:
            self.session.state = UploadState.DONE
            self._finish(written)

    def _create(self, task):
        logger.debug("Creating multipart upload for s3://%s/%s", self.bucket, self.key)
        self.session.upload_id = self.client.create_multipart_upload(
            self.bucket, self.key, content_type=self.content_type
        )
        self.session.state = UploadState.UPLOADING

    def _upload_part(self, task):
        session = self.session
        if session.failed or session.upload_id is None:
            logger.debug("Skipping part %d of a failed upload", task.part_number)
            return
        # Most stores reject empty parts; the last one may be empty.
        if not task.data:
            logger.debug(
                "Skipping empty part %d [upload ID: %s]",
                task.part_number, session.upload_id,
            )
            return
        logger.debug(
            "Uploading part %d (%d bytes) [upload ID: %s]",
            task.part_number, len(task.data), session.upload_id,
        )
        etag = self.client.upload_part(
            self.bucket, self.key, session.upload_id, task.part_number, task.data
        )
        session.completed_parts.append((task.part_number, etag))

    def _complete_upload(self, task):
        session = self.session
        if session.failed or session.upload_id is None:
            # A partial object must never appear under the key.
            return self._abort(task)
        session.state = UploadState.COMPLETING
        logger.debug(
            "Completing %d-part upload [upload ID: %s]",
            len(session.completed_parts), session.upload_id,
        )
        self.client.complete_multipart_upload(
            self.bucket, self.key, session.upload_id, session.completed_parts
        )
        return True

    def _abort(self, task):
        session = self.session
        session.state = UploadState.ABORTING
        if session.upload_id is None:
            return False
        logger.debug("Aborting multipart upload [upload ID: %s]", session.upload_id)
        self.client.abort_multipart_upload(self.bucket, self.key, session.upload_id)
        return False
