from botocore.exceptions import BotoCoreError
from s3_variant_cache.interfaces import IRangeReader
from s3_variant_cache.s3client import S3OperationError
from zope.interface import implementer

import logging


logger = logging.getLogger(__name__)


class ObjectAttributes:
    """Result of a HEAD request."""

    __slots__ = ("length", "last_modified", "content_type")

    def __init__(self, length, last_modified=None, content_type=None):
        self.length = length
        self.last_modified = last_modified
        self.content_type = content_type

    def __repr__(self):
        return (
            f"<ObjectAttributes length={self.length} "
            f"last_modified={self.last_modified} content_type={self.content_type!r}>"
        )


@implementer(IRangeReader)
class RangeReader:
    """Fetches byte ranges of remote objects.

    Every call issues exactly one request through the client registered for
    the reference's endpoint. Retrying and caching are left to callers.
    """

    def __init__(self, registry):
        self._registry = registry

    def fetch(self, reference, start, end):
        if start < 0 or end < start:
            raise ValueError(f"invalid byte range {start}-{end}")
        client = self._registry.client_for(reference)
        logger.debug("Requesting bytes %d-%d from %r", start, end, reference)
        response = client.get_object(
            reference.bucket, reference.key, byte_range=(start, end)
        )
        body = response["Body"]
        try:
            return body.read()
        except BotoCoreError as e:
            raise S3OperationError(
                f"Failed reading bytes {start}-{end} of {reference!r}"
            ) from e
        finally:
            body.close()

    def open(self, reference):
        """Return the streaming body of the whole object."""
        client = self._registry.client_for(reference)
        logger.debug("Requesting %r", reference)
        return client.get_object(reference.bucket, reference.key)["Body"]

    def head(self, reference):
        client = self._registry.client_for(reference)
        response = client.head_object(reference.bucket, reference.key)
        return ObjectAttributes(
            length=response["ContentLength"],
            last_modified=response.get("LastModified"),
            content_type=response.get("ContentType"),
        )

    def head_length(self, reference):
        attrs = self.head(reference)
        return attrs.length, attrs.last_modified
