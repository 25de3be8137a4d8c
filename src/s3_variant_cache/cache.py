from botocore.exceptions import BotoCoreError
from concurrent.futures import wait
from s3_variant_cache.freshness import EvictionSweeper
from s3_variant_cache.freshness import FreshnessPolicy
from s3_variant_cache.interfaces import IVariantCache
from s3_variant_cache.keys import CacheKeyspace
from s3_variant_cache.s3client import NotFound
from s3_variant_cache.s3client import NotModified
from s3_variant_cache.s3client import RateLimited
from s3_variant_cache.s3client import S3OperationError
from s3_variant_cache.streams import DrainingStream
from s3_variant_cache.streams import drain_async
from s3_variant_cache.uploads import MINIMUM_PART_LENGTH
from s3_variant_cache.uploads import MultipartAsyncUploader
from s3_variant_cache.uploads import SingleShotAsyncUploader
from zope.interface import implementer

import json
import logging
import threading
import time
import weakref


logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
INFO_CONTENT_TYPE = "application/json"
INFO_CONTENT_ENCODING = "UTF-8"


@implementer(IVariantCache)
class S3VariantCache:
    """Least-recently-used cache of variant images and info records in one bucket.

    Keys are laid out by CacheKeyspace. Reads only return objects modified
    after the freshness policy's earliest valid instant and refresh the
    object's last-access tag in the background. Variant writes go through
    the asynchronous uploaders; info writes are synchronous.
    """

    def __init__(
        self,
        client,
        bucket,
        prefix="",
        ttl=0,
        multipart_uploads=False,
        part_size=MINIMUM_PART_LENGTH,
        max_retries=DEFAULT_MAX_RETRIES,
        executor=None,
    ):
        self.client = client
        self.bucket = bucket
        self.keyspace = CacheKeyspace(prefix)
        self.policy = FreshnessPolicy(ttl)
        self.multipart_uploads = multipart_uploads
        self.part_size = part_size
        self.max_retries = max_retries
        self._executor = executor
        self.sweeper = EvictionSweeper(client, bucket, self.policy, executor)
        self._observers = []
        self._uploads = weakref.WeakSet()
        self._lock = threading.Lock()

    def add_observer(self, observer):
        with self._lock:
            self._observers = [*self._observers, observer]

    def remove_observer(self, observer):
        with self._lock:
            self._observers = [o for o in self._observers if o is not observer]

    # -- Reads --

    def _get_valid(self, key):
        """Conditional GET of a key; None when missing or expired."""
        earliest = self.policy.earliest_valid_instant() if self.policy.ttl > 0 else None
        try:
            response = self.client.get_object(
                self.bucket, key, if_modified_since=earliest
            )
        except NotModified:
            logger.debug("s3://%s/%s is invalid; evicting asynchronously", self.bucket, key)
            self.sweeper.evict_async(key)
            return None
        except NotFound:
            return None
        last_modified = response.get("LastModified")
        # Some servers ignore If-Modified-Since.
        if last_modified is not None and not self.policy.is_valid(last_modified):
            drain_async(response["Body"], self._executor)
            logger.debug("s3://%s/%s is invalid; evicting asynchronously", self.bucket, key)
            self.sweeper.evict_async(key)
            return None
        return response

    def fetch_info(self, identifier):
        key = self.keyspace.info_key(identifier)
        start = time.monotonic()
        response = self._get_valid(key)
        if response is None:
            return None
        body = response["Body"]
        try:
            data = body.read()
        except BotoCoreError as e:
            raise S3OperationError(f"Failed reading s3://{self.bucket}/{key}") from e
        finally:
            body.close()
        try:
            info = json.loads(data)
        except ValueError as e:
            raise S3OperationError(f"Corrupt info record s3://{self.bucket}/{key}") from e
        last_modified = response.get("LastModified")
        if isinstance(info, dict) and last_modified is not None:
            info.setdefault("serializationTimestamp", last_modified.isoformat())
        logger.debug(
            "fetch_info(): read s3://%s/%s in %.3fs",
            self.bucket, key, time.monotonic() - start,
        )
        self.sweeper.touch_async(key)
        return info

    def new_variant_input_stream(self, variant):
        key = self.keyspace.image_key(variant)
        logger.debug("new_variant_input_stream(): s3://%s/%s", self.bucket, key)
        response = self._get_valid(key)
        if response is None:
            return None
        self.sweeper.touch_async(key)
        return DrainingStream(
            response["Body"],
            self._executor,
            last_modified=response.get("LastModified"),
            length=response.get("ContentLength"),
        )

    # -- Writes --

    def put_info(self, identifier, info):
        """Store an info record (a mapping, or JSON text) synchronously.

        Burst writes to AWS occasionally fail with "Please reduce your
        request rate"; those are retried up to ``max_retries`` times.
        """
        if not isinstance(info, str):
            info = json.dumps(info)
        data = info.encode("utf-8")
        key = self.keyspace.info_key(identifier)
        logger.debug(
            "put_info(): uploading %d bytes to s3://%s/%s", len(data), self.bucket, key
        )
        start = time.monotonic()
        attempt = 0
        while True:
            try:
                self.client.put_object(
                    self.bucket,
                    key,
                    data,
                    content_type=INFO_CONTENT_TYPE,
                    content_encoding=INFO_CONTENT_ENCODING,
                )
                break
            except RateLimited as e:
                if attempt >= self.max_retries:
                    raise S3OperationError(
                        f"Gave up writing s3://{self.bucket}/{key} "
                        f"after {attempt + 1} attempts"
                    ) from e
                attempt += 1
                logger.debug("put_info(): rate limited, retry %d", attempt)
        self.sweeper.touch_async(key)
        logger.debug(
            "put_info(): wrote %d bytes to s3://%s/%s in %.3fs",
            len(data), self.bucket, key, time.monotonic() - start,
        )

    def new_variant_output_stream(self, variant):
        key = self.keyspace.image_key(variant)
        kwargs = {
            "content_type": variant.media_type,
            "policy": self.policy,
            "observers": self._observers,
            "variant": variant,
        }
        if self.multipart_uploads:
            stream = MultipartAsyncUploader(
                self.client, self.bucket, key, part_size=self.part_size, **kwargs
            )
        else:
            stream = SingleShotAsyncUploader(
                self.client, self.bucket, key, executor=self._executor, **kwargs
            )
        with self._lock:
            self._uploads.add(stream)
        return stream

    # -- Eviction --

    def evict(self, identifier):
        """Delete the info record and every variant of an identifier."""
        self.sweeper.evict(self.keyspace.info_key(identifier))
        deleted = self.sweeper.purge(self.keyspace.image_prefix(identifier))
        logger.debug("evict(): deleted %d variants of %r", deleted, identifier)

    def evict_variant(self, variant):
        self.sweeper.evict(self.keyspace.image_key(variant))

    def evict_infos(self):
        return self.sweeper.purge(self.keyspace.info_prefix())

    def evict_invalid(self):
        return self.sweeper.sweep_invalid(self.keyspace.prefix)

    def purge(self):
        return self.sweeper.purge(self.keyspace.prefix)

    def shutdown(self):
        """Wait for background work, then release the client.

        Uploads of closed output streams are waited for. Streams still open
        are never published, so they are not.
        """
        with self._lock:
            pending = [s.completion for s in self._uploads if s.closed]
        if pending:
            logger.debug("shutdown(): waiting for %d uploads", len(pending))
            wait(pending)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self.client.close()
