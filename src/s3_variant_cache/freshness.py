from datetime import datetime
from datetime import timezone
from s3_variant_cache import background
from s3_variant_cache.interfaces import IFreshnessPolicy
from zope.interface import implementer

import logging
import time


logger = logging.getLogger(__name__)

# S3 has no last-access time and objects are immutable, but tags are not.
LAST_ACCESS_TIME_TAG = "LastAccessTime"

EPOCH = datetime.fromtimestamp(0, timezone.utc)


@implementer(IFreshnessPolicy)
class FreshnessPolicy:
    """An object is valid while its last write or read is within ``ttl`` seconds.

    A ``ttl`` of zero or less means objects never expire. Validity is
    computed at whole-second resolution.
    """

    def __init__(self, ttl=0, clock=time.time):
        self.ttl = ttl
        self._clock = clock

    def earliest_valid_instant(self):
        if self.ttl <= 0:
            return EPOCH
        now = int(self._clock())
        return datetime.fromtimestamp(now - self.ttl, timezone.utc)

    def is_valid(self, timestamp):
        if self.ttl <= 0:
            return True
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return timestamp > self.earliest_valid_instant()

    def is_valid_tags(self, tags):
        """Validity of an object according to its tags.

        Objects without a parseable last-access tag are invalid.
        """
        value = tags.get(LAST_ACCESS_TIME_TAG)
        if value is None:
            return False
        try:
            millis = int(value)
        except ValueError:
            logger.debug("Unparseable %s tag: %r", LAST_ACCESS_TIME_TAG, value)
            return False
        return self.is_valid(datetime.fromtimestamp(millis / 1000, timezone.utc))

    def new_tags(self):
        return {LAST_ACCESS_TIME_TAG: str(int(self._clock() * 1000))}


class EvictionSweeper:
    """Deletes cached objects from one bucket, one request per object.

    Multi-object sweeps are best-effort: a failed delete is logged and the
    sweep continues.
    """

    def __init__(self, client, bucket, policy, executor=None):
        self.client = client
        self.bucket = bucket
        self.policy = policy
        self._executor = executor

    def evict(self, key):
        logger.debug("Deleting s3://%s/%s", self.bucket, key)
        self.client.delete_object(self.bucket, key)

    def evict_async(self, key):
        future = background.submit(self._executor, self.evict, key)
        future.add_done_callback(
            lambda f: background.log_failure(f, f"Deleting s3://{self.bucket}/{key}")
        )
        return future

    def touch_async(self, key):
        """Stamp an object's last-access tag off the calling thread."""
        future = background.submit(
            self._executor, self.client.put_tags, self.bucket, key,
            self.policy.new_tags(),
        )
        future.add_done_callback(
            lambda f: background.log_failure(f, f"Tagging s3://{self.bucket}/{key}")
        )
        return future

    def _is_valid(self, key):
        return self.policy.is_valid_tags(self.client.get_tags(self.bucket, key))

    def _sweep(self, prefix, predicate, operation):
        seen = deleted = 0
        for obj in self.client.list_objects(self.bucket, prefix):
            seen += 1
            key = obj["Key"]
            try:
                if predicate(key):
                    self.evict(key)
                    deleted += 1
            except Exception:
                logger.warning("%s: failed to delete %s", operation, key, exc_info=True)
        logger.info(
            "%s: deleted %d of %d objects under s3://%s/%s",
            operation, deleted, seen, self.bucket, prefix,
        )
        return deleted

    def sweep_invalid(self, prefix=""):
        """Delete every object under ``prefix`` failing the freshness policy."""
        return self._sweep(prefix, lambda key: not self._is_valid(key), "sweep_invalid")

    def purge(self, prefix=""):
        """Delete every object under ``prefix``."""
        return self._sweep(prefix, lambda key: True, "purge")
