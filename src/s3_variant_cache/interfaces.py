from zope.interface import Attribute
from zope.interface import Interface


class IS3Client(Interface):
    """Abstraction over one S3-compatible endpoint."""

    def head_object(bucket, key):
        """Return the metadata dict of an object.

        Raises NotFound if the bucket or key does not exist.
        """

    def get_object(bucket, key, byte_range=None, if_modified_since=None):
        """Return the GetObject response dict (``Body`` is a stream)."""

    def put_object(bucket, key, body, content_type=None, content_encoding=None):
        """Upload a whole object in one request."""

    def delete_object(bucket, key):
        """Delete an object. Deleting a missing key is not an error."""

    def list_objects(bucket, prefix=""):
        """Yield object summaries (dicts with ``Key``) under a prefix."""

    def get_tags(bucket, key):
        """Return the object's tags as a dict."""

    def put_tags(bucket, key, tags):
        """Replace the object's tags with the given dict."""

    def create_multipart_upload(bucket, key, content_type=None):
        """Start a multipart upload and return its upload id."""

    def upload_part(bucket, key, upload_id, part_number, data):
        """Upload one part and return its ETag."""

    def complete_multipart_upload(bucket, key, upload_id, parts):
        """Finalize a multipart upload from ``[(part_number, etag), ...]``."""

    def abort_multipart_upload(bucket, key, upload_id):
        """Abort a multipart upload."""

    def close():
        """Release network resources."""


class IRangeReader(Interface):
    """Fetches byte ranges of remote objects, one GET per call."""

    def fetch(reference, start, end):
        """Return bytes ``start`` through ``end`` (inclusive)."""

    def head_length(reference):
        """Return ``(length, last_modified)``."""


class IKeyLookupStrategy(Interface):
    """Maps a logical identifier to an ObjectReference."""

    def lookup(identifier):
        """Return an ObjectReference.

        Raises NotFound when there is no such object and ConfigurationError
        when the strategy is misconfigured.
        """


class IWriteObserver(Interface):
    """Notified when a variant has been written to the cache."""

    def variant_written(variant):
        """Called from a background thread after a successful upload."""


class ICompletableOutputStream(Interface):
    """Write sink that only publishes its data if marked complete."""

    completion = Attribute(
        "concurrent.futures.Future resolved with True once the object has "
        "been written, or False if nothing was written."
    )

    def write(data):
        """Buffer bytes."""

    def complete():
        """Mark all data as written."""

    def close():
        """Hand off to the background upload (or discard). Never blocks."""


class IFreshnessPolicy(Interface):
    """Time-to-live based validity of cached objects."""

    def is_valid(timestamp):
        """Whether an object last touched at ``timestamp`` is still valid."""

    def earliest_valid_instant():
        """Return the earliest instant considered valid."""

    def new_tags():
        """Return a tag dict stamping the current time."""


class IVariantCache(Interface):
    """S3-backed cache of variant images and their info records."""

    def fetch_info(identifier):
        """Return the cached info dict, or None."""

    def put_info(identifier, info):
        """Store an info record synchronously."""

    def new_variant_input_stream(variant):
        """Return a readable stream of a cached variant, or None."""

    def new_variant_output_stream(variant):
        """Return an ICompletableOutputStream writing a variant."""

    def evict(identifier):
        """Delete the info and every variant of an identifier."""

    def evict_variant(variant):
        """Delete one variant."""

    def evict_infos():
        """Delete every info record."""

    def evict_invalid():
        """Delete every object failing the freshness policy."""

    def purge():
        """Delete everything under the cache prefix."""
