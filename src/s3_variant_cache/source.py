"""Random-access reading of source images stored in S3.

Resolving an identifier and reading its image sends, in order:

1. HEAD, for the length, last-modified time and content type;
2. a small ranged GET, only if the format has to be inferred from magic
   bytes;
3. either a series of ranged GETs (chunking enabled) or a single GET of
   the whole object, staged to a temporary file.
"""

from s3_variant_cache import formats
from s3_variant_cache.reader import RangeReader
from s3_variant_cache.s3client import S3OperationError
from s3_variant_cache.streams import DEFAULT_WINDOW_SIZE
from s3_variant_cache.streams import new_seekable_stream

import logging


logger = logging.getLogger(__name__)


def check_object_key(source):
    return formats.from_path(source.reference.key)


def check_identifier(source):
    return formats.from_path(source.identifier)


def check_content_type(source):
    # application/octet-stream is not in the table and yields UNKNOWN.
    return formats.from_media_type(source.stat().content_type)


def check_magic_bytes(source):
    length = source.stat().length
    if not length:
        return formats.UNKNOWN
    end = min(formats.RECOMMENDED_READ_LENGTH, length) - 1
    return formats.detect(source.reader.fetch(source.reference, 0, end))


FORMAT_CHECKERS = (
    check_object_key,
    check_identifier,
    check_content_type,
    check_magic_bytes,
)


class FormatIterator:
    """Yields one format guess per checker, cheapest checkers first.

    Callers stop at the first guess they can use. A checker failing with
    an S3 error yields UNKNOWN.
    """

    def __init__(self, source, checkers=FORMAT_CHECKERS):
        self._source = source
        self._checkers = checkers
        self._index = 0

    def __iter__(self):
        return self

    def __next__(self):
        if self._index >= len(self._checkers):
            raise StopIteration
        checker = self._checkers[self._index]
        self._index += 1
        try:
            return checker(self._source)
        except S3OperationError as e:
            logger.warning("Error checking format with %s: %s", checker.__name__, e)
            return formats.UNKNOWN


class S3SourceObject:
    """One identifier's object. Lookup and HEAD results are cached."""

    def __init__(self, source, identifier):
        self._source = source
        self.identifier = identifier
        self._reference = None
        self._attributes = None

    @property
    def reader(self):
        return self._source.reader

    @property
    def reference(self):
        if self._reference is None:
            self._reference = self._source.lookup.lookup(self.identifier)
        return self._reference

    def stat(self):
        """Return the object's ObjectAttributes.

        Raises NotFound or AccessDenied.
        """
        if self._attributes is None:
            self._attributes = self.reader.head(self.reference)
        return self._attributes

    def formats(self):
        return FormatIterator(self)

    def infer_format(self):
        """Return the first known format guess, or UNKNOWN."""
        for fmt in self.formats():
            if fmt != formats.UNKNOWN:
                return fmt
        return formats.UNKNOWN

    def new_seekable_stream(self):
        reference = self.reference
        if reference.length is None:
            reference.length = self.stat().length
        return new_seekable_stream(
            self.reader,
            reference,
            chunking_enabled=self._source.chunking_enabled,
            chunk_size=self._source.chunk_size,
            temp_dir=self._source.temp_dir,
        )


class S3Source:
    """Resolves identifiers to S3 objects and opens seekable streams on them."""

    def __init__(
        self,
        lookup,
        registry,
        chunking_enabled=True,
        chunk_size=DEFAULT_WINDOW_SIZE,
        temp_dir=None,
    ):
        self.lookup = lookup
        self.registry = registry
        self.reader = RangeReader(registry)
        self.chunking_enabled = chunking_enabled
        self.chunk_size = chunk_size
        self.temp_dir = temp_dir

    def open(self, identifier):
        return S3SourceObject(self, identifier)

    def close(self):
        self.registry.close()
