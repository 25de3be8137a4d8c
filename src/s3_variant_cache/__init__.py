"""S3-backed variant image cache and seekable S3 image source."""

from s3_variant_cache.cache import S3VariantCache
from s3_variant_cache.config import S3CacheSettings
from s3_variant_cache.config import S3SourceSettings
from s3_variant_cache.source import S3Source
from s3_variant_cache.variant import Variant


__all__ = [
    "S3CacheSettings",
    "S3Source",
    "S3SourceSettings",
    "S3VariantCache",
    "Variant",
]
