from s3_variant_cache.s3client import ConfigurationError

import hashlib
import re


IMAGE_KEY_PREFIX = "image/"
INFO_KEY_PREFIX = "info/"
INFO_EXTENSION = ".json"


def _md5(value):
    return hashlib.md5(str(value).encode("utf-8")).hexdigest()


def normalize_prefix(prefix):
    """Return ``""`` or the prefix with exactly one trailing slash."""
    if not prefix:
        return ""
    stripped = prefix.rstrip("/")
    if not stripped:
        return ""
    return f"{stripped}/"


class CacheKeyspace:
    """Maps identifiers and variants to object keys.

    Layout::

        {prefix}info/{md5(identifier)}.json
        {prefix}image/{md5(identifier)}/{md5(variant.key_material)}.{extension}
    """

    def __init__(self, prefix=""):
        if prefix and not re.fullmatch(r"[a-zA-Z0-9._/-]*", prefix):
            raise ConfigurationError(
                f"object key prefix contains invalid characters: {prefix!r}. "
                "Only alphanumeric characters, dots, hyphens, underscores, "
                "and slashes are allowed."
            )
        self.prefix = normalize_prefix(prefix)

    def info_key(self, identifier):
        return f"{self.info_prefix()}{_md5(identifier)}{INFO_EXTENSION}"

    def image_key(self, variant):
        extension = ""
        if variant.output_format is not None and variant.output_format.extensions:
            extension = f".{variant.output_format.preferred_extension}"
        digest = _md5(variant.key_material)
        return f"{self.image_prefix(variant.identifier)}{digest}{extension}"

    def info_prefix(self):
        return f"{self.prefix}{INFO_KEY_PREFIX}"

    def image_prefix(self, identifier=None):
        """Prefix of every image key, or of the images of one identifier."""
        if identifier is None:
            return f"{self.prefix}{IMAGE_KEY_PREFIX}"
        return f"{self.prefix}{IMAGE_KEY_PREFIX}{_md5(identifier)}/"
