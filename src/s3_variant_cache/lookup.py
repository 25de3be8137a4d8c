from s3_variant_cache.interfaces import IKeyLookupStrategy
from s3_variant_cache.reference import ObjectReference
from s3_variant_cache.s3client import ConfigurationError
from s3_variant_cache.s3client import NotFound
from s3_variant_cache.s3client import S3OperationError
from zope.interface import implementer

import importlib
import logging


logger = logging.getLogger(__name__)

BASIC = "BasicLookupStrategy"
DELEGATE = "DelegateLookupStrategy"


@implementer(IKeyLookupStrategy)
class BasicLookupStrategy:
    """Maps an identifier to ``{path_prefix}{identifier}{path_suffix}`` in one bucket."""

    def __init__(self, bucket, path_prefix="", path_suffix=""):
        if not bucket:
            raise ConfigurationError("BasicLookupStrategy requires a bucket")
        self.bucket = bucket
        self.path_prefix = path_prefix or ""
        self.path_suffix = path_suffix or ""

    def lookup(self, identifier):
        key = f"{self.path_prefix}{identifier}{self.path_suffix}"
        return ObjectReference(self.bucket, key)


@implementer(IKeyLookupStrategy)
class DelegateLookupStrategy:
    """Asks a hook callable where an identifier's object lives.

    The hook receives the identifier and returns None (no such object) or a
    mapping with at least ``bucket`` and ``key``, and optionally ``region``,
    ``endpoint``, ``access_key_id`` and ``secret_access_key``.
    """

    def __init__(self, hook):
        self.hook = hook

    def lookup(self, identifier):
        try:
            result = self.hook(identifier)
        except Exception as e:
            raise S3OperationError(f"Lookup hook failed for {identifier!r}") from e
        if not result:
            raise NotFound(f"Lookup hook returned nothing for {identifier!r}")
        if "bucket" not in result or "key" not in result:
            raise ConfigurationError("Lookup hook result must include bucket and key")
        return ObjectReference(
            result["bucket"],
            result["key"],
            region=result.get("region"),
            endpoint=result.get("endpoint"),
            access_key_id=result.get("access_key_id"),
            secret_access_key=result.get("secret_access_key"),
        )


def resolve_hook(dotted_name):
    """Import ``package.module.callable`` (or ``package.module:callable``)."""
    if ":" in dotted_name:
        module_name, _, attr = dotted_name.partition(":")
    else:
        module_name, _, attr = dotted_name.rpartition(".")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid lookup hook name: {dotted_name!r}")
    try:
        module = importlib.import_module(module_name)
        hook = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot import lookup hook {dotted_name!r}") from e
    if not callable(hook):
        raise ConfigurationError(f"Lookup hook {dotted_name!r} is not callable")
    return hook


def strategy_from_config(
    name, bucket=None, path_prefix="", path_suffix="", delegate=None
):
    if name in (None, "", BASIC):
        return BasicLookupStrategy(bucket, path_prefix, path_suffix)
    if name == DELEGATE:
        if not delegate:
            raise ConfigurationError(f"{DELEGATE} requires a delegate hook")
        return DelegateLookupStrategy(resolve_hook(delegate))
    raise ConfigurationError(f"Unknown lookup strategy: {name!r}")
