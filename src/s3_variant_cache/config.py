from concurrent.futures import ThreadPoolExecutor
from pydantic import AliasChoices
from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict
from s3_variant_cache.cache import DEFAULT_MAX_RETRIES
from s3_variant_cache.cache import S3VariantCache
from s3_variant_cache.lookup import BASIC
from s3_variant_cache.lookup import DELEGATE
from s3_variant_cache.lookup import strategy_from_config
from s3_variant_cache.s3client import ClientRegistry
from s3_variant_cache.s3client import S3Client
from s3_variant_cache.source import S3Source
from s3_variant_cache.streams import DEFAULT_WINDOW_SIZE
from s3_variant_cache.uploads import MINIMUM_PART_LENGTH
from typing import Literal


_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024**2,
    "MB": 1024**2,
    "G": 1024**3,
    "GB": 1024**3,
}


def parse_byte_size(value):
    """Parse ``524288``, ``"512K"`` or ``"5MB"`` into a byte count."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip().upper()
        digits = text.rstrip("KMGB")
        unit = text[len(digits) :]
        if digits.strip().isdigit() and unit in _UNITS:
            return int(digits) * _UNITS[unit]
    raise ValueError(f"Invalid byte size: {value!r}")


class S3CacheSettings(BaseSettings):
    """Configuration of the S3 variant cache."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    bucket: str = Field(validation_alias="S3CACHE_BUCKET")
    object_key_prefix: str = Field(
        default="", validation_alias="S3CACHE_OBJECT_KEY_PREFIX"
    )
    endpoint: str | None = Field(default=None, validation_alias="S3CACHE_ENDPOINT")
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3CACHE_REGION", "AWS_REGION"),
    )
    access_key_id: str | None = Field(
        default=None, validation_alias="S3CACHE_ACCESS_KEY_ID"
    )
    secret_access_key: str | None = Field(
        default=None, validation_alias="S3CACHE_SECRET_ACCESS_KEY"
    )
    async_credential_update: bool = Field(
        default=True, validation_alias="S3CACHE_ASYNC_CREDENTIAL_UPDATE"
    )
    multipart_uploads: bool = Field(
        default=False, validation_alias="S3CACHE_MULTIPART_UPLOADS"
    )
    part_size: int = Field(
        default=MINIMUM_PART_LENGTH, validation_alias="S3CACHE_PART_SIZE"
    )
    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES, ge=0, validation_alias="S3CACHE_MAX_RETRIES"
    )
    ttl: int = Field(
        default=0,
        validation_alias=AliasChoices("S3CACHE_TTL", "VARIANT_CACHE_TTL"),
    )
    background_threads: int = Field(
        default=16, ge=1, validation_alias="S3CACHE_BACKGROUND_THREADS"
    )

    @field_validator("part_size", mode="before")
    @classmethod
    def _parse_part_size(cls, value):
        return parse_byte_size(value)

    def open(self):
        client = S3Client(
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            async_credential_update=self.async_credential_update,
        )
        executor = ThreadPoolExecutor(
            max_workers=self.background_threads, thread_name_prefix="s3cache"
        )
        return S3VariantCache(
            client,
            self.bucket,
            prefix=self.object_key_prefix,
            ttl=self.ttl,
            multipart_uploads=self.multipart_uploads,
            part_size=self.part_size,
            max_retries=self.max_retries,
            executor=executor,
        )


class S3SourceSettings(BaseSettings):
    """Configuration of the S3 image source."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    endpoint: str | None = Field(default=None, validation_alias="S3SOURCE_ENDPOINT")
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3SOURCE_REGION", "AWS_REGION"),
    )
    access_key_id: str | None = Field(
        default=None, validation_alias="S3SOURCE_ACCESS_KEY_ID"
    )
    secret_access_key: str | None = Field(
        default=None, validation_alias="S3SOURCE_SECRET_ACCESS_KEY"
    )
    async_credential_update: bool = Field(
        default=True, validation_alias="S3SOURCE_ASYNC_CREDENTIAL_UPDATE"
    )
    lookup_strategy: Literal["BasicLookupStrategy", "DelegateLookupStrategy"] = Field(
        default=BASIC, validation_alias="S3SOURCE_LOOKUP_STRATEGY"
    )
    bucket: str | None = Field(default=None, validation_alias="S3SOURCE_BUCKET")
    path_prefix: str = Field(default="", validation_alias="S3SOURCE_PATH_PREFIX")
    path_suffix: str = Field(default="", validation_alias="S3SOURCE_PATH_SUFFIX")
    delegate: str | None = Field(default=None, validation_alias="S3SOURCE_DELEGATE")
    chunking_enabled: bool = Field(
        default=True, validation_alias="S3SOURCE_CHUNKING_ENABLED"
    )
    chunk_size: int = Field(
        default=DEFAULT_WINDOW_SIZE, gt=0, validation_alias="S3SOURCE_CHUNK_SIZE"
    )

    @field_validator("chunk_size", mode="before")
    @classmethod
    def _parse_chunk_size(cls, value):
        return parse_byte_size(value)

    def open(self):
        lookup = strategy_from_config(
            self.lookup_strategy,
            bucket=self.bucket,
            path_prefix=self.path_prefix,
            path_suffix=self.path_suffix,
            delegate=self.delegate if self.lookup_strategy == DELEGATE else None,
        )
        registry = ClientRegistry(
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            async_credential_update=self.async_credential_update,
        )
        return S3Source(
            lookup,
            registry,
            chunking_enabled=self.chunking_enabled,
            chunk_size=self.chunk_size,
        )


def load_cache_settings_from_env():
    """Load cache settings from environment variables."""
    return S3CacheSettings()


def load_source_settings_from_env():
    """Load source settings from environment variables."""
    return S3SourceSettings()
