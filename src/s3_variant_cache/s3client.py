from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from s3_variant_cache.interfaces import IS3Client
from urllib.parse import urlparse
from zope.interface import implementer

import boto3
import logging
import threading


logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"

_NOT_FOUND_CODES = frozenset({"404", "410", "NoSuchKey", "NoSuchBucket", "NotFound"})
_NOT_MODIFIED_CODES = frozenset({"304", "412", "NotModified", "PreconditionFailed"})
_ACCESS_DENIED_CODES = frozenset({"403", "AccessDenied", "Forbidden"})


class S3OperationError(OSError):
    """Wraps boto3 errors to avoid leaking AWS infrastructure details."""


class NotFound(S3OperationError):
    """No such bucket or key, or the object is no longer valid."""


class NotModified(NotFound):
    """A conditional GET matched no object modified after the given instant."""


class AccessDenied(S3OperationError):
    """The credentials in use are not allowed to perform the operation."""


class RateLimited(S3OperationError):
    """The endpoint asked the client to reduce its request rate."""


class ConfigurationError(ValueError):
    """Invalid endpoint, lookup result or other configuration value."""


def _error_class(error):
    err = error.response.get("Error", {})
    code = str(err.get("Code", ""))
    if code in _NOT_MODIFIED_CODES:
        return NotModified
    if code in _NOT_FOUND_CODES:
        return NotFound
    if code in _ACCESS_DENIED_CODES:
        return AccessDenied
    if code == "SlowDown":
        return RateLimited
    if code == "503" and "reduce your request rate" in str(err.get("Message", "")):
        return RateLimited
    return S3OperationError


def _validate_endpoint(endpoint_url):
    parsed = urlparse(endpoint_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Invalid endpoint URI: {endpoint_url!r}")


@implementer(IS3Client)
class S3Client:
    """Thin boto3 wrapper for one S3-compatible endpoint."""

    def __init__(
        self,
        endpoint_url=None,
        region_name=None,
        aws_access_key_id=None,
        aws_secret_access_key=None,
        async_credential_update=True,
        use_ssl=True,
        addressing_style=None,
        connect_timeout=60,
        read_timeout=60,
    ):
        self.endpoint_url = endpoint_url or None
        if self.endpoint_url:
            _validate_endpoint(self.endpoint_url)

        if addressing_style is None:
            # Non-AWS endpoints rarely support virtual-hosted buckets.
            addressing_style = "path" if self.endpoint_url else "auto"

        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

        session = boto3.session.Session()
        self.region_name = region_name or session.region_name or DEFAULT_REGION

        kwargs = {"config": config, "region_name": self.region_name}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if aws_access_key_id and aws_secret_access_key:
            kwargs["aws_access_key_id"] = aws_access_key_id
            kwargs["aws_secret_access_key"] = aws_secret_access_key
        elif not async_credential_update:
            # Resolve the provider chain once; the frozen credentials are
            # never refreshed.
            credentials = session.get_credentials()
            if credentials is not None:
                frozen = credentials.get_frozen_credentials()
                kwargs["aws_access_key_id"] = frozen.access_key
                kwargs["aws_secret_access_key"] = frozen.secret_key
                if frozen.token:
                    kwargs["aws_session_token"] = frozen.token
        kwargs["use_ssl"] = use_ssl
        if not use_ssl:
            logger.warning(
                "S3 SSL is disabled, data and credentials are sent in cleartext"
            )

        self._client = boto3.client("s3", **kwargs)

    def __repr__(self):
        return f"<S3Client endpoint={self.endpoint_url or 'aws'} region={self.region_name}>"

    def _wrap_error(self, e, operation, bucket, key):
        """Translate a boto error into the error taxonomy, logging the original at DEBUG."""
        logger.debug("S3 %s failed for s3://%s/%s: %s", operation, bucket, key, e)
        if isinstance(e, ClientError):
            cls = _error_class(e)
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise cls(f"S3 {operation} failed for s3://{bucket}/{key}: {code}") from e
        raise S3OperationError(
            f"S3 {operation} failed for s3://{bucket}/{key}: {type(e).__name__}"
        ) from e

    def head_object(self, bucket, key):
        try:
            return self._client.head_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "head", bucket, key)

    def get_object(self, bucket, key, byte_range=None, if_modified_since=None):
        kwargs = {"Bucket": bucket, "Key": key}
        if byte_range is not None:
            start, end = byte_range
            kwargs["Range"] = f"bytes={start}-{end}"
        if if_modified_since is not None:
            kwargs["IfModifiedSince"] = if_modified_since
        try:
            return self._client.get_object(**kwargs)
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "get", bucket, key)

    def put_object(self, bucket, key, body, content_type=None, content_encoding=None):
        kwargs = {"Bucket": bucket, "Key": key, "Body": body}
        if content_type:
            kwargs["ContentType"] = content_type
        if content_encoding:
            kwargs["ContentEncoding"] = content_encoding
        try:
            return self._client.put_object(**kwargs)
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "put", bucket, key)

    def delete_object(self, bucket, key):
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "delete", bucket, key)

    def list_objects(self, bucket, prefix=""):
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                yield from page.get("Contents", [])
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "list", bucket, prefix)

    def get_tags(self, bucket, key):
        try:
            response = self._client.get_object_tagging(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "get-tagging", bucket, key)
        return {tag["Key"]: tag["Value"] for tag in response.get("TagSet", [])}

    def put_tags(self, bucket, key, tags):
        tag_set = [{"Key": k, "Value": v} for k, v in tags.items()]
        try:
            self._client.put_object_tagging(
                Bucket=bucket, Key=key, Tagging={"TagSet": tag_set}
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "put-tagging", bucket, key)

    def create_multipart_upload(self, bucket, key, content_type=None):
        kwargs = {"Bucket": bucket, "Key": key}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            return self._client.create_multipart_upload(**kwargs)["UploadId"]
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "create-multipart", bucket, key)

    def upload_part(self, bucket, key, upload_id, part_number, data):
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, f"upload-part {part_number}", bucket, key)
        return response["ETag"]

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        multipart = {
            "Parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts]
        }
        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload=multipart,
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "complete-multipart", bucket, key)

    def abort_multipart_upload(self, bucket, key, upload_id):
        try:
            self._client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            self._wrap_error(e, "abort-multipart", bucket, key)

    def close(self):
        self._client.close()


class ClientRegistry:
    """One S3Client per distinct endpoint, created lazily and then reused.

    Region and credentials not carried by an ObjectReference fall back to
    the registry defaults. Since clients are keyed by endpoint only, the
    overrides of the first reference seen for an endpoint win.
    """

    DEFAULT_ENDPOINT_KEY = "default"

    def __init__(
        self,
        endpoint_url=None,
        region_name=None,
        aws_access_key_id=None,
        aws_secret_access_key=None,
        async_credential_update=True,
        client_factory=S3Client,
    ):
        self.endpoint_url = endpoint_url
        self.region_name = region_name
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self.async_credential_update = async_credential_update
        self._client_factory = client_factory
        self._clients = {}
        self._lock = threading.Lock()

    def client_for(self, reference=None):
        endpoint = reference.endpoint if reference is not None else None
        endpoint_key = endpoint or self.DEFAULT_ENDPOINT_KEY
        with self._lock:
            client = self._clients.get(endpoint_key)
            if client is None:
                region = access_key = secret = None
                if reference is not None:
                    region = reference.region
                    access_key = reference.access_key_id
                    secret = reference.secret_access_key
                client = self._client_factory(
                    endpoint_url=endpoint or self.endpoint_url,
                    region_name=region or self.region_name,
                    aws_access_key_id=access_key or self.aws_access_key_id,
                    aws_secret_access_key=secret or self.aws_secret_access_key,
                    async_credential_update=self.async_credential_update,
                )
                logger.debug("Created %r for endpoint key %s", client, endpoint_key)
                self._clients[endpoint_key] = client
        return client

    def close(self):
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            try:
                client.close()
            except Exception:
                logger.warning("Failed to close %r", client, exc_info=True)
