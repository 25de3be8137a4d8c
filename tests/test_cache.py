import io
import json
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import boto3
import pytest
from moto import mock_aws

from s3_variant_cache import formats
from s3_variant_cache.cache import S3VariantCache
from s3_variant_cache.freshness import LAST_ACCESS_TIME_TAG
from s3_variant_cache.interfaces import IVariantCache
from s3_variant_cache.s3client import NotModified
from s3_variant_cache.s3client import RateLimited
from s3_variant_cache.s3client import S3Client
from s3_variant_cache.s3client import S3OperationError
from s3_variant_cache.uploads import MINIMUM_PART_LENGTH
from s3_variant_cache.uploads import MultipartAsyncUploader
from s3_variant_cache.uploads import SingleShotAsyncUploader
from s3_variant_cache.variant import Variant


MiB = 1024 * 1024
TIMEOUT = 30

CATS_PNG = Variant("cats.jpg", ["crop:full", "size:max"], formats.PNG)
CATS_THUMB = Variant("cats.jpg", ["size:64,64"], formats.JPEG)
DOGS_PNG = Variant("dogs.jpg", ["crop:full", "size:max"], formats.PNG)


@pytest.fixture
def s3_env():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(
            Bucket="test-bucket"
        )
        yield


@pytest.fixture
def make_cache(s3_env):
    caches = []

    def make(**kwargs):
        kwargs.setdefault("prefix", "cache")
        cache = S3VariantCache(
            S3Client(region_name="us-east-1"),
            "test-bucket",
            executor=ThreadPoolExecutor(max_workers=4),
            **kwargs,
        )
        caches.append(cache)
        return cache

    yield make
    for cache in caches:
        cache.shutdown()


@pytest.fixture
def cache(make_cache):
    return make_cache()


@pytest.fixture
def raw(s3_env):
    return boto3.client("s3", region_name="us-east-1")


def _keys(raw, prefix=""):
    response = raw.list_objects_v2(Bucket="test-bucket", Prefix=prefix)
    return sorted(obj["Key"] for obj in response.get("Contents", []))


def _write_variant(cache, variant, data):
    stream = cache.new_variant_output_stream(variant)
    stream.write(data)
    stream.complete()
    stream.close()
    assert stream.completion.result(TIMEOUT) is True


class RecordingObserver:
    def __init__(self):
        self.variants = []

    def variant_written(self, variant):
        self.variants.append(variant)


class TestInterface:
    def test_interface_provided(self, cache):
        assert IVariantCache.providedBy(cache)


class TestInfo:
    def test_roundtrip(self, cache):
        cache.put_info("cats.jpg", {"width": 640, "height": 480})
        info = cache.fetch_info("cats.jpg")
        assert info["width"] == 640
        assert info["height"] == 480
        assert "serializationTimestamp" in info

    def test_serialization_timestamp_is_kept(self, cache):
        cache.put_info("cats.jpg", {"serializationTimestamp": "2020-01-01T00:00:00"})
        info = cache.fetch_info("cats.jpg")
        assert info["serializationTimestamp"] == "2020-01-01T00:00:00"

    def test_json_text(self, cache, raw):
        cache.put_info("cats.jpg", '{"width": 1}')
        assert cache.fetch_info("cats.jpg")["width"] == 1
        key = cache.keyspace.info_key("cats.jpg")
        assert raw.head_object(Bucket="test-bucket", Key=key)["ContentType"] == (
            "application/json"
        )

    def test_content_headers(self, cache, monkeypatch):
        put = cache.client.put_object
        calls = []

        def recording_put(*args, **kwargs):
            calls.append(kwargs)
            return put(*args, **kwargs)

        monkeypatch.setattr(cache.client, "put_object", recording_put)
        cache.put_info("cats.jpg", {"width": 1})
        assert calls == [
            {"content_type": "application/json", "content_encoding": "UTF-8"}
        ]

    def test_missing(self, cache):
        assert cache.fetch_info("missing.jpg") is None

    def test_corrupt(self, cache, raw):
        raw.put_object(
            Bucket="test-bucket", Key=cache.keyspace.info_key("cats.jpg"), Body=b"{nope"
        )
        with pytest.raises(S3OperationError):
            cache.fetch_info("cats.jpg")

    def test_fresh_with_ttl(self, make_cache):
        cache = make_cache(ttl=60)
        cache.put_info("cats.jpg", {"width": 1})
        assert cache.fetch_info("cats.jpg")["width"] == 1

    def test_expires(self, make_cache, raw):
        cache = make_cache(ttl=1)
        cache.put_info("cats.jpg", {"width": 1})
        time.sleep(3)
        assert cache.fetch_info("cats.jpg") is None
        cache.shutdown()
        assert _keys(raw, "cache/info/") == []

    def test_tagged_after_write(self, cache, raw):
        cache.put_info("cats.jpg", {"width": 1})
        cache.shutdown()
        response = raw.get_object_tagging(
            Bucket="test-bucket", Key=cache.keyspace.info_key("cats.jpg")
        )
        assert [tag["Key"] for tag in response["TagSet"]] == [LAST_ACCESS_TIME_TAG]


class TestPutInfoRetries:
    def _flaky(self, cache, monkeypatch, failures):
        put = cache.client.put_object
        attempts = []

        def flaky_put(*args, **kwargs):
            attempts.append(args)
            if len(attempts) <= failures:
                raise RateLimited("Please reduce your request rate.")
            return put(*args, **kwargs)

        monkeypatch.setattr(cache.client, "put_object", flaky_put)
        return attempts

    def test_retried(self, cache, monkeypatch):
        attempts = self._flaky(cache, monkeypatch, failures=2)
        cache.put_info("cats.jpg", {"width": 1})
        assert len(attempts) == 3
        assert cache.fetch_info("cats.jpg")["width"] == 1

    def test_gives_up(self, make_cache, monkeypatch):
        cache = make_cache(max_retries=2)
        attempts = self._flaky(cache, monkeypatch, failures=100)
        with pytest.raises(S3OperationError) as info:
            cache.put_info("cats.jpg", {"width": 1})
        assert not isinstance(info.value, RateLimited)
        assert isinstance(info.value.__cause__, RateLimited)
        assert len(attempts) == 3

    def test_other_errors_not_retried(self, cache, monkeypatch):
        attempts = []

        def failing_put(*args, **kwargs):
            attempts.append(args)
            raise S3OperationError("boom")

        monkeypatch.setattr(cache.client, "put_object", failing_put)
        with pytest.raises(S3OperationError):
            cache.put_info("cats.jpg", {"width": 1})
        assert len(attempts) == 1


class TestVariants:
    def test_single_shot_roundtrip(self, cache, raw):
        data = os.urandom(MiB)
        assert isinstance(
            cache.new_variant_output_stream(CATS_THUMB), SingleShotAsyncUploader
        )
        _write_variant(cache, CATS_PNG, data)

        key = cache.keyspace.image_key(CATS_PNG)
        tags = raw.get_object_tagging(Bucket="test-bucket", Key=key)["TagSet"]
        assert tags[0]["Key"] == LAST_ACCESS_TIME_TAG
        head = raw.head_object(Bucket="test-bucket", Key=key)
        assert head["ContentType"] == "image/png"

        with cache.new_variant_input_stream(CATS_PNG) as stream:
            assert stream.length == len(data)
            assert stream.read() == data

    def test_multipart_roundtrip(self, make_cache):
        cache = make_cache(multipart_uploads=True)
        data = os.urandom(2 * MINIMUM_PART_LENGTH + MiB)
        stream = cache.new_variant_output_stream(CATS_PNG)
        assert isinstance(stream, MultipartAsyncUploader)
        stream.write(data[:10])
        stream.write(data[10:])
        stream.complete()
        stream.close()
        assert stream.completion.result(TIMEOUT) is True

        with cache.new_variant_input_stream(CATS_PNG) as stream:
            assert stream.read() == data

    def test_missing(self, cache):
        assert cache.new_variant_input_stream(CATS_PNG) is None

    def test_incomplete_write_is_not_cached(self, cache):
        stream = cache.new_variant_output_stream(CATS_PNG)
        stream.write(b"half a variant")
        stream.close()
        assert stream.completion.result(TIMEOUT) is False
        assert cache.new_variant_input_stream(CATS_PNG) is None

    def test_observers(self, cache):
        observer = RecordingObserver()
        cache.add_observer(observer)
        _write_variant(cache, CATS_PNG, b"png")
        assert observer.variants == [CATS_PNG]

        cache.remove_observer(observer)
        _write_variant(cache, CATS_THUMB, b"jpg")
        assert observer.variants == [CATS_PNG]


class TestEviction:
    def _populate(self, cache):
        _write_variant(cache, CATS_PNG, b"cats png")
        _write_variant(cache, CATS_THUMB, b"cats thumb")
        _write_variant(cache, DOGS_PNG, b"dogs png")
        cache.put_info("cats.jpg", {"width": 1})
        cache.put_info("dogs.jpg", {"width": 2})

    def test_evict_identifier(self, cache):
        self._populate(cache)
        cache.evict("cats.jpg")
        assert cache.fetch_info("cats.jpg") is None
        assert cache.new_variant_input_stream(CATS_PNG) is None
        assert cache.new_variant_input_stream(CATS_THUMB) is None
        assert cache.fetch_info("dogs.jpg")["width"] == 2
        with cache.new_variant_input_stream(DOGS_PNG) as stream:
            assert stream.read() == b"dogs png"

    def test_evict_variant(self, cache):
        self._populate(cache)
        cache.evict_variant(CATS_PNG)
        assert cache.new_variant_input_stream(CATS_PNG) is None
        with cache.new_variant_input_stream(CATS_THUMB) as stream:
            assert stream.read() == b"cats thumb"
        assert cache.fetch_info("cats.jpg") is not None

    def test_evict_infos(self, cache, raw):
        self._populate(cache)
        assert cache.evict_infos() == 2
        assert _keys(raw, "cache/info/") == []
        assert len(_keys(raw, "cache/image/")) == 3

    def test_purge(self, cache, raw):
        self._populate(cache)
        raw.put_object(Bucket="test-bucket", Key="unrelated/object", Body=b"x")
        assert cache.purge() == 5
        assert _keys(raw) == ["unrelated/object"]

    def test_evict_invalid(self, make_cache, raw):
        cache = make_cache(ttl=60)
        cache.put_info("cats.jpg", {"width": 1})
        info_key = cache.keyspace.info_key("cats.jpg")
        cache.client.put_tags("test-bucket", info_key, cache.policy.new_tags())
        raw.put_object(Bucket="test-bucket", Key="cache/image/untagged.png", Body=b"x")
        raw.put_object(
            Bucket="test-bucket",
            Key="cache/image/stale.png",
            Body=b"x",
            Tagging=f"{LAST_ACCESS_TIME_TAG}=1000",
        )
        raw.put_object(Bucket="test-bucket", Key="unrelated/object", Body=b"x")

        assert cache.evict_invalid() == 2
        assert _keys(raw) == [info_key, "unrelated/object"]


class FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.deleted = []
        self.tagged = []

    def get_object(self, bucket, key, if_modified_since=None):
        if self.error is not None:
            raise self.error
        return self.response

    def delete_object(self, bucket, key):
        self.deleted.append(key)

    def put_tags(self, bucket, key, tags):
        self.tagged.append(key)

    def close(self):
        pass


class TestStaleResponses:
    def _cache(self, client):
        return S3VariantCache(
            client, "test-bucket", ttl=60, executor=ThreadPoolExecutor(max_workers=2)
        )

    def test_not_modified_evicts(self):
        client = FakeClient(error=NotModified("304"))
        cache = self._cache(client)
        assert cache.fetch_info("cats.jpg") is None
        cache.shutdown()
        assert client.deleted == [cache.keyspace.info_key("cats.jpg")]
        assert client.tagged == []

    def test_stale_last_modified_evicts(self):
        # The server ignored If-Modified-Since and returned an old object.
        body = io.BytesIO(b"old variant")
        client = FakeClient(
            response={
                "Body": body,
                "LastModified": datetime.now(timezone.utc) - timedelta(hours=1),
            }
        )
        cache = self._cache(client)
        assert cache.new_variant_input_stream(CATS_PNG) is None
        cache.shutdown()
        assert client.deleted == [cache.keyspace.image_key(CATS_PNG)]
        assert body.closed

    def test_fresh_response(self):
        client = FakeClient(
            response={
                "Body": io.BytesIO(json.dumps({"width": 3}).encode()),
                "LastModified": datetime.now(timezone.utc),
            }
        )
        cache = self._cache(client)
        assert cache.fetch_info("cats.jpg")["width"] == 3
        cache.shutdown()
        assert client.deleted == []
        assert client.tagged == [cache.keyspace.info_key("cats.jpg")]


class SlowUploadClient:
    """Uploads take a while; records the order of calls."""

    def __init__(self, delay=0.5):
        self.delay = delay
        self.calls = []
        self.lock = threading.Lock()

    def _record(self, name):
        with self.lock:
            self.calls.append(name)

    def put_object(self, bucket, key, body, content_type=None, content_encoding=None):
        time.sleep(self.delay)
        self._record("put_object")

    def create_multipart_upload(self, bucket, key, content_type=None):
        self._record("create_multipart_upload")
        return "upload-1"

    def upload_part(self, bucket, key, upload_id, part_number, data):
        time.sleep(self.delay)
        self._record("upload_part")
        return f"etag-{part_number}"

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        self._record("complete_multipart_upload")

    def abort_multipart_upload(self, bucket, key, upload_id):
        self._record("abort_multipart_upload")

    def put_tags(self, bucket, key, tags):
        self._record("put_tags")

    def close(self):
        self._record("close")


class TestShutdown:
    @pytest.mark.parametrize("multipart_uploads", [True, False])
    @pytest.mark.parametrize("with_executor", [True, False])
    def test_waits_for_uploads(self, multipart_uploads, with_executor):
        client = SlowUploadClient()
        cache = S3VariantCache(
            client,
            "test-bucket",
            ttl=60,
            multipart_uploads=multipart_uploads,
            executor=ThreadPoolExecutor(max_workers=2) if with_executor else None,
        )
        stream = cache.new_variant_output_stream(CATS_PNG)
        stream.write(b"png data")
        stream.complete()
        stream.close()
        cache.shutdown()

        assert stream.completion.done()
        assert stream.completion.result() is True
        assert client.calls[-2:] == ["put_tags", "close"]

    def test_open_streams_do_not_block(self):
        client = SlowUploadClient()
        cache = S3VariantCache(client, "test-bucket", multipart_uploads=True)
        stream = cache.new_variant_output_stream(CATS_PNG)
        stream.write(b"png data")
        cache.shutdown()
        assert client.calls[-1] == "close"
        assert not stream.completion.done()
