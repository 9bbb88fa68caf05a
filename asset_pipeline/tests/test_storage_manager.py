import io

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from asset_pipeline.storage_manager import ObjectNotFoundError, StorageManager, StorageManagerError


def _client_error(code, operation="HeadObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    def __init__(self):
        self.objects = {}
        self.fail_with = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get_object(self, Bucket, Key, Range=None):
        self._maybe_fail()
        if (Bucket, Key) not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        data = self.objects[(Bucket, Key)]
        if Range:
            end = int(Range.split("-")[1])
            data = data[: end + 1]
        return {"Body": io.BytesIO(data)}

    def head_object(self, Bucket, Key):
        self._maybe_fail()
        if (Bucket, Key) not in self.objects:
            raise _client_error("404")
        return {"ContentLength": len(self.objects[(Bucket, Key)]), "ContentType": "image/png", "ETag": '"abc"'}

    def put_object(self, Bucket, Key, Body, ContentType):
        self._maybe_fail()
        self.objects[(Bucket, Key)] = Body

    def copy_object(self, Bucket, Key, CopySource):
        self._maybe_fail()
        self.objects[(Bucket, Key)] = self.objects[(CopySource["Bucket"], CopySource["Key"])]

    def delete_object(self, Bucket, Key):
        self._maybe_fail()
        self.objects.pop((Bucket, Key), None)


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def manager(s3):
    return StorageManager(default_bucket="default-bucket", region="us-east-1", client=s3)


def test_put_get_and_head(manager):
    manager.put("b", "k", b"hello world", "text/plain")

    assert manager.get("b", "k") == b"hello world"
    assert manager.head("b", "k") == {"size": 11, "content_type": "image/png", "etag": "abc"}


def test_get_head_reads_prefix(manager):
    manager.put(None, "k", b"0123456789", "application/octet-stream")
    assert manager.get_head(None, "k", 4) == b"0123"


def test_exists_false_on_404(manager):
    assert manager.exists("b", "missing") is False


def test_missing_object_raises_not_found(manager):
    with pytest.raises(ObjectNotFoundError):
        manager.get("b", "missing")


def test_copy_then_delete(manager):
    manager.put("b", "temp/a", b"x")
    manager.copy("b", "temp/a", "tenants/t/a")
    manager.delete("b", "temp/a")

    assert manager.exists("b", "tenants/t/a")
    assert not manager.exists("b", "temp/a")


def test_throttling_is_transient(manager, s3):
    s3.fail_with = _client_error("SlowDown", "PutObject")
    with pytest.raises(StorageManagerError) as excinfo:
        manager.put("b", "k", b"x")
    assert excinfo.value.transient is True
    assert excinfo.value.code == "SlowDown"


def test_access_denied_is_not_transient(manager, s3):
    s3.fail_with = _client_error("AccessDenied", "GetObject")
    with pytest.raises(StorageManagerError) as excinfo:
        manager.get("b", "k")
    assert excinfo.value.transient is False


def test_connection_errors_are_transient(manager, s3):
    s3.fail_with = EndpointConnectionError(endpoint_url="https://s3.example")
    with pytest.raises(StorageManagerError) as excinfo:
        manager.exists("b", "k")
    assert excinfo.value.transient is True


def test_missing_bucket_is_an_error(s3, monkeypatch):
    monkeypatch.delenv("S3_BUCKET_NAME", raising=False)
    from asset_pipeline import config

    config.get_storage_config.cache_clear()
    manager = StorageManager(client=s3)
    with pytest.raises(StorageManagerError, match="No bucket"):
        manager.get(None, "k")
    config.get_storage_config.cache_clear()
