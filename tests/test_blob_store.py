"""Tests for the S3 and local blob store adapters."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from transcode_service.blob_store import (
    LocalBlobStore,
    S3BlobStore,
    build_blob_store,
)
from transcode_service.errors import BlobNotFoundError, BlobStoreError
from transcode_service.models import BlobStoreConfig


def _client_error(code, operation="HeadObject"):
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, operation)


class TestS3BlobStore:
    def test_download_returns_size(self, tmp_path):
        client = MagicMock()
        dest = tmp_path / "staged" / "input.mp4"

        def fake_download(bucket, key, filename):
            with open(filename, "wb") as f:
                f.write(b"12345")

        client.download_file.side_effect = fake_download
        store = S3BlobStore("test-bucket", client)

        assert store.download("uploads/video.mp4", dest) == 5
        client.download_file.assert_called_once_with("test-bucket", "uploads/video.mp4", str(dest))

    @pytest.mark.parametrize("code", ["404", "NoSuchKey", "NotFound"])
    def test_download_missing_key(self, tmp_path, code):
        client = MagicMock()
        client.download_file.side_effect = _client_error(code)
        store = S3BlobStore("test-bucket", client)

        with pytest.raises(BlobNotFoundError) as exc_info:
            store.download("uploads/missing.mp4", tmp_path / "x.mp4")
        assert exc_info.value.key == "uploads/missing.mp4"

    def test_download_access_denied(self, tmp_path):
        client = MagicMock()
        client.download_file.side_effect = _client_error("403")
        store = S3BlobStore("test-bucket", client)

        with pytest.raises(BlobStoreError) as exc_info:
            store.download("uploads/video.mp4", tmp_path / "x.mp4")
        assert not isinstance(exc_info.value, BlobNotFoundError)

    def test_upload_sets_metadata_and_content_type(self, tmp_path):
        client = MagicMock()
        src = tmp_path / "out.mp4"
        src.write_bytes(b"data")
        store = S3BlobStore("test-bucket", client)

        location = store.upload(src, "uploads/video_720p30av1.mp4", {"worker": "transcode-worker"})

        assert location == "s3://test-bucket/uploads/video_720p30av1.mp4"
        client.upload_file.assert_called_once_with(
            str(src),
            "test-bucket",
            "uploads/video_720p30av1.mp4",
            ExtraArgs={"Metadata": {"worker": "transcode-worker"}, "ContentType": "video/mp4"},
        )

    def test_upload_failure(self, tmp_path):
        client = MagicMock()
        client.upload_file.side_effect = _client_error("500", "PutObject")
        store = S3BlobStore("test-bucket", client)
        with pytest.raises(BlobStoreError):
            store.upload(tmp_path / "out.mp4", "uploads/out.mp4")

    def test_exists(self):
        client = MagicMock()
        store = S3BlobStore("test-bucket", client)
        assert store.exists("uploads/video.mp4") is True

        client.head_object.side_effect = _client_error("404")
        assert store.exists("uploads/video.mp4") is False

    def test_from_config_uses_path_style(self):
        config = BlobStoreConfig(backend="s3", bucket="media", endpoint_url="http://localhost:4568")
        with patch("boto3.session.Session") as session_cls:
            store = S3BlobStore.from_config(config)

        session_cls.assert_called_once_with(
            aws_access_key_id="S3RVER",
            aws_secret_access_key="S3RVER",
            region_name="us-east-1",
        )
        _, kwargs = session_cls.return_value.client.call_args
        assert kwargs["endpoint_url"] == "http://localhost:4568"
        assert kwargs["config"].s3 == {"addressing_style": "path"}
        assert store.bucket == "media"


class TestLocalBlobStore:
    def test_upload_and_download(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "blobs"))
        src = tmp_path / "a.mp4"
        src.write_bytes(b"video bytes")

        store.upload(src, "uploads/a.mp4", {"resolution-preset": "720p30av1"})
        assert store.exists("uploads/a.mp4")
        assert store.read_metadata("uploads/a.mp4") == {"resolution-preset": "720p30av1"}

        dest = tmp_path / "staged" / "a.mp4"
        assert store.download("uploads/a.mp4", dest) == len(b"video bytes")
        assert dest.read_bytes() == b"video bytes"

    def test_upload_overwrites(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "blobs"))
        src = tmp_path / "a.mp4"
        src.write_bytes(b"first")
        store.upload(src, "out.mp4")
        src.write_bytes(b"second")
        store.upload(src, "out.mp4")
        dest = tmp_path / "dest.mp4"
        store.download("out.mp4", dest)
        assert dest.read_bytes() == b"second"

    def test_missing_key(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "blobs"))
        with pytest.raises(BlobNotFoundError):
            store.download("uploads/missing.mp4", tmp_path / "x.mp4")
        assert store.read_metadata("uploads/missing.mp4") == {}

    def test_key_cannot_escape_root(self, tmp_path):
        store = LocalBlobStore(str(tmp_path / "blobs"))
        with pytest.raises(BlobStoreError):
            store.exists("../outside.mp4")


def test_build_blob_store_selects_backend(tmp_path):
    local = build_blob_store(BlobStoreConfig(backend="local", local_root=str(tmp_path)))
    assert isinstance(local, LocalBlobStore)

    with patch("boto3.session.Session"):
        s3 = build_blob_store(BlobStoreConfig(backend="s3"))
    assert isinstance(s3, S3BlobStore)
