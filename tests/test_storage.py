"""
Tests for the storage backends and image upload processing.
"""

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from PIL import Image

from config.settings import config
from storage.base import Storage
from storage.images import note_image_key, process_image_upload, user_image_key
from storage.local import LocalStorage
from storage.s3 import S3Storage


def _image(fmt="PNG", size=(40, 30), mode="RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, "green").save(buf, format=fmt)
    return buf.getvalue()


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestKeys:
    @pytest.mark.parametrize("key", ["", "/", "a/../b", "a//b", "./a"])
    def test_rejects_unsafe_keys(self, key):
        with pytest.raises(ValueError):
            Storage.normalize_key(key)

    def test_normalizes_separators(self):
        assert Storage.normalize_key("\\users\\u1\\a.png") == "users/u1/a.png"

    def test_key_layout(self):
        assert user_image_key("u1", "png").startswith("users/u1/")
        key = note_image_key("o1", "n1", "webp")
        assert key.startswith("orgs/o1/notes/n1/") and key.endswith(".webp")


class TestLocalStorage:
    def test_put_get_delete(self, tmp_path):
        storage = LocalStorage(tmp_path)
        stored = storage.put("users/u1/a.png", b"data")

        assert stored.size_bytes == 4 and stored.content_type == "image/png"
        assert storage.exists("users/u1/a.png")
        assert storage.get("users/u1/a.png") == b"data"
        assert storage.url("users/u1/a.png") == "/api/v1/uploads/users/u1/a.png"

        assert storage.delete("users/u1/a.png") is True
        assert storage.delete("users/u1/a.png") is False
        with pytest.raises(FileNotFoundError):
            storage.get("users/u1/a.png")

    def test_cannot_escape_root(self, tmp_path):
        with pytest.raises(ValueError):
            LocalStorage(tmp_path).put("../outside.txt", b"x")


class TestS3Storage:
    def test_put_and_url(self):
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://bucket.s3/signed"
        storage = S3Storage("bucket", client=client)

        storage.put("/orgs/o1/logo.png", b"img", "image/png")

        client.put_object.assert_called_once_with(
            Bucket="bucket", Key="orgs/o1/logo.png", Body=b"img", ContentType="image/png"
        )
        assert storage.url("orgs/o1/logo.png", expires_in=60) == "https://bucket.s3/signed"
        client.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "bucket", "Key": "orgs/o1/logo.png"}, ExpiresIn=60
        )

    def test_missing_key(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
        client.head_object.side_effect = _client_error("404", "HeadObject")
        storage = S3Storage("bucket", client=client)

        with pytest.raises(FileNotFoundError):
            storage.get("a.png")
        assert storage.exists("a.png") is False
        assert storage.delete("a.png") is False
        client.delete_object.assert_not_called()

    def test_other_errors_propagate(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("AccessDenied", "GetObject")
        with pytest.raises(ClientError):
            S3Storage("bucket", client=client).get("a.png")


class TestImageProcessing:
    def test_crop_and_downscale(self):
        processed = process_image_upload(_image(size=(400, 200)), crop=(0, 0, 300, 150), max_size=100)
        assert (processed.width, processed.height) == (100, 50)
        assert processed.content_type == "image/png" and processed.extension == "png"

    def test_palette_gif_keeps_its_format(self):
        processed = process_image_upload(_image(fmt="GIF", size=(10, 10), mode="P"))
        assert processed.extension == "gif"

    @pytest.mark.parametrize("crop", [(0, 0, 50, 10), (-1, 0, 5, 5), (0, 0, 0, 5)])
    def test_crop_outside_image(self, crop):
        with pytest.raises(ValueError, match="Crop area"):
            process_image_upload(_image(size=(40, 30)), crop=crop)

    def test_rejects_non_images(self):
        with pytest.raises(ValueError, match="not a valid image"):
            process_image_upload(b"plain text")
        with pytest.raises(ValueError, match="empty"):
            process_image_upload(b"")

    def test_rejects_unsupported_format(self):
        with pytest.raises(ValueError, match="Unsupported image format: BMP"):
            process_image_upload(_image(fmt="BMP"))

    def test_rejects_uploads_over_the_byte_cap(self):
        with pytest.raises(ValueError, match="smaller than 3MB"):
            process_image_upload(b"\x89PNG" + b"\0" * (config.max_upload_bytes - 3))

    def test_accepts_upload_at_the_byte_cap_boundary(self):
        data = _image()
        assert len(data) <= config.max_upload_bytes
        assert process_image_upload(data).extension == "png"

    def test_rejects_dimensions_over_the_pixel_cap(self):
        # a blank bilevel image compresses to a few kilobytes
        data = _image(size=(6000, 6000), mode="1")
        assert len(data) < config.max_upload_bytes
        with pytest.raises(ValueError, match=r"too large \(6000x6000 pixels\)"):
            process_image_upload(data)

    def test_decompression_bomb_is_an_invalid_image(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        with pytest.raises(ValueError, match="not a valid image"):
            process_image_upload(_image(size=(40, 30)))
