"""Local image store validation and file handling."""
import io
import os

import pytest
from werkzeug.datastructures import FileStorage

from conftest import png_bytes, png_upload
from utils.errors import NotFoundError, ValidationError
from utils.image_utils import LocalImageStore, delete_images_quietly, validate_image_file


@pytest.fixture
def store(tmp_path):
    return LocalImageStore(str(tmp_path / "images"), "/api/uploads/", max_bytes=1024)


def _upload(content: bytes, filename: str, content_type: str = "image/png") -> FileStorage:
    return FileStorage(stream=io.BytesIO(content), filename=filename, content_type=content_type)


class TestValidation:

    def test_png_detected(self) -> None:
        content, ext = validate_image_file(png_upload())
        assert ext == "png"
        assert content == png_bytes()

    @pytest.mark.parametrize(
        "upload, message",
        [
            (_upload(png_bytes(), "notes.txt"), "Only image files are allowed"),
            (_upload(png_bytes(), "photo.png", "text/plain"), "Only image files are allowed"),
            (_upload(b"", "photo.png"), "Empty file"),
            (_upload(b"GIF89a but not really", "photo.gif", "image/gif"), "Invalid image data"),
            (_upload(png_bytes(), "noextension"), "Unsupported file name"),
        ],
    )
    def test_rejections(self, upload, message) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_image_file(upload)
        assert exc_info.value.errors == [{"field": "images", "message": message}]

    def test_size_limit(self) -> None:
        with pytest.raises(ValidationError):
            validate_image_file(png_upload(), max_bytes=10)


class TestLocalImageStore:

    def test_upload_and_delete(self, store) -> None:
        stored = store.upload(png_upload())

        assert stored["url"] == f"/api/uploads/{stored['external_id']}"
        assert stored["mime_type"] == "image/png"
        assert os.path.isfile(store.path_for(stored["external_id"]))

        assert store.delete(stored["external_id"]) is True
        assert store.delete(stored["external_id"]) is False

    @pytest.mark.parametrize("name", ["../secret.png", "", "a/b.png"])
    def test_unsafe_names_rejected(self, store, name) -> None:
        with pytest.raises(NotFoundError):
            store.path_for(name)

    def test_quiet_delete_reports_failures(self, store) -> None:
        import logging

        stored = store.upload(png_upload())
        failed = delete_images_quietly(store, [stored["external_id"], "../escape.png"], logging.getLogger("test"))
        assert failed == ["../escape.png"]
