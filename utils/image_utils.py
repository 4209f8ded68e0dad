"""Image store for report photos: validation, local persistence and deletion."""
import hashlib
import io
import os
import uuid
from typing import Dict, Iterable, List, Tuple

from flask import current_app
from PIL import Image, UnidentifiedImageError
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from utils.errors import NotFoundError, ServiceError, ValidationError

ALLOWED_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}
DEFAULT_MAX_IMAGE_BYTES = 5 * 1024 * 1024  # 5 MB

# Pillow format name -> extension written to disk
_FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "GIF": "gif",
    "WEBP": "webp",
}


class ImageStoreError(ServiceError):
    """Raised when the backing store cannot save or remove an image."""

    default_message = "Image storage failed"


def _fail_if(condition: bool, message: str) -> None:
    if condition:
        raise ValidationError.for_field("images", message)


def get_mime_type(ext: str) -> str:
    mapping = {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "gif": "image/gif",
        "webp": "image/webp",
    }
    return mapping.get(ext, "application/octet-stream")


def compute_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def validate_image_file(file: FileStorage, max_bytes: int = DEFAULT_MAX_IMAGE_BYTES) -> Tuple[bytes, str]:
    _fail_if(not file, "No file provided")
    filename = secure_filename(file.filename or "")
    _fail_if(not filename or "." not in filename, "Unsupported file name")
    ext = filename.rsplit(".", 1)[1].lower()
    _fail_if(ext not in ALLOWED_IMAGE_EXTENSIONS, "Only image files are allowed")
    if file.mimetype:
        _fail_if(not file.mimetype.startswith("image/"), "Only image files are allowed")

    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    _fail_if(size == 0, "Empty file")
    _fail_if(size > max_bytes, "File exceeds size limits")

    content = file.read()
    _fail_if(len(content) > max_bytes, "File exceeds size limits")

    try:
        with Image.open(io.BytesIO(content)) as img:
            detected = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValidationError.for_field("images", "Invalid image data") from exc
    _fail_if(detected not in _FORMAT_EXTENSIONS, "Invalid image data")

    file.stream.seek(0)
    return content, _FORMAT_EXTENSIONS[detected]


class LocalImageStore:
    """Stores images on local disk and serves them under ``base_url``."""

    def __init__(self, upload_dir: str, base_url: str, max_bytes: int = DEFAULT_MAX_IMAGE_BYTES) -> None:
        self.upload_dir = upload_dir
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes

    def path_for(self, external_id: str) -> str:
        safe_name = secure_filename(external_id or "")
        if not safe_name or safe_name != external_id:
            raise NotFoundError("Image not found")
        abs_root = os.path.abspath(self.upload_dir)
        abs_path = os.path.abspath(os.path.join(abs_root, safe_name))
        if not abs_path.startswith(abs_root + os.sep):
            raise NotFoundError("Image not found")
        return abs_path

    def upload(self, file: FileStorage) -> Dict:
        image_bytes, ext = validate_image_file(file, max_bytes=self.max_bytes)
        external_id = f"{uuid.uuid4().hex}.{ext}"
        try:
            os.makedirs(self.upload_dir, exist_ok=True)
            with open(os.path.join(self.upload_dir, external_id), "wb") as f:
                f.write(image_bytes)
        except OSError as exc:
            raise ImageStoreError("Could not store uploaded image") from exc
        return {
            "url": f"{self.base_url}/{external_id}",
            "external_id": external_id,
            "mime_type": get_mime_type(ext),
            "image_hash": compute_hash(image_bytes),
        }

    def delete(self, external_id: str) -> bool:
        path = self.path_for(external_id)
        if not os.path.isfile(path):
            return False
        try:
            os.remove(path)
        except OSError as exc:
            raise ImageStoreError(f"Could not delete image {external_id}") from exc
        return True


def get_image_store(app=None):
    app = app or current_app
    store = app.extensions.get("image_store")
    if store is None:
        store = LocalImageStore(
            app.config["IMAGE_UPLOAD_FOLDER"],
            app.config.get("IMAGE_BASE_URL", "/api/uploads"),
            max_bytes=int(app.config.get("MAX_IMAGE_UPLOAD_BYTES", DEFAULT_MAX_IMAGE_BYTES)),
        )
        app.extensions["image_store"] = store
    return store


def delete_images_quietly(store, external_ids: Iterable[str], logger) -> List[str]:
    """Delete each image independently; failures are logged and returned, never raised."""
    failed: List[str] = []
    for external_id in external_ids:
        try:
            store.delete(external_id)
        except Exception:
            logger.warning("Image deletion failed", extra={"external_id": external_id}, exc_info=True)
            failed.append(external_id)
    return failed
