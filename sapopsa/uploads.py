import os
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Optional
from urllib.parse import urljoin

from flask import current_app, request
from werkzeug.utils import secure_filename

from .errors import RequestTimeout, UpstreamError, ValidationError

IMAGE_ROUTE_PREFIX = "api/images"
IMAGE_MIMETYPES = {"image/png", "image/jpg", "image/jpeg"}


def make_file_name(original: str, timestamp_ms: Optional[int] = None) -> str:
    """Build ``<name-with-hyphens>-<timestamp><ext>`` from an uploaded file name."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    stem, extension = os.path.splitext(str(original or "").strip())
    hyphenated = "-".join(stem.lower().split(" "))
    safe_stem = secure_filename(hyphenated) or "file"
    return f"{safe_stem}-{timestamp_ms}{extension.lower()}"


def allowed_image(image_file) -> bool:
    extension = os.path.splitext(image_file.filename or "")[1].lower().lstrip(".")
    if extension not in current_app.config["ALLOWED_IMAGE_EXTENSIONS"]:
        return False
    mimetype = (image_file.mimetype or "").lower()
    return not mimetype or mimetype in IMAGE_MIMETYPES or mimetype == "application/octet-stream"


def validate_images(image_files: Iterable) -> List:
    accepted = []
    for image_file in image_files:
        if not image_file or not getattr(image_file, "filename", ""):
            continue
        if not allowed_image(image_file):
            raise ValidationError(
                "Unsupported image format. Upload PNG, JPG, or JPEG files."
            )
        accepted.append(image_file)
    return accepted


def _write_image(image_file, folder: str, timestamp_ms: int) -> str:
    filename = make_file_name(image_file.filename, timestamp_ms)
    stem, extension = os.path.splitext(filename)
    attempt = 0
    while True:
        destination = os.path.join(folder, filename)
        try:
            handle = open(destination, "xb")
        except FileExistsError:
            attempt += 1
            filename = f"{stem}-{attempt}{extension}"
            continue
        try:
            with handle:
                image_file.save(handle)
        except Exception:
            _unlink(folder, filename)
            raise
        return filename


def save_image(image_file) -> str:
    """Persist a single uploaded image and return its stored file name."""
    accepted = validate_images([image_file])
    if not accepted:
        raise ValidationError("An image file is required.")
    return save_images(accepted)[0]


def save_images(image_files) -> List[str]:
    """Write every image concurrently; all of them are stored or none are.

    The returned names keep the order the files were submitted in.
    """
    accepted = validate_images(image_files)
    if not accepted:
        return []

    folder = current_app.config["UPLOAD_FOLDER"]
    timeout = current_app.config["UPLOAD_TIMEOUT_SECONDS"]
    workers = max(1, min(current_app.config["UPLOAD_WORKERS"], len(accepted)))
    timestamp_ms = int(time.time() * 1000)
    logger = current_app.logger

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = [
            executor.submit(_write_image, image_file, folder, timestamp_ms)
            for image_file in accepted
        ]
        done, pending = wait(futures, timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    saved: List[str] = []
    failure: Optional[BaseException] = None
    for future in futures:
        if future not in done:
            continue
        error = future.exception()
        if error is None:
            saved.append(future.result())
        elif failure is None:
            failure = error

    if pending or failure is not None:
        remove_images(saved)
        for future in pending:
            future.add_done_callback(_discard_late_upload(folder))
        if pending:
            logger.warning(
                "Image upload timed out after %ss; %d file(s) rolled back",
                timeout,
                len(saved),
            )
            raise RequestTimeout("Uploading the images took too long. Please retry.")
        logger.warning("Image upload failed (%s); %d file(s) rolled back", failure, len(saved))
        raise UpstreamError("We could not store the uploaded image. Please try again.")

    return saved


def _discard_late_upload(folder: str):
    def callback(future):
        if future.cancelled() or future.exception() is not None:
            return
        _unlink(folder, future.result())

    return callback


def _unlink(folder: str, filename: str) -> None:
    try:
        os.remove(os.path.join(folder, str(filename)))
    except OSError:
        return


def remove_images(filenames) -> None:
    if not filenames:
        return
    if isinstance(filenames, str):
        filenames = [filenames]
    folder = current_app.config["UPLOAD_FOLDER"]
    for filename in filenames:
        if filename:
            _unlink(folder, filename)


def build_upload_url(filename: Optional[str]) -> str:
    if not filename:
        return ""
    base_url = current_app.config.get("HOST_URL") or request.host_url
    if not base_url.endswith("/"):
        base_url += "/"
    return urljoin(base_url, f"{IMAGE_ROUTE_PREFIX}/{filename}")
