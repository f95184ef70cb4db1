"""Product image uploads to Cloudinary using an unsigned upload preset."""
import logging
from typing import Optional

import httpx

import settings

logger = logging.getLogger(__name__)

UPLOAD_TIMEOUT = 30.0


class UploadError(Exception):
    pass


def upload_url() -> str:
    return f"https://api.cloudinary.com/v1_1/{settings.CLOUDINARY_CLOUD_NAME}/image/upload"


def upload_image(filename: str, content: bytes, content_type: Optional[str] = None,
                 client: Optional[httpx.Client] = None) -> str:
    """POST the file and return its durable https URL. Errors carry the service's own message."""
    if not settings.upload_configured():
        raise UploadError("Image upload is not configured: set CLOUDINARY_CLOUD_NAME and CLOUDINARY_UPLOAD_PRESET.")

    files = {"file": (filename, content, content_type or "application/octet-stream")}
    data = {"upload_preset": settings.CLOUDINARY_UPLOAD_PRESET}
    http = client or httpx.Client(timeout=UPLOAD_TIMEOUT)
    try:
        response = http.post(upload_url(), data=data, files=files)
    except httpx.HTTPError as exc:
        raise UploadError(f"Image upload failed: {exc}") from exc
    finally:
        if client is None:
            http.close()

    if response.is_error:
        try:
            error = response.json().get("error")
            detail = (error.get("message") if isinstance(error, dict) else error) or response.text
        except ValueError:
            detail = f"{response.reason_phrase}. Non-JSON response: {response.text[:200]}"
        logger.error("Image upload rejected (%s): %s", response.status_code, detail)
        raise UploadError(f"Image upload failed: {detail}")

    try:
        payload = response.json()
    except ValueError:
        raise UploadError(f"Could not read the upload response: {response.text[:200]}")
    url = payload.get("secure_url")
    if not url:
        raise UploadError("Image upload failed: the response did not include a URL.")
    logger.info("Image uploaded: %s", url)
    return url
