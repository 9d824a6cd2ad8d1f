import logging
from contextlib import asynccontextmanager

from fastapi import Request, UploadFile
from starlette.requests import ClientDisconnect

import config
from errors import InferenceError, PayloadTooLarge, ValidationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_form(request: Request):
    """Parse the multipart body; uploaded files are closed on exit."""
    try:
        form = await request.form()
    except ClientDisconnect as e:
        raise InferenceError("Client disconnected while uploading") from e
    try:
        yield form
    finally:
        await form.close()


def select_image(form):
    """First ``image`` part, file or plain value, or None."""
    parts = form.getlist("image")
    return parts[0] if parts else None


def validate_upload(image) -> UploadFile:
    """Reject a missing image field or a non-image MIME type.

    Plain text form values carry no MIME metadata and count as invalid.
    """
    if image is None:
        raise ValidationError("Image not provided")

    content_type = getattr(image, "content_type", None)
    logger.info("Uploaded image: filename=%s content_type=%s", getattr(image, "filename", None), content_type)

    if not content_type or not content_type.startswith("image/"):
        raise ValidationError("Invalid image format. Please upload a valid image.")
    return image


async def read_upload(
    image: UploadFile,
    limit: int = config.MAX_UPLOAD_BYTES,
    chunk_size: int = config.UPLOAD_CHUNK_SIZE,
) -> bytes:
    """Buffer the whole upload, chunks joined in arrival order.

    Either the complete byte string is returned or an error is raised; a
    partially read stream never reaches inference.
    """
    chunks = []
    received = 0
    while True:
        try:
            chunk = await image.read(chunk_size)
        except Exception as e:
            raise InferenceError(f"Error reading the image stream: {e}") from e
        if not chunk:
            break
        received += len(chunk)
        if received > limit:
            raise PayloadTooLarge(f"Image exceeds the maximum upload size of {limit} bytes")
        chunks.append(chunk)

    logger.debug("Buffered %d bytes from %s", received, image.filename)
    return b"".join(chunks)
