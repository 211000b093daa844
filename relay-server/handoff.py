"""Artifact handoff: upload recorded videos to the object store and serve them back."""

import base64
import binascii
import logging
import time
import unicodedata
import uuid
from typing import Callable, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from config import MAX_UPLOAD_BYTES, STORAGE_PREFIX
from storage import ObjectNotFound, ObjectStore, StorageError

logger = logging.getLogger("relay.handoff")

MAX_FILENAME_LENGTH = 200


class RangeNotSatisfiable(ValueError):
    pass


def valid_filename(name) -> bool:
    """A bare file name: no path separators, no '..', no control characters."""
    if not isinstance(name, str) or not name or len(name) > MAX_FILENAME_LENGTH:
        return False
    if "/" in name or "\\" in name or ".." in name:
        return False
    return not any(unicodedata.category(c).startswith("C") for c in name)


def storage_path(stored_filename: str) -> str:
    return f"{STORAGE_PREFIX}/{stored_filename}"


def decode_blob(blob: str) -> bytes:
    """Decode a base64 payload, tolerating a data: URL prefix."""
    if blob.startswith("data:") and "," in blob:
        blob = blob.split(",", 1)[1]
    return base64.b64decode(blob, validate=True)


def parse_range(header: Optional[str], size: int) -> Optional[tuple[int, int]]:
    """Parse a single `bytes=` Range header into an inclusive (start, end).

    Returns None when the header is absent or should be ignored
    (other units, multiple ranges, malformed). Raises RangeNotSatisfiable
    when the range lies outside the object.
    """
    if not header or not header.startswith("bytes="):
        return None
    ranges = header[len("bytes="):].strip()
    if "," in ranges or "-" not in ranges:
        return None
    first, last = (part.strip() for part in ranges.split("-", 1))
    try:
        if not first:
            suffix = int(last)
            if suffix <= 0 or size == 0:
                raise RangeNotSatisfiable(header)
            return max(0, size - suffix), size - 1
        start = int(first)
        end = int(last) if last else size - 1
    except ValueError:
        return None
    if start < 0 or end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiable(header)
    return start, min(end, size - 1)


def _failure(status: int, error: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status)


def create_handoff_router(get_store: Callable[[], ObjectStore], max_upload_bytes: int = MAX_UPLOAD_BYTES) -> APIRouter:
    router = APIRouter(prefix="/api")
    # base64 inflates by 4/3; allow headroom for the JSON envelope
    max_body_bytes = max_upload_bytes * 4 // 3 + 64 * 1024

    @router.post("/upload")
    async def upload(request: Request):
        """Store an uploaded recording and return its public URL."""
        request_id = uuid.uuid4().hex
        started = time.time()

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > max_body_bytes:
            logger.warning(f"[{request_id}] Upload body too large: {content_length} bytes")
            return _failure(413, f"Upload exceeds {max_upload_bytes} bytes")

        try:
            body = await request.json()
        except ValueError:
            return _failure(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return _failure(400, "Request body must be a JSON object")

        video_blob = body.get("videoBlob")
        filename = body.get("filename")
        device_id = body.get("deviceId")
        if not video_blob or not filename or not device_id:
            logger.warning(
                f"[{request_id}] Missing required fields "
                f"(videoBlob={bool(video_blob)}, filename={bool(filename)}, deviceId={bool(device_id)})"
            )
            return _failure(400, "Missing required fields: videoBlob, filename, deviceId")
        if not isinstance(video_blob, str) or not isinstance(device_id, str):
            return _failure(400, "videoBlob and deviceId must be strings")
        if not valid_filename(filename):
            return _failure(400, "Invalid filename")

        try:
            data = decode_blob(video_blob)
        except (binascii.Error, ValueError):
            return _failure(400, "videoBlob is not valid base64")
        if len(data) > max_upload_bytes:
            logger.warning(f"[{request_id}] Decoded upload too large: {len(data)} bytes")
            return _failure(413, f"Upload exceeds {max_upload_bytes} bytes")

        stored_filename = f"{uuid.uuid4().hex}_{filename}"
        path = storage_path(stored_filename)
        logger.info(f"[{request_id}] Uploading {path} for {device_id} ({len(data) / 1024 / 1024:.2f} MB)")

        try:
            video_url = await get_store().put(path, data)
        except StorageError as e:
            logger.error(f"[{request_id}] Upload failed: {e}")
            return _failure(500, f"Upload failed: {e}")
        except Exception:
            logger.exception(f"[{request_id}] Upload process failed")
            return _failure(500, "Internal server error")

        logger.info(f"[{request_id}] Upload completed in {time.time() - started:.2f}s: {video_url}")
        return JSONResponse({"success": True, "videoUrl": video_url, "filename": stored_filename})

    @router.get("/video/{filename}")
    async def get_video(filename: str, request: Request):
        """Serve a stored recording.

        Clients asking for JSON get a pointer to the public URL; everyone
        else gets the bytes, with single-range support for seeking.
        """
        if not valid_filename(filename):
            return _failure(400, "Invalid filename")
        store = get_store()
        path = storage_path(filename)

        if "application/json" in request.headers.get("accept", ""):
            return JSONResponse({"success": True, "videoUrl": store.public_url(path), "filename": filename})

        try:
            obj = await store.get(path)
        except ObjectNotFound:
            return _failure(404, "Video not found")
        except StorageError as e:
            logger.error(f"Get video {filename} failed: {e}")
            return _failure(500, "Failed to get video")

        headers = {"Accept-Ranges": "bytes"}
        try:
            byte_range = parse_range(request.headers.get("range"), obj.size)
        except RangeNotSatisfiable:
            headers["Content-Range"] = f"bytes */{obj.size}"
            return Response(status_code=416, headers=headers)

        if byte_range is None:
            return Response(content=obj.data, media_type=obj.content_type, headers=headers)

        start, end = byte_range
        headers["Content-Range"] = f"bytes {start}-{end}/{obj.size}"
        return Response(
            content=obj.data[start:end + 1],
            status_code=206,
            media_type=obj.content_type,
            headers=headers,
        )

    return router
