"""Upload pipeline — multipart parsing and image persistence.

Files land in the broker's image directory under fresh random names so
that nothing a client sends can choose (or collide with) a path.
"""
from __future__ import annotations

import logging
import re
import shutil
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

_CRLF = b"\r\n"
_HEADER_END = b"\r\n\r\n"
_FILENAME_RE = re.compile(r'filename="([^"]+)"')
_CONTENT_TYPE_RE = re.compile(r"Content-Type:\s*[\w.+-]+/([\w.+-]+)", re.IGNORECASE)
_EXTENSION_RE = re.compile(r"^[A-Za-z0-9]{1,10}$")
DEFAULT_EXTENSION = "png"


def _normalize_extension(ext: str) -> str:
    ext = ext.lower()
    return "jpg" if ext == "jpeg" else ext


def _split(body: bytes, delimiter: bytes) -> list[bytes]:
    parts: list[bytes] = []
    start = 0
    while start < len(body):
        idx = body.find(delimiter, start)
        if idx == -1:
            parts.append(body[start:])
            break
        if idx > start:
            parts.append(body[start:idx])
        start = idx + len(delimiter)
    return parts


def _extension_for(headers: str, filename: str) -> str:
    suffix = Path(filename).suffix.lstrip(".")
    if suffix and _EXTENSION_RE.match(suffix):
        return _normalize_extension(suffix)
    match = _CONTENT_TYPE_RE.search(headers)
    if match and _EXTENSION_RE.match(match.group(1)):
        return _normalize_extension(match.group(1))
    return DEFAULT_EXTENSION


def parse_multipart_and_save(body: bytes, boundary: str, image_dir: Path) -> list[str]:
    """Split a multipart/form-data body and write each file part to image_dir.

    Parts without a filename or without a header/body separator are skipped.
    Returns the absolute paths written, in body order.
    """
    image_dir = Path(image_dir)
    image_dir.mkdir(parents=True, exist_ok=True)

    paths: list[str] = []
    for part in _split(body, b"--" + boundary.encode("utf-8")):
        head = part[:500].strip()
        if not head or head == b"--":
            continue

        header_end = part.find(_HEADER_END)
        if header_end == -1:
            logger.debug("Skipping multipart part without header separator")
            continue

        headers = part[:header_end].decode("utf-8", errors="replace")
        match = _FILENAME_RE.search(headers)
        if not match:
            logger.debug("Skipping multipart part without filename")
            continue

        data = part[header_end + len(_HEADER_END):]
        if data.endswith(_CRLF):
            data = data[: -len(_CRLF)]

        ext = _extension_for(headers, match.group(1))
        target = (image_dir / f"{uuid.uuid4()}.{ext}").resolve()
        target.write_bytes(data)
        paths.append(str(target))

    return paths


def persist_images(source_paths: list[str], image_dir: Path) -> list[str]:
    """Copy images into image_dir under fresh names, skipping unreadable sources."""
    image_dir = Path(image_dir)
    image_dir.mkdir(parents=True, exist_ok=True)
    persisted: list[str] = []
    for src in source_paths:
        source = Path(src)
        if not source.is_file():
            logger.error("Image file not found, skipping: %s", src)
            continue
        ext = _normalize_extension(source.suffix.lstrip(".")) or DEFAULT_EXTENSION
        dest = (image_dir / f"{uuid.uuid4()}.{ext}").resolve()
        try:
            shutil.copyfile(source, dest)
        except OSError as exc:
            logger.error("Failed to persist image %s: %s", src, exc)
            continue
        persisted.append(str(dest))
    return persisted


def cleanup_images(image_dir: Path) -> None:
    """Remove the image directory and everything in it."""
    image_dir = Path(image_dir)
    if not image_dir.exists():
        return
    try:
        shutil.rmtree(image_dir)
        logger.info("Cleaned up temp images at %s", image_dir)
    except OSError as exc:
        logger.error("Failed to clean temp images at %s: %s", image_dir, exc)
