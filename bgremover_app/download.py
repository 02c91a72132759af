"""Fetch a finished cutout and save it under a name derived from the upload."""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


def append_new_to_name(name: str, suffix: str = "-new") -> str:
    """`cat.png` -> `cat-new.png`; the marker goes before the first dot."""
    dot = name.find(".")
    if dot == -1:
        return name + suffix
    return name[:dot] + suffix + name[dot:]


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback name and the exact UTF-8 name (RFC 6266)."""
    fallback = "".join(c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename)
    encoded = quote(filename, safe="")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{encoded}"


def fetch_output(url: str, timeout: int = 30) -> bytes:
    resp = requests.get(url, timeout=(5, timeout))
    resp.raise_for_status()
    return resp.content


def download_photo(url: str, filename: str, dest_dir: Path, timeout: int = 30) -> Path:
    """Download `url` into `dest_dir/filename` and return the written path."""
    content = fetch_output(url, timeout=timeout)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    path = dest_dir / filename
    path.write_bytes(content)
    logger.info("Downloaded %s -> %s", url, path)
    return path
