#!/usr/bin/env python3

"""
utils.py

Utility helpers shared across the package:
- filename sanitization
- file checksums
- UTC timestamps and ISO conversion
- batching
- signal handlers
"""

from __future__ import annotations

import datetime
import hashlib
import re
import signal
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, TypeVar

import unicodedata

T = TypeVar("T")


def sanitize(s: Optional[str]) -> str:
    if not s:
        return "unknown"
    s = unicodedata.normalize("NFKD", s).encode("ascii", "ignore").decode("ascii")
    s = re.sub(r'[<>:"/\\|?*#%\x00-\x1F]', "_", s)
    s = re.sub(r"\s+", "_", s.strip())
    return s[:200] or "unknown"


def file_checksum(path: Path, algorithm: str = "sha1") -> str:
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_iso(dt: Optional[datetime.datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    # Graph returns a trailing Z which fromisoformat only accepts from 3.11
    cleaned = value.strip().replace("Z", "+00:00")
    try:
        dt = datetime.datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def from_timestamp(ts: float) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    it = iter(items)
    size = max(1, size)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def format_bytes(num: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num) < 1024:
            return f"{num:.2f} {unit}"
        num /= 1024
    return f"{num:.2f} TB"


def ensure_dirs(*paths: Path) -> None:
    for p in paths:
        p.mkdir(parents=True, exist_ok=True)


def install_signal_handlers(on_interrupt):
    signal.signal(signal.SIGINT, on_interrupt)
    signal.signal(signal.SIGTERM, on_interrupt)
