"""Captured still images on disk.

Stills live in a single directory as ``photo_<millis>.jpg`` and persist
until deleted through the API. The same directory holds per-session stream
scratch files (``stream_<session>.jpg``) and in-flight temporaries
(leading dot); neither shows up in listings.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pidash.errors import NotFoundError, ValidationError
from pidash.observability import get_logger

logger = get_logger(__name__)

PHOTO_PREFIX = "photo_"
STREAM_PREFIX = "stream_"
IMAGE_SUFFIX = ".jpg"
URL_PREFIX = "/images"

_DIGITS = re.compile(r"\d+")
_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class CapturedImage:
    """A still on disk.

    Attributes:
        filename: Bare file name, e.g. ``photo_1718000000000.jpg``.
        url: Path the static mount serves it under.
        timestamp: Capture time in milliseconds since the epoch.
    """

    filename: str
    url: str
    timestamp: int

    @classmethod
    def from_filename(cls, filename: str) -> CapturedImage:
        match = _DIGITS.search(filename)
        return cls(
            filename=filename,
            url=f"{URL_PREFIX}/{filename}",
            timestamp=int(match.group()) if match else 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "url": self.url, "timestamp": self.timestamp}


def now_millis() -> int:
    return time.time_ns() // 1_000_000


class ImageStore:
    """Names, lists and deletes captured stills.

    Example:
        store = ImageStore(Path("~/.pidash/data/images").expanduser())
        target = store.photo_path(now_millis())
        ...  # capture into store.temp_path(target), then os.replace
        for image in store.list():
            print(image.url)
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def ensure(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def photo_path(self, millis: int) -> Path:
        return self.directory / f"{PHOTO_PREFIX}{millis}{IMAGE_SUFFIX}"

    def temp_path(self, final: Path) -> Path:
        """Hidden sibling of ``final`` that keeps the .jpg extension."""
        return final.with_name(f".{final.stem}.tmp{IMAGE_SUFFIX}")

    def scratch_path(self, session_id: str) -> Path:
        """Per-session file the stream loop captures into."""
        return self.directory / f"{STREAM_PREFIX}{session_id}{IMAGE_SUFFIX}"

    def list(self) -> list[CapturedImage]:
        """Stills in the directory, newest first.

        A missing directory lists as empty.
        """
        if not self.directory.is_dir():
            return []
        images = [
            CapturedImage.from_filename(entry.name)
            for entry in self.directory.iterdir()
            if entry.name.endswith(IMAGE_SUFFIX)
            and not entry.name.startswith(".")
            and "stream" not in entry.name
            and entry.is_file()
        ]
        images.sort(key=lambda image: image.timestamp, reverse=True)
        return images

    def delete(self, filename: str) -> None:
        """Delete one still by bare file name.

        Raises:
            ValidationError: Name contains a path component.
            NotFoundError: No such file.
        """
        if not _SAFE_NAME.match(filename) or "/" in filename or ".." in filename:
            raise ValidationError(f"Invalid image filename: {filename!r}")
        path = self.directory / filename
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError(f"Image not found: {filename}") from None
        logger.info("Image deleted", filename=filename)
