"""Image encoding helpers.

The daemon itself never decodes camera output; the external capture tools
write finished JPEGs. OpenCV is used only to synthesize frames for the
digital twin (test patterns standing in for a camera), behind the
ImageEncoder protocol so tests can swap in a trivial encoder.

Usage:
    encoder = CV2ImageEncoder()
    jpeg = render_test_pattern(640, 480, ["DIGITAL TWIN", "frame 12"], encoder)
    assert is_jpeg(jpeg)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "CV2ImageEncoder",
    "ImageEncoder",
    "JPEG_MAGIC",
    "is_jpeg",
    "render_test_pattern",
]

#: Start-of-image marker every JPEG begins with.
JPEG_MAGIC = b"\xff\xd8"

_GRID_SPACING = 40
_DEFAULT_JPEG_QUALITY = 85


@runtime_checkable
class ImageEncoder(Protocol):
    """Protocol for the two drawing/encoding operations the twin needs."""

    def encode_jpeg(self, img: NDArray[Any], quality: int = 85) -> bytes:
        """Encode a BGR or grayscale array to JPEG bytes.

        Raises:
            ValueError: quality outside 1-100 or encoding failure.
        """
        ...  # pragma: no cover

    def put_text(
        self,
        img: NDArray[Any],
        text: str,
        position: tuple[int, int],
        scale: float,
        color: int | tuple[int, int, int],
        thickness: int,
    ) -> None:
        """Draw ``text`` onto ``img`` in place."""
        ...  # pragma: no cover


class CV2ImageEncoder(ImageEncoder):
    """OpenCV implementation of ImageEncoder.

    cv2 is imported on construction rather than at module import, so code
    paths that never synthesize frames do not pay for loading OpenCV.
    """

    def __init__(self) -> None:
        import cv2

        self._cv2 = cv2

    def encode_jpeg(self, img: NDArray[Any], quality: int = 85) -> bytes:
        if not 1 <= quality <= 100:
            raise ValueError(f"quality must be 1-100, got {quality}")
        success, data = self._cv2.imencode(
            ".jpg", img, [self._cv2.IMWRITE_JPEG_QUALITY, quality]
        )
        if not success:
            raise ValueError(
                f"JPEG encoding failed for image shape={img.shape}, dtype={img.dtype}"
            )
        return data.tobytes()

    def put_text(
        self,
        img: NDArray[Any],
        text: str,
        position: tuple[int, int],
        scale: float,
        color: int | tuple[int, int, int],
        thickness: int,
    ) -> None:
        self._cv2.putText(
            img,
            text,
            position,
            self._cv2.FONT_HERSHEY_SIMPLEX,
            scale,
            color,
            thickness,
        )


def render_test_pattern(
    width: int,
    height: int,
    lines: Sequence[str],
    encoder: ImageEncoder,
    quality: int = _DEFAULT_JPEG_QUALITY,
) -> bytes:
    """Render a grid test pattern with text overlay and return JPEG bytes.

    Args:
        width: Image width in pixels (must be positive).
        height: Image height in pixels (must be positive).
        lines: Text lines drawn top-left, one per row.
        encoder: Encoder used for text drawing and JPEG compression.
        quality: JPEG quality 1-100.

    Returns:
        JPEG-encoded image of exactly ``width`` x ``height``.

    Raises:
        ValueError: Non-positive dimensions or encoder failure.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid dimensions {width}x{height}")

    img: NDArray[Any] = np.zeros((height, width, 3), dtype=np.uint8)
    img[::_GRID_SPACING, :] = (60, 60, 60)
    img[:, ::_GRID_SPACING] = (60, 60, 60)
    img[height // 2, :] = (0, 200, 0)
    img[:, width // 2] = (0, 200, 0)

    scale = max(0.4, min(width, height) / 720)
    row_height = int(36 * scale) + 4
    for i, text in enumerate(lines):
        encoder.put_text(
            img,
            text,
            (16, row_height * (i + 1)),
            scale,
            (255, 255, 255),
            1 if scale < 0.8 else 2,
        )

    return encoder.encode_jpeg(img, quality=quality)


def is_jpeg(data: bytes) -> bool:
    """True when ``data`` starts with the JPEG start-of-image marker."""
    return data[:2] == JPEG_MAGIC
