"""Utility modules for pidash.

Submodules:
    image: ImageEncoder protocol, OpenCV encoder, test-pattern rendering
    recurrence: next-fire computation for weekly power schedules

``image`` is loaded lazily via __getattr__ so importing the package does
not pull in numpy/OpenCV for code that only needs recurrence math.
"""

__all__ = ["ImageEncoder", "CV2ImageEncoder"]


def __getattr__(name: str) -> type:
    """Lazily import the image encoder classes on first access.

    Args:
        name: Attribute being accessed.

    Returns:
        ImageEncoder or CV2ImageEncoder.

    Raises:
        AttributeError: For any other name.
    """
    if name in ("ImageEncoder", "CV2ImageEncoder"):
        from pidash.utils.image import CV2ImageEncoder, ImageEncoder

        globals()["ImageEncoder"] = ImageEncoder
        globals()["CV2ImageEncoder"] = CV2ImageEncoder
        return globals()[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return [*__all__, "__all__", "__doc__", "__name__", "__file__"]
