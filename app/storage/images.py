"""Image normalisation for uploads and provider inputs."""

from io import BytesIO
from typing import Tuple

from PIL import Image, UnidentifiedImageError

ALLOWED_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}

# White studio background used when flattening transparency
BACKGROUND = (255, 255, 255)


class InvalidImageError(ValueError):
    pass


def inspect_image(data: bytes) -> Tuple[str, int, int]:
    """Return (format, width, height), or raise InvalidImageError."""
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
        # verify() leaves the image unusable; reopen for the size
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            width, height = img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError(f"Not a readable image: {exc}") from exc
    if fmt not in ALLOWED_FORMATS:
        raise InvalidImageError(f"Unsupported image format {fmt}. Only JPEG, PNG and WebP are allowed.")
    return fmt, width, height


def flatten_to_rgb(data: bytes, quality: int = 95) -> bytes:
    """Composite any alpha channel onto white and re-encode as JPEG.

    ControlNet and most try-on models expect 3-channel RGB input; garment
    cut-outs come back from background removal as RGBA PNGs.
    """
    with Image.open(BytesIO(data)) as img:
        img.load()
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            rgba = img.convert("RGBA")
            canvas = Image.new("RGB", rgba.size, BACKGROUND)
            canvas.paste(rgba, mask=rgba.split()[-1])
            rgb = canvas
        else:
            rgb = img.convert("RGB")
    out = BytesIO()
    rgb.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def has_alpha(data: bytes) -> bool:
    with Image.open(BytesIO(data)) as img:
        return img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
