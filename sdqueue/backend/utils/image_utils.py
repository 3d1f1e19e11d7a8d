"""Pillow helpers for previews, inputs and generated artifacts."""

from __future__ import annotations

import base64
import binascii
import io
from pathlib import Path
from typing import List, Sequence, Tuple

from PIL import Image


def encode_preview(image: Image.Image, max_size: int, quality: int) -> Tuple[bytes, int, int]:
    """Downscale to fit ``max_size`` and encode as JPEG.

    Returns:
        Tuple of (jpeg_bytes, width, height).
    """
    preview = image.convert("RGB")
    if max(preview.size) > max_size:
        preview.thumbnail((max_size, max_size), Image.LANCZOS)
    buf = io.BytesIO()
    preview.save(buf, format="JPEG", quality=max(1, min(100, quality)))
    return buf.getvalue(), preview.width, preview.height


def load_image(value: str, base_dir: Path = Path(".")) -> Image.Image:
    """Open an input image given as a data URL, raw base64 or a file path.

    Raises:
        ValueError: If the value cannot be decoded into an image.
    """
    if value.startswith("data:"):
        _, _, value = value.partition(",")
        return _decode_base64(value)

    path = Path(value)
    if not path.is_absolute():
        path = base_dir / path
    try:
        is_file = path.is_file()
    except OSError:
        # Long base64 payloads exceed the file name limit
        is_file = False
    if is_file:
        with Image.open(path) as img:
            img.load()
            return img.copy()
    return _decode_base64(value)


def _decode_base64(data: str) -> Image.Image:
    try:
        raw = base64.b64decode(data, validate=True)
        img = Image.open(io.BytesIO(raw))
        img.load()
        return img
    except (binascii.Error, OSError, ValueError) as exc:
        raise ValueError(f"Cannot decode input image: {exc}") from exc


def save_images(images: Sequence[Image.Image], output_dir: Path, prefix: str = "image") -> List[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    paths: List[Path] = []
    for idx, image in enumerate(images):
        path = output_dir / f"{prefix}_{idx:03d}.png"
        image.save(path, format="PNG")
        paths.append(path)
    return paths


def save_animation(frames: Sequence[Image.Image], output_dir: Path, fps: int = 16) -> Path:
    """Write frames as a looping animated WebP."""
    if not frames:
        raise ValueError("No frames to save")
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / "video.webp"
    first, rest = frames[0], list(frames[1:])
    first.save(
        path,
        format="WEBP",
        save_all=True,
        append_images=rest,
        duration=max(1, int(1000 / max(1, fps))),
        loop=0,
    )
    return path
