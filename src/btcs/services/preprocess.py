"""Image preprocessing for the tumor classifier."""
from __future__ import annotations

import io
from typing import Union

import numpy as np
from PIL import Image, UnidentifiedImageError
from torchvision import transforms

from .errors import DecodeError

IMAGE_SIZE = 224
INPUT_SHAPE = (1, 3, IMAGE_SIZE, IMAGE_SIZE)

# The image is stretched to the square target, aspect ratio is not kept.
IMAGE_TRANSFORM = transforms.Compose(
    [
        transforms.Resize(
            (IMAGE_SIZE, IMAGE_SIZE),
            interpolation=transforms.InterpolationMode.BILINEAR,
        ),
        transforms.ToTensor(),
    ]
)

ImageInput = Union[bytes, bytearray, Image.Image]


def decode_image(image_bytes: bytes | bytearray) -> Image.Image:
    """Decode raw upload bytes into an RGB PIL image."""
    if not image_bytes:
        raise DecodeError("Image payload is empty")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except Image.DecompressionBombError as exc:
        raise DecodeError(f"Image is too large to analyze: {exc}") from exc
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Could not decode image: {exc}") from exc
    return _to_rgb(image)


def _to_rgb(image: Image.Image) -> Image.Image:
    if image.mode == "RGB":
        return image
    try:
        # RGBA -> RGB drops the alpha band without compositing.
        return image.convert("RGB")
    except (OSError, ValueError) as exc:
        raise DecodeError(f"Unsupported image mode {image.mode!r}: {exc}") from exc


def encode(image: ImageInput) -> np.ndarray:
    """Convert an image into a ``(1, 3, 224, 224)`` float32 tensor in ``[0, 1]``.

    Channels are stored planar (all red values, then green, then blue) in
    row-major pixel order, matching the layout the classifier was exported
    with.
    """
    if isinstance(image, Image.Image):
        rgb = _to_rgb(image)
    else:
        rgb = decode_image(image)
    tensor = IMAGE_TRANSFORM(rgb).unsqueeze(0)
    return np.ascontiguousarray(tensor.numpy(), dtype=np.float32)
