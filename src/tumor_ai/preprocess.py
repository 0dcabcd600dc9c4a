"""Image decoding and conversion to the classifier's input layout.

The model expects ``size x size`` RGB pixels scaled to ``[0, 1]`` and laid out
row-major with channels interleaved (R, G, B per pixel). Aspect ratio is not
preserved: images are stretched to the square input size.
"""

from __future__ import annotations

import io
from typing import Final

import torch
from PIL import Image, ImageFile, UnidentifiedImageError
from torch import Tensor

from .errors import DecodeError, ImageTooLarge
from .inference.types import CHANNELS

ImageFile.LOAD_TRUNCATED_IMAGES = False

DEFAULT_INPUT_SIZE: Final[int] = 150
_PREPROCESS_SIGNATURE: Final[str] = "v2/rgb+bilinear-stretch+div255+nhwc"
_DECODE_ERRORS: Final[tuple[type[BaseException], ...]] = (OSError, ValueError, SyntaxError)


def decode_image(raw: bytes) -> Image.Image:
    """Decode image bytes and force pixel data to load.

    ``Image.open`` is lazy, so truncated files are only detected by ``load()``.
    """
    if not raw:
        raise DecodeError("Empty image payload")
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except Image.DecompressionBombError:
        raise ImageTooLarge("Decompression bomb triggered") from None
    except UnidentifiedImageError:
        raise DecodeError("Unrecognized image format") from None
    except _DECODE_ERRORS as exc:
        raise DecodeError(f"Failed to decode image: {exc}") from None
    return img


def preprocess(image: Image.Image, target_size: int = DEFAULT_INPUT_SIZE) -> Tensor:
    if target_size < 1:
        raise ValueError("target_size must be >= 1")
    try:
        rgb = _to_rgb(image)
        resized = rgb.resize((target_size, target_size), resample=Image.Resampling.BILINEAR)
        buf = bytearray(resized.tobytes())
    except _DECODE_ERRORS as exc:
        raise DecodeError(f"Failed to convert image: {exc}") from None
    expected = target_size * target_size * CHANNELS
    if len(buf) != expected:
        raise DecodeError("unexpected pixel buffer size")
    # RGB mode bytes are already row-major R,G,B per pixel
    return torch.frombuffer(buf, dtype=torch.uint8).to(dtype=torch.float32) / 255.0


def preprocess_bytes(raw: bytes, target_size: int = DEFAULT_INPUT_SIZE) -> Tensor:
    return preprocess(decode_image(raw), target_size)


def tensor_to_bytes(t: Tensor) -> bytes:
    """Serialize a flat float32 tensor in the host's native byte order."""
    # numpy views of CPU tensors are always native-endian
    return t.detach().to(dtype=torch.float32).contiguous().cpu().numpy().tobytes()


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def _to_rgb(img: Image.Image) -> Image.Image:
    # Alpha is dropped, not composited: stored R,G,B values are kept as-is.
    # EXIF orientation is ignored; the stored pixel grid is used.
    if img.mode == "RGB":
        return img
    if img.mode == "P":
        img = img.convert("RGBA")
    return img.convert("RGB")
