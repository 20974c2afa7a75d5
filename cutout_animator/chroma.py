"""
Chroma-key compositing module for Cutout Animator.

This module handles the round trip of transparency through an opaque-only
image-to-video service:
1. Forward: flatten a transparent cutout onto a solid key colour before upload
2. Reverse: key the colour back out of every returned frame, with a soft
   edge band and spill removal for anti-aliased edges

The default key colour is magenta (#FF00FF). Green and blue subjects (plants,
frogs, clothing, sky) are common, magenta almost never occurs in real subjects.
"""

import base64
import io
import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple
from dataclasses import dataclass

import numpy as np
from PIL import Image

from .errors import ConfigError, FrameFormatError

logger = logging.getLogger(__name__)

MAGENTA = (255, 0, 255)

# A key channel at or above this value counts as "high", below as "low"
KEY_CHANNEL_SPLIT = 128

_DATA_URL_PREFIX = re.compile(r'^data:image/\w+;base64,')


@dataclass(frozen=True)
class ChromaKeySettings:
    """Key colour and the two-threshold soft-edge policy."""
    key_color: Tuple[int, int, int] = MAGENTA
    strong_threshold: int = 80   # keyness above this -> fully transparent
    strong_level: int = 150      # ...when the key channels are at least this bright
    weak_threshold: int = 40     # keyness above this -> partial transparency
    weak_level: int = 100

    def __post_init__(self):
        if self.weak_threshold >= self.strong_threshold:
            raise ConfigError("weak_threshold must be below strong_threshold")
        # Fails fast on key colours without both high and low channels
        self.channel_split()

    def channel_split(self) -> Tuple[List[int], List[int]]:
        """
        Split RGB channel indices into the ones the key colour saturates and the rest.

        Returns:
            Tuple of (high_channels, low_channels), e.g. ([0, 2], [1]) for magenta
        """
        high = [i for i, value in enumerate(self.key_color) if value >= KEY_CHANNEL_SPLIT]
        low = [i for i, value in enumerate(self.key_color) if value < KEY_CHANNEL_SPLIT]
        if not high or not low:
            raise ConfigError(
                f"Key colour {self.key_color} needs at least one saturated and one dark channel"
            )
        return high, low

    def to_dict(self) -> dict:
        return {
            "key_color": list(self.key_color),
            "strong_threshold": self.strong_threshold,
            "strong_level": self.strong_level,
            "weak_threshold": self.weak_threshold,
            "weak_level": self.weak_level,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ChromaKeySettings":
        if not data:
            return cls()
        values = dict(data)
        if "key_color" in values:
            values["key_color"] = tuple(int(c) for c in values["key_color"])
        return cls(**values)


@dataclass(frozen=True)
class CutoutImage:
    """Transparent RGBA cutout produced by the segmentation step."""
    pixels: np.ndarray  # uint8 [H, W, 4]

    def __post_init__(self):
        _check_rgba(self.pixels, "Cutout")

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @classmethod
    def from_png_bytes(cls, data: bytes) -> "CutoutImage":
        with Image.open(io.BytesIO(data)) as img:
            rgba = np.array(img.convert("RGBA"), dtype=np.uint8)
        return cls(rgba)

    @classmethod
    def from_data_url(cls, data_url: str) -> "CutoutImage":
        """Decode a ``data:image/png;base64,...`` URL as handed over by the editor."""
        payload = _DATA_URL_PREFIX.sub('', data_url.strip())
        return cls.from_png_bytes(base64.b64decode(payload))

    @classmethod
    def from_file(cls, path) -> "CutoutImage":
        return cls.from_png_bytes(Path(path).read_bytes())


@dataclass(frozen=True)
class CompositedImage:
    """Opaque RGB image ready for upload."""
    pixels: np.ndarray  # uint8 [H, W, 3]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def to_png_bytes(self) -> bytes:
        buffer = io.BytesIO()
        Image.fromarray(self.pixels, "RGB").save(buffer, format="PNG")
        return buffer.getvalue()


def _check_rgba(pixels: np.ndarray, what: str,
                expected_size: Optional[Tuple[int, int]] = None):
    if not isinstance(pixels, np.ndarray) or pixels.dtype != np.uint8:
        raise FrameFormatError(f"{what} must be a uint8 numpy array")
    if pixels.ndim != 3 or pixels.shape[2] != 4:
        raise FrameFormatError(f"{what} must have shape (H, W, 4), got {pixels.shape}")
    if expected_size is not None:
        width, height = expected_size
        if pixels.shape[1] != width or pixels.shape[0] != height:
            raise FrameFormatError(
                f"{what} is {pixels.shape[1]}x{pixels.shape[0]}, expected {width}x{height}"
            )


def composite_forward(cutout: CutoutImage,
                      settings: ChromaKeySettings = ChromaKeySettings()) -> CompositedImage:
    """
    Flatten a transparent cutout onto the key colour.

    out = round(fg * a/255 + key * (255 - a)/255), rounding halves up.

    Args:
        cutout: Transparent source image
        settings: Chroma-key settings providing the key colour

    Returns:
        Opaque composited image with the same dimensions
    """
    rgba = cutout.pixels
    fg = rgba[..., :3].astype(np.float64)
    alpha = rgba[..., 3:4].astype(np.float64)
    key = np.asarray(settings.key_color, dtype=np.float64)

    blended = (fg * alpha + key * (255.0 - alpha)) / 255.0
    rgb = np.clip(np.floor(blended + 0.5), 0, 255).astype(np.uint8)

    logger.info(f"Composited cutout ({cutout.width}x{cutout.height}) onto key colour {settings.key_color}")
    return CompositedImage(rgb)


def keyness(frame: np.ndarray, settings: ChromaKeySettings) -> Tuple[np.ndarray, np.ndarray]:
    """
    Score how strongly each pixel matches the key colour profile.

    For magenta this is ``min(R, B) - G``; in general the weakest key channel
    minus the strongest non-key channel.

    Returns:
        Tuple of (score, level) int32 arrays, level being the weakest key channel
    """
    high, low = settings.channel_split()
    rgb = frame[..., :3].astype(np.int32)
    level = rgb[..., high].min(axis=-1)
    score = level - rgb[..., low].max(axis=-1)
    return score, level


def composite_reverse(frame: np.ndarray,
                      settings: ChromaKeySettings = ChromaKeySettings(),
                      expected_size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """
    Key the reference colour out of a decoded frame.

    Args:
        frame: RGBA uint8 frame [H, W, 4]
        settings: Key colour and thresholds
        expected_size: Optional (width, height) the frame must match

    Returns:
        New RGBA frame with restored transparency and spill removed
    """
    _check_rgba(frame, "Frame", expected_size)

    high, low = settings.channel_split()
    score, level = keyness(frame, settings)

    strong = (score > settings.strong_threshold) & (level > settings.strong_level)
    soft = ~strong & (score > settings.weak_threshold) & (level > settings.weak_level)

    result = frame.copy()

    if soft.any():
        band = float(settings.strong_threshold - settings.weak_threshold)
        ramp = np.floor((score - settings.weak_threshold) * (255.0 / band) + 0.5)
        alpha = np.clip(255.0 - ramp, 0, 255)

        rgb = frame[..., :3].astype(np.float64)
        floor_channel = rgb[..., low].max(axis=-1)
        spill_factor = 1.0 - alpha / 255.0
        for channel in high:
            spill = np.maximum(0.0, rgb[..., channel] - floor_channel) * spill_factor
            corrected = np.clip(np.floor(rgb[..., channel] - spill + 0.5), 0, 255)
            result[..., channel] = np.where(soft, corrected, result[..., channel])

        result[..., 3] = np.where(soft, alpha, result[..., 3])
        vanished = soft & (alpha == 0)
        strong = strong | vanished

    result[strong] = 0
    return result


def composite_reverse_sequence(frames: List[np.ndarray],
                               settings: ChromaKeySettings = ChromaKeySettings()) -> List[np.ndarray]:
    """Key every frame of a sequence, requiring identical frame dimensions."""
    if not frames:
        return []

    height, width = frames[0].shape[:2]
    keyed = [composite_reverse(frame, settings, expected_size=(width, height)) for frame in frames]

    logger.info(f"Chroma-keyed {len(keyed)} frames ({width}x{height})")
    return keyed
