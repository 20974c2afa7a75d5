"""
Animated image encoding module for Cutout Animator.

Both containers are written from the same keyed RGBA frame sequence:
- GIF: per-frame palette (at most 256 entries) with one transparent index
- APNG: lossless, full 8-bit alpha per pixel
"""

import io
import logging
from typing import Callable, List, Optional

import numpy as np
from PIL import Image, PngImagePlugin

from .errors import EncodeError, FrameFormatError

logger = logging.getLogger(__name__)

# Pixels below this alpha are transparent in the palette format
ALPHA_THRESHOLD = 128
# One slot stays free for a dedicated transparent entry
PALETTE_COLORS = 255
GIF_DISPOSE_BACKGROUND = 2

FrameCallback = Callable[[int, int], None]


def frame_delay_ms(fps: int) -> int:
    """Per-frame delay in milliseconds, rounded half up."""
    if fps <= 0:
        raise EncodeError(f"fps must be positive, got {fps}")
    return int(1000.0 / fps + 0.5)


def _check_sequence(frames: List[np.ndarray]):
    if not frames:
        raise EncodeError("No frames to encode")

    shape = frames[0].shape
    if len(shape) != 3 or shape[2] != 4:
        raise FrameFormatError(f"Frames must be RGBA (H, W, 4), got {shape}")
    for index, frame in enumerate(frames):
        if frame.shape != shape:
            raise FrameFormatError(f"Frame {index} is {frame.shape}, expected {shape}")


def _nearest_entries(pixels: np.ndarray, palette_rgb: np.ndarray, candidates: np.ndarray) -> np.ndarray:
    """Index of the closest candidate palette entry for each RGB pixel."""
    diff = pixels[:, None, :].astype(np.int32) - palette_rgb[candidates][None, :, :].astype(np.int32)
    distance = (diff * diff).sum(axis=-1)
    return candidates[distance.argmin(axis=1)]


def to_palette_frame(rgba: np.ndarray) -> Image.Image:
    """
    Quantize one RGBA frame to a palette image with a transparent index.

    The most transparent palette entry below ALPHA_THRESHOLD becomes the
    transparent index (a dedicated entry is appended when there is none), and
    every pixel below the threshold is forced onto it.

    Args:
        rgba: Keyed RGBA frame [H, W, 4]

    Returns:
        Mode "P" image, ``info['transparency']`` set when the frame has transparency
    """
    height, width = rgba.shape[:2]
    quantized = Image.fromarray(np.ascontiguousarray(rgba)).quantize(
        colors=PALETTE_COLORS, method=Image.Quantize.FASTOCTREE
    )
    palette = np.array(quantized.getpalette(rawmode="RGBA"), dtype=np.uint8).reshape(-1, 4)
    indices = np.array(quantized, dtype=np.uint8)
    # Entries past the last used index are padding
    palette = palette[:int(indices.max()) + 1]

    transparent = rgba[..., 3] < ALPHA_THRESHOLD
    transparent_index = None
    if transparent.any():
        candidate = int(palette[:, 3].argmin())
        if palette[candidate, 3] < ALPHA_THRESHOLD:
            transparent_index = candidate
        else:
            palette = np.vstack([palette, np.zeros((1, 4), dtype=np.uint8)])
            transparent_index = len(palette) - 1
        indices[transparent] = transparent_index

    # Opaque pixels must never land on a see-through entry
    see_through = palette[:, 3] < ALPHA_THRESHOLD
    stray = ~transparent & see_through[indices]
    if stray.any():
        opaque_entries = np.flatnonzero(~see_through)
        if opaque_entries.size == 0:
            fill = rgba[stray][:, :3].mean(axis=0).round().astype(np.uint8)
            palette = np.vstack([palette, np.append(fill, 255)[None, :]])
            opaque_entries = np.array([len(palette) - 1])
        indices[stray] = _nearest_entries(rgba[stray][:, :3], palette[:, :3], opaque_entries)

    if len(palette) > 256:
        raise EncodeError(f"Palette grew to {len(palette)} entries")

    rgb_palette = palette[:, :3].copy()
    if transparent_index is not None:
        rgb_palette[transparent_index] = 0

    frame = Image.frombytes("P", (width, height), np.ascontiguousarray(indices).tobytes())
    frame.putpalette(rgb_palette.flatten().tolist())
    if transparent_index is not None:
        frame.info["transparency"] = transparent_index
    return frame


def encode_palette_animation(frames: List[np.ndarray], fps: int, loops: int = 0,
                             on_frame: Optional[FrameCallback] = None) -> bytes:
    """
    Encode RGBA frames as an animated GIF.

    Identical consecutive frames are stored once with their delays summed, so
    the file may hold fewer frames than ``frames`` while playing back the same.

    Args:
        frames: Keyed RGBA frames of identical size
        fps: Playback frame rate
        loops: Loop count, 0 loops forever
        on_frame: Called with (frame_number, total) after each frame is quantized

    Returns:
        GIF file bytes
    """
    _check_sequence(frames)
    delay = frame_delay_ms(fps)
    total = len(frames)

    palette_frames = []
    for index, rgba in enumerate(frames):
        palette_frames.append(to_palette_frame(rgba))
        if on_frame is not None:
            on_frame(index + 1, total)

    buffer = io.BytesIO()
    try:
        palette_frames[0].save(
            buffer,
            format="GIF",
            save_all=True,
            append_images=palette_frames[1:],
            duration=delay,
            loop=loops,
            disposal=GIF_DISPOSE_BACKGROUND,
            optimize=False,
        )
    except (OSError, ValueError) as e:
        raise EncodeError(f"GIF encoding failed: {e}") from e

    data = buffer.getvalue()
    logger.info(f"GIF encoded: {total} frames, {len(data) / 1024:.1f} KB")
    return data


def encode_true_alpha_animation(frames: List[np.ndarray], fps: int, loops: int = 0) -> bytes:
    """
    Encode RGBA frames as a lossless animated PNG with full alpha.

    Args:
        frames: Keyed RGBA frames of identical size
        fps: Playback frame rate
        loops: Loop count, 0 loops forever

    Returns:
        APNG file bytes
    """
    _check_sequence(frames)
    delay = frame_delay_ms(fps)

    images = [Image.fromarray(np.ascontiguousarray(frame)) for frame in frames]

    buffer = io.BytesIO()
    try:
        images[0].save(
            buffer,
            format="PNG",
            save_all=True,
            append_images=images[1:],
            duration=delay,
            loop=loops,
            disposal=PngImagePlugin.Disposal.OP_BACKGROUND,
            blend=PngImagePlugin.Blend.OP_SOURCE,
        )
    except (OSError, ValueError) as e:
        raise EncodeError(f"APNG encoding failed: {e}") from e

    data = buffer.getvalue()
    logger.info(f"APNG encoded: {len(frames)} frames, {len(data) / 1024:.1f} KB")
    return data
