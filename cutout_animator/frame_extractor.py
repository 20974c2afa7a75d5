"""
Frame extraction module for Cutout Animator.

This module handles:
1. Probing the generated video for its pixel dimensions by decoding one frame
2. Decoding the (time-trimmed) video to raw RGBA frames at the target frame rate

Decoding is done by ffmpeg through imageio; it runs inside the encoder worker
process, never in the host.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import imageio
import imageio_ffmpeg
import numpy as np

from .errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass
class ExtractedFrames:
    """Decoded RGBA frames sharing one size."""
    frames: List[np.ndarray]
    width: int
    height: int

    @property
    def frame_count(self) -> int:
        return len(self.frames)


class FrameExtractor:
    """Decodes a video file into RGBA frames."""

    def __init__(self, video_path, fps: int, max_duration: Optional[float] = None):
        self.video_path = Path(video_path)
        self.fps = fps
        self.max_duration = max_duration
        self.reader = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()

    def cleanup(self):
        """Clean up the probe reader."""
        if self.reader is not None:
            self.reader.close()
            self.reader = None

    def probe_dimensions(self) -> Tuple[int, int]:
        """
        Determine the video's pixel size from its first frame.

        Returns:
            Tuple of (width, height)
        """
        if not self.video_path.exists():
            raise DecodeError(f"Video file not found: {self.video_path}")

        try:
            self.reader = imageio.get_reader(str(self.video_path), 'ffmpeg')
            first_frame = self.reader.get_data(0)
        except Exception as e:
            raise DecodeError(f"Failed to read video dimensions: {e}") from e
        finally:
            self.cleanup()

        height, width = first_frame.shape[:2]
        logger.info(f"Video dimensions: {width}x{height}")
        return width, height

    def _output_params(self) -> List[str]:
        params = []
        if self.max_duration:
            params += ['-t', str(self.max_duration)]
        params += ['-vf', f'fps={self.fps}']
        return params

    def extract_frames(self) -> ExtractedFrames:
        """
        Decode the whole (trimmed) video as RGBA frames at the target fps.

        Returns:
            ExtractedFrames with every decoded frame
        """
        width, height = self.probe_dimensions()
        frame_size = width * height * 4

        frames = []
        generator = imageio_ffmpeg.read_frames(
            str(self.video_path),
            pix_fmt='rgba',
            bits_per_pixel=32,
            output_params=self._output_params(),
        )
        try:
            meta = next(generator)
            decoded_size = tuple(meta.get('size') or (width, height))
            if decoded_size != (width, height):
                raise DecodeError(
                    f"Decoder reports {decoded_size[0]}x{decoded_size[1]}, probe found {width}x{height}"
                )

            for raw in generator:
                if len(raw) != frame_size:
                    raise DecodeError(f"Frame {len(frames)} has {len(raw)} bytes, expected {frame_size}")
                frames.append(np.frombuffer(raw, dtype=np.uint8).reshape(height, width, 4))

        except DecodeError:
            raise
        except Exception as e:
            raise DecodeError(f"ffmpeg failed to decode {self.video_path.name}: {e}") from e
        finally:
            generator.close()

        if not frames:
            raise DecodeError(f"No frames decoded from {self.video_path.name}")

        logger.info(f"Extracted {len(frames)} frames ({frame_size} bytes each)")
        return ExtractedFrames(frames=frames, width=width, height=height)
