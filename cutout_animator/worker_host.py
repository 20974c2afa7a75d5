"""
Encoder worker supervision for Cutout Animator.

The host writes the downloaded video to a temporary file, spawns the encoder
worker, relays its progress messages and turns its terminal message (or its
death) into an AnimationResult or a typed error. The temporary file is
removed on every exit path.
"""

import asyncio
import base64
import json
import logging
import os
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .chroma import ChromaKeySettings
from .errors import DecodeError, EncodeError, WorkerCrashError

logger = logging.getLogger(__name__)

# Result messages carry both animations base64 encoded on one line
STREAM_LIMIT = 256 * 1024 * 1024

EncodeProgressCallback = Callable[[int, int], None]


@dataclass
class AnimationResult:
    """Final output handed back to the caller."""
    palette_buffer: bytes      # animated GIF
    true_alpha_buffer: bytes   # animated PNG
    frame_count: int           # decoded frames; the GIF may merge identical neighbours
    width: int
    height: int


def default_worker_command() -> List[str]:
    return [sys.executable, "-m", "cutout_animator.encoder_worker"]


def _worker_env() -> dict:
    # The worker imports this package, wherever the host was started from
    package_root = str(Path(__file__).resolve().parent.parent)
    env = dict(os.environ)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = package_root + (os.pathsep + existing if existing else "")
    return env


@contextmanager
def temporary_video(video_bytes: bytes, suffix: str = ".mp4"):
    """Write ``video_bytes`` to a private temp file that is deleted on exit."""
    fd, name = tempfile.mkstemp(prefix="cutout-anim-", suffix=suffix)
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(video_bytes)
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        logger.debug(f"Removed temporary video {path}")


async def run_encoder_worker(video_path, fps: int, loops: int, max_duration: float,
                             use_chroma_key: bool = True,
                             settings: ChromaKeySettings = ChromaKeySettings(),
                             on_progress: Optional[EncodeProgressCallback] = None,
                             command: Optional[List[str]] = None,
                             timeout: Optional[float] = None,
                             expected_size: Optional[Tuple[int, int]] = None) -> AnimationResult:
    """
    Run one encode request in a separate worker process.

    Args:
        video_path: Video file readable by the worker
        fps: Target frame rate
        loops: Loop count, 0 loops forever
        max_duration: Seconds of video to keep
        use_chroma_key: Key out the background colour per frame
        settings: Chroma-key settings sent with the request
        on_progress: Called with (frame, total_frames) per encoded frame
        command: Worker command line, defaults to this package's worker module
        timeout: Seconds after which the worker is killed
        expected_size: (width, height) every decoded frame must have

    Returns:
        AnimationResult built from the worker's result message
    """
    request = {
        "type": "encode",
        "videoPath": str(video_path),
        "fps": fps,
        "loops": loops,
        "maxDurationSeconds": max_duration,
        "useChromaKey": bool(use_chroma_key),
        "chroma": settings.to_dict(),
        "expectedSize": list(expected_size) if expected_size else None,
    }

    try:
        proc = await asyncio.create_subprocess_exec(
            *(command or default_worker_command()),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=_worker_env(),
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        raise WorkerCrashError(f"Could not start encoder worker: {e}") from e

    try:
        return await asyncio.wait_for(_converse(proc, request, on_progress), timeout)
    except asyncio.TimeoutError:
        raise WorkerCrashError(f"Encoder worker exceeded {timeout}s and was killed") from None
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()


async def _converse(proc, request: dict, on_progress: Optional[EncodeProgressCallback]) -> AnimationResult:
    try:
        proc.stdin.write((json.dumps(request) + "\n").encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()
    except (BrokenPipeError, ConnectionResetError):
        # Worker already gone; its exit code is reported below
        pass

    terminal = None
    while terminal is None:
        try:
            line = await proc.stdout.readline()
        except ValueError as e:
            raise WorkerCrashError(f"Encoder worker sent a line over the stream limit: {e}") from e
        if not line:
            break
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            message = None
        if not isinstance(message, dict):
            logger.warning(f"Ignoring malformed worker output: {line[:200]!r}")
            continue

        kind = message.get("type")
        if kind == "progress":
            try:
                frame, total = int(message["frame"]), int(message["totalFrames"])
            except (KeyError, TypeError, ValueError) as e:
                raise WorkerCrashError(f"Malformed progress message from encoder worker: {message}") from e
            if on_progress is not None:
                on_progress(frame, total)
        elif kind in ("result", "error"):
            terminal = message

    returncode = await proc.wait()

    if terminal is None:
        raise WorkerCrashError(
            f"Encoder worker exited with code {returncode} without a result", returncode=returncode
        )

    if terminal["type"] == "error":
        error_cls = DecodeError if terminal.get("kind") == "decode" else EncodeError
        raise error_cls(terminal.get("message") or "Encoder worker failed")

    try:
        result = AnimationResult(
            palette_buffer=base64.b64decode(terminal["paletteBuffer"]),
            true_alpha_buffer=base64.b64decode(terminal["trueAlphaBuffer"]),
            frame_count=int(terminal["frameCount"]),
            width=int(terminal["width"]),
            height=int(terminal["height"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise WorkerCrashError(f"Malformed result message from encoder worker: {e}", returncode=returncode) from e
    logger.info(
        f"Complete: {result.frame_count} frames, GIF {len(result.palette_buffer) / 1024:.1f} KB, "
        f"APNG {len(result.true_alpha_buffer) / 1024:.1f} KB"
    )
    return result


async def extract_and_encode(video_bytes: bytes, fps: int, loops: int, max_duration: float,
                             use_chroma_key: bool = True,
                             settings: ChromaKeySettings = ChromaKeySettings(),
                             on_progress: Optional[EncodeProgressCallback] = None,
                             command: Optional[List[str]] = None,
                             timeout: Optional[float] = None,
                             expected_size: Optional[Tuple[int, int]] = None) -> AnimationResult:
    """Hand downloaded video bytes to a worker through a scoped temporary file."""
    with temporary_video(video_bytes) as video_path:
        return await run_encoder_worker(
            video_path, fps, loops, max_duration,
            use_chroma_key=use_chroma_key,
            settings=settings,
            on_progress=on_progress,
            command=command,
            timeout=timeout,
            expected_size=expected_size,
        )
