"""
Encoder worker process for Cutout Animator.

Runs as ``python -m cutout_animator.encoder_worker`` so that ffmpeg decoding
and per-frame keying can crash or hog the CPU without touching the host.

Protocol (one JSON object per line):
    stdin:  {"type": "encode", "videoPath", "fps", "loops",
             "maxDurationSeconds", "useChromaKey", "chroma", "expectedSize"}
    stdout: {"type": "progress", "frame", "totalFrames"}  (zero or more)
            then exactly one of
            {"type": "result", "paletteBuffer", "trueAlphaBuffer",
             "frameCount", "width", "height"}   (buffers base64 encoded)
            {"type": "error", "message", "kind"}

Logs go to stderr; stdout carries nothing but protocol messages.
"""

import base64
import json
import logging
import sys
from typing import Any, Callable, Dict

from .animation_encoder import encode_palette_animation, encode_true_alpha_animation
from .chroma import ChromaKeySettings, composite_reverse_sequence
from .errors import DecodeError, FrameFormatError
from .frame_extractor import FrameExtractor

logger = logging.getLogger(__name__)

DEFAULT_FPS = 16
DEFAULT_MAX_DURATION = 4.0

Send = Callable[[Dict[str, Any]], None]


def encode_video(request: Dict[str, Any], send: Send) -> Dict[str, Any]:
    """
    Decode, key and encode the video named in an ``encode`` request.

    Args:
        request: Parsed ``encode`` message
        send: Callback receiving progress messages

    Returns:
        The terminal ``result`` message
    """
    fps = int(request.get('fps') or DEFAULT_FPS)
    loops = int(request.get('loops') or 0)
    max_duration = request.get('maxDurationSeconds') or DEFAULT_MAX_DURATION

    logger.info(f"Starting frame extraction from: {request['videoPath']}")
    with FrameExtractor(request['videoPath'], fps, max_duration) as extractor:
        extracted = extractor.extract_frames()

    expected = request.get('expectedSize')
    if expected and (extracted.width, extracted.height) != tuple(expected):
        raise FrameFormatError(
            f"Video is {extracted.width}x{extracted.height}, expected {expected[0]}x{expected[1]}"
        )

    frames = extracted.frames
    if request.get('useChromaKey'):
        settings = ChromaKeySettings.from_dict(request.get('chroma'))
        logger.info(f"Chroma-keying {len(frames)} frames ({extracted.width}x{extracted.height})")
        frames = composite_reverse_sequence(frames, settings)

    def on_frame(frame: int, total: int):
        send({"type": "progress", "frame": frame, "totalFrames": total})

    palette_buffer = encode_palette_animation(frames, fps, loops, on_frame=on_frame)
    true_alpha_buffer = encode_true_alpha_animation(frames, fps, loops)

    return {
        "type": "result",
        "paletteBuffer": base64.b64encode(palette_buffer).decode('ascii'),
        "trueAlphaBuffer": base64.b64encode(true_alpha_buffer).decode('ascii'),
        "frameCount": len(frames),
        "width": extracted.width,
        "height": extracted.height,
    }


def handle_message(message: Dict[str, Any], send: Send):
    """Answer one request with exactly one terminal message."""
    if message.get('type') != 'encode':
        send({"type": "error", "message": f"Unknown message type: {message.get('type')}", "kind": "encode"})
        return

    try:
        send(encode_video(message, send))
    except DecodeError as e:
        logger.error(f"Decode failed: {e}")
        send({"type": "error", "message": str(e), "kind": "decode"})
    except Exception as e:
        logger.error(f"Encode failed: {e}")
        send({"type": "error", "message": str(e), "kind": "encode"})


def _send_stdout(message: Dict[str, Any]):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def main():
    """Worker entry point: read one request from stdin and answer on stdout."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )

    line = sys.stdin.readline()
    if not line.strip():
        logger.error("No request received")
        return 2

    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        _send_stdout({"type": "error", "message": f"Malformed request: {e}", "kind": "encode"})
        return 0

    logger.info("Worker ready")
    handle_message(message, _send_stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
