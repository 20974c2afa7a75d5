"""
Motion preset selection for Cutout Animator.

Provides the static preset catalogue, resolution of a motion spec (preset or
free-text prompt) into generation parameters, and optional AI-suggested
presets from a local vision model. Suggestions are best effort: any failure
yields None and the caller falls back to the static catalogue.
"""

import base64
import json
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple

import cv2
import httpx
import numpy as np

from .errors import SubmissionError

logger = logging.getLogger(__name__)

SUGGESTED_PRESET_LIMIT = 3
SUGGESTED_PRESET_FPS = 16


@dataclass(frozen=True)
class MotionPreset:
    name: str
    label: str
    description: str
    prompt: str
    num_frames: int = 33
    fps: int = 16

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Intentionally generic (not subject-specific) so they work with any cutout
STATIC_PRESETS = (
    MotionPreset(
        name='breathe', label='Breathe',
        description='Subtle breathing, gently expanding and contracting',
        prompt='The subject gently breathing with subtle movement, soft and alive, slight expansion '
               'and contraction, smooth looping motion',
        num_frames=33, fps=16,
    ),
    MotionPreset(
        name='sway', label='Sway',
        description='Gentle swaying side to side like a breeze',
        prompt='The subject gently swaying side to side as if in a light breeze, smooth natural '
               'movement, soft organic motion',
        num_frames=49, fps=16,
    ),
    MotionPreset(
        name='bounce', label='Bounce',
        description='Playful bouncing up and down',
        prompt='The subject bouncing up and down playfully, lively energetic movement, fun bouncing '
               'motion with slight squash and stretch',
        num_frames=33, fps=16,
    ),
    MotionPreset(
        name='wobble', label='Wobble',
        description='Jelly-like wobbling and shaking',
        prompt='The subject wobbling like jelly, playful shaking motion, fun jiggly movement with '
               'slight rotation',
        num_frames=33, fps=16,
    ),
    MotionPreset(
        name='float', label='Float',
        description='Dreamy floating upward with slow drift',
        prompt='The subject slowly floating upward with a dreamy drifting motion, weightless and '
               'ethereal, gentle rising movement',
        num_frames=49, fps=16,
    ),
    MotionPreset(
        name='zoom', label='Zoom In',
        description='Cinematic slow zoom towards the subject',
        prompt='Cinematic slow zoom in towards the subject, camera gradually moving closer, dramatic '
               'focus pull effect',
        num_frames=49, fps=16,
    ),
)


def list_static_presets() -> List[MotionPreset]:
    """List the built-in presets."""
    return list(STATIC_PRESETS)


def find_preset(name: str) -> Optional[MotionPreset]:
    for preset in STATIC_PRESETS:
        if preset.name == name:
            return preset
    return None


@dataclass
class MotionSpec:
    """Either a named preset or a free-text prompt, plus optional frame parameters."""
    preset: Optional[str] = None
    prompt: Optional[str] = None
    num_frames: Optional[int] = None
    fps: Optional[int] = None

    @classmethod
    def from_preset(cls, preset: MotionPreset) -> "MotionSpec":
        """Use a (possibly AI suggested) preset as a custom prompt."""
        return cls(prompt=preset.prompt, num_frames=preset.num_frames, fps=preset.fps)


def resolve_motion(spec: MotionSpec, default_fps: int = 16, max_duration: float = 4.0,
                   max_custom_frames: int = 65) -> Tuple[str, int, int]:
    """
    Turn a motion spec into (prompt, num_frames, fps).

    Preset frame counts are capped at ``fps * max_duration``. Custom prompts
    use their explicit frame count or ``min(fps * max_duration, max_custom_frames)``.
    """
    if spec.preset:
        preset = find_preset(spec.preset)
        if preset is None:
            raise SubmissionError(f"Preset not found: {spec.preset}")
        fps = preset.fps or spec.fps or default_fps
        num_frames = min(preset.num_frames, int(fps * max_duration))
        logger.info(f"Using preset '{preset.name}'")
        return preset.prompt, num_frames, fps

    prompt = (spec.prompt or '').strip()
    if not prompt:
        raise SubmissionError("Please enter a prompt describing the animation.")

    fps = spec.fps or default_fps
    num_frames = spec.num_frames or min(int(fps * max_duration), max_custom_frames)
    logger.info("Using custom prompt")
    return prompt, num_frames, fps


async def suggest_presets(thumbnail_png: bytes, source) -> Optional[List[MotionPreset]]:
    """
    Ask a vision-text collaborator for presets tailored to the cutout.

    Args:
        thumbnail_png: PNG bytes of the cutout
        source: Object with ``async suggest(png_bytes) -> List[MotionPreset]``

    Returns:
        The suggested presets, or None when unavailable for any reason
    """
    if source is None:
        return None
    try:
        presets = await source.suggest(thumbnail_png)
    except Exception as e:
        logger.warning(f"Preset suggestions unavailable, falling back to static presets: {e}")
        return None

    if not presets:
        logger.warning("No presets suggested, falling back to static presets")
        return None
    return list(presets)


PRESET_PROMPT = (
    'Look at this cutout image. Identify the subject.\n\n'
    'Suggest exactly 3 animation motions that would look natural for THIS subject.\n\n'
    'Examples:\n'
    '- A cat: stretch, flick tail, yawn\n'
    '- A flower: bloom, sway in wind, breathe\n'
    '- A person: wave, nod, turn head\n'
    '- A logo: pulse, rotate, bounce\n\n'
    'Return ONLY a JSON object (no markdown, no code blocks):\n'
    '{\n'
    '  "subject": "<what the subject is, 2-4 words>",\n'
    '  "presets": [\n'
    '    {\n'
    '      "name": "<kebab-case-id>",\n'
    '      "label": "<Short 1-2 Word Label>",\n'
    '      "description": "<6-8 word description>",\n'
    '      "prompt": "<animation prompt, 15-25 words describing the motion>",\n'
    '      "num_frames": 33,\n'
    '      "fps": 16\n'
    '    }\n'
    '  ]\n'
    '}\n\n'
    'Rules:\n'
    '- label: 1-2 words max, e.g. "Stretch", "Tail Wag", "Nod"\n'
    '- prompt: start with "The subject" or "The <type>", describe smooth natural motion\n'
    '- Only the subject should move, background stays unchanged\n'
    '- Use 33 frames for short motions, 49 for longer/flowing motions'
)


def downscale_for_vision(png_bytes: bytes, max_dim: int = 384) -> bytes:
    """
    Shrink an image so its longest side is at most ``max_dim`` pixels.

    Vision models only need to recognise the subject; smaller input makes
    inference much faster.
    """
    image = cv2.imdecode(np.frombuffer(png_bytes, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise ValueError("Could not decode thumbnail image")

    height, width = image.shape[:2]
    if width <= max_dim and height <= max_dim:
        return png_bytes

    scale = max_dim / max(width, height)
    new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
    resized = cv2.resize(image, new_size, interpolation=cv2.INTER_AREA)

    ok, encoded = cv2.imencode('.png', resized)
    if not ok:
        raise ValueError("Could not encode downscaled thumbnail")

    logger.info(f"Downscaled cutout for vision: {width}x{height} -> {new_size[0]}x{new_size[1]}")
    return encoded.tobytes()


def parse_suggested_presets(text: str, max_duration: float = 4.0) -> List[MotionPreset]:
    """Parse and normalise the JSON answer of the vision model."""
    text = text.strip()
    match = re.search(r'\{[\s\S]*\}', text)
    result = json.loads(match.group(0) if match else text)

    raw_presets = result.get('presets') if isinstance(result, dict) else None
    if not isinstance(raw_presets, list) or not raw_presets:
        return []

    frame_cap = int(SUGGESTED_PRESET_FPS * max_duration)
    presets = []
    for raw in raw_presets[:SUGGESTED_PRESET_LIMIT]:
        if not isinstance(raw, dict):
            continue
        name = re.sub(r'[^a-z0-9-]', '-', str(raw.get('name') or 'motion'), flags=re.IGNORECASE).lower()
        presets.append(MotionPreset(
            name=name,
            label=raw.get('label') or 'Motion',
            description=raw.get('description') or '',
            prompt=raw.get('prompt') or '',
            num_frames=min(int(raw.get('num_frames') or 33), frame_cap),
            fps=int(raw.get('fps') or SUGGESTED_PRESET_FPS),
        ))

    logger.info(f"AI generated {len(presets)} presets for subject: {result.get('subject') or 'unknown'}")
    return presets


class OllamaPresetSource:
    """Suggests presets by asking a local Ollama vision model about the cutout."""

    def __init__(self, base_url: str = "http://127.0.0.1:11434", model: str = "minicpm-v",
                 max_dim: int = 384, timeout: float = 120.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.max_dim = max_dim
        self.timeout = timeout
        self.transport = transport

    async def suggest(self, png_bytes: bytes) -> List[MotionPreset]:
        image_b64 = base64.b64encode(downscale_for_vision(png_bytes, self.max_dim)).decode('ascii')
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": PRESET_PROMPT, "images": [image_b64]}],
            "format": "json",
            "stream": False,
            "options": {"num_predict": 512, "temperature": 0.7},
            "keep_alive": "10m",
        }

        logger.info(f"Generating AI presets with {self.model}...")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/api/chat", json=payload)
            response.raise_for_status()
            body = response.json()

        return parse_suggested_presets(body['message']['content'])
