"""
Tests for motion presets, motion resolution and AI preset suggestions.
"""

import asyncio
import base64
import io
import json

import httpx
import pytest
from PIL import Image

from cutout_animator.errors import SubmissionError
from cutout_animator.presets import (
    MotionPreset,
    MotionSpec,
    OllamaPresetSource,
    downscale_for_vision,
    find_preset,
    list_static_presets,
    parse_suggested_presets,
    resolve_motion,
    suggest_presets,
)


def png_bytes(width: int, height: int, mode: str = "RGBA") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), (200, 30, 30, 255)[:len(mode)]).save(buffer, format="PNG")
    return buffer.getvalue()


class TestStaticPresets:
    """Test the built-in catalogue."""

    def test_catalogue(self):
        names = [p.name for p in list_static_presets()]

        assert names == ["breathe", "sway", "bounce", "wobble", "float", "zoom"]
        assert all(p.prompt for p in list_static_presets())

    def test_find_preset(self):
        assert find_preset("sway").num_frames == 49
        assert find_preset("moonwalk") is None


class TestResolveMotion:
    """Test turning a motion spec into generation parameters."""

    def test_preset(self):
        prompt, frames, fps = resolve_motion(MotionSpec(preset="breathe"))

        assert prompt == find_preset("breathe").prompt
        assert (frames, fps) == (33, 16)

    def test_preset_frames_capped_by_duration(self):
        _, frames, _ = resolve_motion(MotionSpec(preset="sway"), max_duration=2.0)

        assert frames == 32

    def test_custom_prompt_defaults(self):
        prompt, frames, fps = resolve_motion(MotionSpec(prompt="  The subject waves  "))

        assert prompt == "The subject waves"
        assert (frames, fps) == (64, 16)

    def test_custom_prompt_frame_ceiling(self):
        _, frames, fps = resolve_motion(MotionSpec(prompt="spin", fps=24))

        assert (frames, fps) == (65, 24)

    def test_custom_prompt_explicit_frames(self):
        _, frames, _ = resolve_motion(MotionSpec(prompt="spin", num_frames=17))

        assert frames == 17

    def test_blank_prompt_rejected(self):
        with pytest.raises(SubmissionError):
            resolve_motion(MotionSpec(prompt="   "))

    def test_unknown_preset_rejected(self):
        with pytest.raises(SubmissionError):
            resolve_motion(MotionSpec(preset="moonwalk"))

    def test_from_preset_uses_prompt(self):
        preset = MotionPreset(name="tail-wag", label="Tail Wag", description="", prompt="The cat wags",
                              num_frames=49)

        prompt, frames, _ = resolve_motion(MotionSpec.from_preset(preset))

        assert (prompt, frames) == ("The cat wags", 49)


class TestParseSuggestedPresets:
    """Test normalising vision model answers."""

    def test_markdown_wrapped_answer(self):
        answer = {
            "subject": "orange cat",
            "presets": [
                {"name": "Tail Wag!", "label": "Tail Wag", "description": "Wags its tail",
                 "prompt": "The cat wags its tail", "num_frames": 97, "fps": 16},
                {"name": "yawn", "prompt": "The cat yawns"},
                {"name": "stretch", "prompt": "The cat stretches"},
                {"name": "extra", "prompt": "ignored"},
            ],
        }
        text = "Sure!\n```json\n" + json.dumps(answer) + "\n```"

        presets = parse_suggested_presets(text)

        assert [p.name for p in presets] == ["tail-wag-", "yawn", "stretch"]
        assert presets[0].num_frames == 64
        assert presets[1].label == "Motion"
        assert presets[1].num_frames == 33

    def test_no_presets(self):
        assert parse_suggested_presets('{"subject": "rock"}') == []

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_suggested_presets("not json at all")


class TestSuggestPresets:
    """Test the best-effort suggestion wrapper."""

    def test_no_source(self):
        assert asyncio.run(suggest_presets(b"png", None)) is None

    def test_failure_yields_none(self):
        class BrokenSource:
            async def suggest(self, png):
                raise ConnectionError("model not loaded")

        assert asyncio.run(suggest_presets(b"png", BrokenSource())) is None

    def test_empty_answer_yields_none(self):
        class EmptySource:
            async def suggest(self, png):
                return []

        assert asyncio.run(suggest_presets(b"png", EmptySource())) is None


class TestOllamaPresetSource:
    """Test the Ollama-backed suggestion source."""

    def test_suggest(self):
        requests = []
        answer = {"subject": "logo", "presets": [{"name": "pulse", "prompt": "The logo pulses"}]}

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"message": {"content": json.dumps(answer)}})

        source = OllamaPresetSource(base_url="http://ollama.test/", model="minicpm-v",
                                    transport=httpx.MockTransport(handler))

        presets = asyncio.run(suggest_presets(png_bytes(800, 400), source))

        assert [p.name for p in presets] == ["pulse"]
        assert str(requests[0].url) == "http://ollama.test/api/chat"
        payload = json.loads(requests[0].content)
        assert payload["model"] == "minicpm-v"
        assert payload["format"] == "json"
        image = base64.b64decode(payload["messages"][0]["images"][0])
        with Image.open(io.BytesIO(image)) as sent:
            assert sent.size == (384, 192)

    def test_unreachable_server(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        source = OllamaPresetSource(transport=httpx.MockTransport(handler))

        assert asyncio.run(suggest_presets(png_bytes(10, 10), source)) is None


class TestDownscale:
    """Test thumbnail shrinking for the vision model."""

    def test_small_image_untouched(self):
        data = png_bytes(100, 50)

        assert downscale_for_vision(data, 384) is data

    def test_longest_side_limited(self):
        data = downscale_for_vision(png_bytes(300, 1200, mode="RGB"), 384)

        with Image.open(io.BytesIO(data)) as img:
            assert img.size == (96, 384)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            downscale_for_vision(b"not an image")
