#!/usr/bin/env python3
"""
Cutout Animator - Main Application

Turns a transparent cutout PNG into a short looping animation using a remote
image-to-video model, then restores the transparency the model cannot keep.

This application implements the pipeline:
- Chroma-key compositing onto magenta before upload
- Remote job submission, polling and download
- Per-frame chroma-key removal in an isolated worker process
- Export as palette GIF and true-alpha APNG
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path
from typing import Optional

# Import our modules
from cutout_animator.config import Config, load_config
from cutout_animator.chroma import CutoutImage
from cutout_animator.errors import AnimationError
from cutout_animator.pipeline import AnimationOptions, AnimationPipeline
from cutout_animator.presets import (
    MotionSpec,
    OllamaPresetSource,
    list_static_presets,
    suggest_presets,
)
from cutout_animator.progress import ProgressEvent

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('cutout_animator.log')
    ]
)
logger = logging.getLogger(__name__)


class CutoutAnimatorApp:
    """Main application class for the Cutout Animator."""

    def __init__(self, config_path: str, output_dir: str):
        """Initialize the application with configuration."""
        self.config: Config = load_config(config_path)
        self.output_dir = Path(output_dir)
        self.pipeline = AnimationPipeline(self.config)

        logger.info("Cutout Animator initialized")
        logger.info(f"Configuration loaded from: {config_path}")

    def validate_inputs(self, cutout_path: Path) -> bool:
        """Validate that the cutout exists and credentials are configured."""
        if not cutout_path.exists():
            logger.error(f"Cutout image not found: {cutout_path}")
            return False

        if not self.config.api_key:
            logger.error("No fal.ai API key configured")
            logger.error("Set FAL_KEY or add api_key to your config.yaml")
            return False

        logger.info(f"Cutout: {cutout_path}")
        return True

    def on_progress(self, event: ProgressEvent):
        logger.info(f"[{event.stage.value}] {event.percent:3d}% {event.message}")

    async def suggest(self, cutout_path: Path):
        """Print AI-suggested presets, or the static ones when suggestions are unavailable."""
        source = OllamaPresetSource(
            base_url=self.config.ollama_url,
            model=self.config.ollama_model,
            max_dim=self.config.vision_max_dim,
        )
        presets = await suggest_presets(cutout_path.read_bytes(), source)
        if presets is None:
            logger.info("Using static presets")
            presets = list_static_presets()

        for preset in presets:
            print(f"{preset.name:12s} {preset.label:12s} {preset.description}")
            print(f"{'':12s} prompt: {preset.prompt}")

    async def animate(self, cutout_path: Path, motion: MotionSpec, options: AnimationOptions):
        """Run the animation pipeline and write the GIF and APNG next to each other."""
        cutout = CutoutImage.from_file(cutout_path)

        result = await self.pipeline.generate(cutout, motion, options, on_progress=self.on_progress)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        gif_path = self.output_dir / f"{cutout_path.stem}.gif"
        apng_path = self.output_dir / f"{cutout_path.stem}.png"
        gif_path.write_bytes(result.palette_buffer)
        apng_path.write_bytes(result.true_alpha_buffer)

        logger.info(f"{result.frame_count} frames ({result.width}x{result.height})")
        logger.info(f"GIF saved: {gif_path}")
        logger.info(f"APNG saved: {apng_path}")


def list_presets():
    for preset in list_static_presets():
        print(f"{preset.name:12s} {preset.label:12s} {preset.num_frames:3d} frames @ {preset.fps} fps"
              f"  {preset.description}")


def main(argv: Optional[list] = None):
    """Main entry point for the Cutout Animator."""
    parser = argparse.ArgumentParser(
        description="Cutout Animator - Animate transparent cutouts with AI"
    )
    parser.add_argument(
        "cutout",
        nargs="?",
        help="Path to a transparent PNG cutout"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )
    motion_group = parser.add_mutually_exclusive_group()
    motion_group.add_argument(
        "--preset",
        type=str,
        default="breathe",
        help="Name of a static motion preset (default: breathe)"
    )
    motion_group.add_argument(
        "--prompt",
        type=str,
        help="Free-text description of the motion"
    )
    parser.add_argument(
        "--frames",
        type=int,
        help="Frame count for a custom prompt"
    )
    parser.add_argument(
        "--fps",
        type=int,
        help="Frame rate (default from config)"
    )
    parser.add_argument(
        "--loops",
        type=int,
        help="Loop count, 0 loops forever (default from config)"
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Directory for the GIF and APNG (default: output)"
    )
    parser.add_argument(
        "--list-presets",
        action="store_true",
        help="List static presets and exit"
    )
    parser.add_argument(
        "--suggest",
        action="store_true",
        help="Ask the local vision model for presets suited to the cutout"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.list_presets:
        list_presets()
        return

    if not args.cutout:
        parser.error("a cutout image is required")

    try:
        app = CutoutAnimatorApp(args.config, args.output_dir)
        cutout_path = Path(args.cutout)

        if args.suggest:
            asyncio.run(app.suggest(cutout_path))
            return

        if not app.validate_inputs(cutout_path):
            sys.exit(1)

        if args.prompt:
            motion = MotionSpec(prompt=args.prompt, num_frames=args.frames, fps=args.fps)
        else:
            motion = MotionSpec(preset=args.preset)
        options = AnimationOptions(fps=args.fps, loops=args.loops)

        asyncio.run(app.animate(cutout_path, motion, options))

    except KeyboardInterrupt:
        logger.info("Processing interrupted by user")
        sys.exit(1)
    except AnimationError as e:
        logger.error(f"Animation failed ({type(e).__name__}): {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
