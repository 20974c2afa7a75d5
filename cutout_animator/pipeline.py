"""
Animation generation pipeline for Cutout Animator.

This module implements the end-to-end flow for one cutout:
1. Composite the cutout onto the chroma-key colour
2. Upload the composited image to the generation service
3. Submit the job and poll it to completion
4. Download the generated video
5. Decode, key and encode it in the isolated worker process

Steps run strictly in sequence; one pipeline call handles one job.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

from .chroma import CutoutImage, composite_forward
from .config import Config
from .orchestrator import GenerationRequest, JobOrchestrator
from .presets import MotionSpec, resolve_motion
from .progress import ProgressCallback, ProgressChannel, Stage
from .uploader import MediaUploader
from .worker_host import AnimationResult, extract_and_encode

logger = logging.getLogger(__name__)

FinishedCallback = Callable[[Optional[BaseException]], None]


@dataclass
class AnimationOptions:
    fps: Optional[int] = None
    loops: Optional[int] = None  # None uses the configured default


class AnimationPipeline:
    """Turns a transparent cutout into a looping GIF and APNG."""

    def __init__(self, config: Config,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 worker_command: Optional[List[str]] = None,
                 sleep=asyncio.sleep):
        """
        Args:
            config: Credentials, endpoints and encoding settings for this pipeline
            transport: Optional httpx transport (used to stub the remote service)
            worker_command: Optional command line for the encoder worker
            sleep: Coroutine used between polls
        """
        self.config = config
        self.transport = transport
        self.worker_command = worker_command
        self._sleep = sleep

    async def generate(self, cutout: CutoutImage, motion: MotionSpec,
                       options: Optional[AnimationOptions] = None,
                       on_progress: Optional[ProgressCallback] = None,
                       on_finished: Optional[FinishedCallback] = None) -> AnimationResult:
        """
        Generate an animation for a cutout.

        ``on_progress`` is subscribed for the duration of the call only.
        ``on_finished`` is called exactly once with None on success or the
        raised error, so callers can restore their UI on every path.

        Returns:
            AnimationResult with GIF and APNG buffers
        """
        channel = ProgressChannel()
        error = None
        try:
            with channel.subscribed(on_progress):
                return await self._run(cutout, motion, options or AnimationOptions(), channel)
        except BaseException as e:
            error = e
            logger.error(f"Animation failed: {e}")
            raise
        finally:
            if on_finished is not None:
                on_finished(error)

    async def _run(self, cutout: CutoutImage, motion: MotionSpec,
                   options: AnimationOptions, progress: ProgressChannel) -> AnimationResult:
        config = self.config
        config.require_api_key()

        prompt, num_frames, fps = resolve_motion(
            motion,
            default_fps=options.fps or config.default_fps,
            max_duration=config.max_duration_seconds,
            max_custom_frames=config.max_custom_frames,
        )
        loops = options.loops if options.loops is not None else config.default_loops
        logger.info(f"Starting generation: {num_frames} frames @ {fps} fps")

        progress.publish(Stage.UPLOADING, 5, "Uploading image…")
        settings = config.chroma_settings()
        composited = composite_forward(cutout, settings)

        async with httpx.AsyncClient(timeout=config.request_timeout, transport=self.transport) as client:
            uploader = MediaUploader(client, config)
            image_url = await uploader.upload(composited.to_png_bytes(), "cutout.png")

            progress.publish(Stage.SUBMITTING, 10, "Starting generation…")
            orchestrator = JobOrchestrator(client, config, sleep=self._sleep)
            request = GenerationRequest(prompt=prompt, num_frames=num_frames, fps=fps)
            video_bytes = await orchestrator.run(image_url, request, progress)

        progress.publish(Stage.ENCODING, 95, "Encoding GIF…")

        def on_frame(frame: int, total: int):
            progress.publish(
                Stage.ENCODING,
                95 + round(frame / total * 5),
                f"Encoding frame {frame}/{total}…",
            )

        expected_size = (composited.width, composited.height) if config.require_matching_size else None
        result = await extract_and_encode(
            video_bytes, fps, loops, config.max_duration_seconds,
            use_chroma_key=True,
            settings=settings,
            on_progress=on_frame,
            command=self.worker_command,
            timeout=config.worker_timeout,
            expected_size=expected_size,
        )

        progress.publish(Stage.DONE, 100, "Done")
        return result


async def generate_animation(cutout: CutoutImage, motion: MotionSpec, options: AnimationOptions,
                             config: Config,
                             on_progress: Optional[ProgressCallback] = None,
                             on_finished: Optional[FinishedCallback] = None,
                             transport: Optional[httpx.AsyncBaseTransport] = None,
                             worker_command: Optional[List[str]] = None) -> AnimationResult:
    """Convenience wrapper running a single job through a fresh pipeline."""
    pipeline = AnimationPipeline(config, transport=transport, worker_command=worker_command)
    return await pipeline.generate(cutout, motion, options, on_progress, on_finished)
