"""
Remote job orchestration for Cutout Animator.

This module handles the queue protocol of the image-to-video service:
1. Submit a generation request and keep the status/response URLs it returns
2. Poll the status URL once per interval until a terminal state
3. Fetch the result payload and download the generated video

The status and response URLs encode routing state that cannot be rebuilt
from the request id, so they are stored on the job and used verbatim.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .config import Config
from .errors import (
    DownloadError,
    PollTimeoutError,
    RemoteFailure,
    SubmissionError,
)
from .progress import ProgressChannel, Stage
from .uploader import describe_error_body

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    SUBMITTED = "SUBMITTED"
    QUEUED = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT)

    @classmethod
    def from_wire(cls, value: Optional[str]) -> "JobStatus":
        # Unknown states keep the job alive as in-progress
        for status in (cls.QUEUED, cls.IN_PROGRESS, cls.COMPLETED, cls.FAILED):
            if value == status.value:
                return status
        return cls.IN_PROGRESS


@dataclass
class GenerationRequest:
    """Motion prompt and numeric parameters for one generation job."""
    prompt: str
    num_frames: int
    fps: int

    def to_payload(self, image_url: str, config: Config) -> Dict[str, Any]:
        return {
            "image_url": image_url,
            "prompt": self.prompt,
            "negative_prompt": config.negative_prompt,
            "num_frames": self.num_frames,
            "frames_per_second": self.fps,
            "resolution": config.resolution,
            "aspect_ratio": config.aspect_ratio,
            "num_inference_steps": config.num_inference_steps,
            "guidance_scale": config.guidance_scale,
            "enable_safety_checker": config.enable_safety_checker,
        }


@dataclass
class GenerationJob:
    """A submitted job, owned by the orchestrator until it resolves."""
    request_id: str
    status_url: str
    response_url: str
    status: JobStatus = JobStatus.SUBMITTED
    poll_count: int = 0


def poll_progress(status: JobStatus, poll_count: int) -> int:
    """Percentage shown while waiting: slow creep in the queue, faster while generating."""
    if status == JobStatus.QUEUED:
        return min(15, poll_count * 2)
    return min(90, 15 + poll_count * 3)


def video_url_from_result(payload: Any) -> str:
    """Extract the generated video URL from a completed job payload."""
    video = payload.get('video') if isinstance(payload, dict) else None
    url = video.get('url') if isinstance(video, dict) else None
    if not url:
        raise RemoteFailure("Service returned no video URL")
    return url


class JobOrchestrator:
    """Submits generation jobs and drives them to a terminal state."""

    def __init__(self, client: httpx.AsyncClient, config: Config,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.client = client
        self.config = config
        self._sleep = sleep

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Key {self.config.require_api_key()}"}

    async def submit(self, image_url: str, request: GenerationRequest) -> GenerationJob:
        """
        Submit a generation job.

        Args:
            image_url: Reference URL of the uploaded, composited image
            request: Prompt and frame parameters

        Returns:
            GenerationJob holding the polling URLs returned by the service
        """
        endpoint = f"{self.config.queue_base_url.rstrip('/')}/{self.config.model_id}"
        payload = request.to_payload(image_url, self.config)

        try:
            response = await self.client.post(endpoint, json=payload, headers=self._auth_headers())
        except httpx.HTTPError as e:
            raise SubmissionError(f"Job submission failed: {e}") from e

        if not response.is_success:
            raise SubmissionError(
                f"Job rejected (HTTP {response.status_code}): {describe_error_body(response)}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SubmissionError(f"Job submission returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise SubmissionError(f"Unexpected submission response: {body}")

        request_id = body.get('request_id')
        status_url = body.get('status_url')
        response_url = body.get('response_url')
        if not request_id or not status_url or not response_url:
            raise SubmissionError("Submission did not return request_id/status_url/response_url")

        logger.info(f"Job submitted, request_id: {request_id}")
        return GenerationJob(request_id=request_id, status_url=status_url, response_url=response_url)

    async def poll(self, job: GenerationJob,
                   progress: Optional[ProgressChannel] = None) -> Dict[str, Any]:
        """
        Poll a job until it completes, fails or exhausts the poll budget.

        Transient status errors are retried with a longer backoff and count
        against the same budget as successful polls.

        Returns:
            Result payload read from the job's response URL
        """
        max_polls = self.config.max_polls
        await self._sleep(self.config.poll_initial_delay)

        while True:
            job.poll_count += 1
            if job.poll_count > max_polls:
                job.status = JobStatus.TIMED_OUT
                raise PollTimeoutError(
                    f"Job {job.request_id} did not finish after {max_polls} polls",
                    polls=max_polls,
                )

            try:
                response = await self.client.get(job.status_url, headers=self._auth_headers())
                response.raise_for_status()
                status_body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Poll #{job.poll_count} for {job.request_id} failed: {e}")
                await self._sleep(self.config.poll_error_backoff)
                continue

            if not isinstance(status_body, dict):
                status_body = {}
            job.status = JobStatus.from_wire(status_body.get('status'))
            logger.info(f"Poll #{job.poll_count} - status: {job.status.value}")

            if job.status == JobStatus.COMPLETED:
                return await self._fetch_result(job)

            if job.status == JobStatus.FAILED:
                raise RemoteFailure(f"Animation failed: {status_body.get('error') or 'Unknown error'}")

            if progress is not None:
                self._report(progress, job, status_body)

            await self._sleep(self.config.poll_interval)

    def _report(self, progress: ProgressChannel, job: GenerationJob, status_body: Dict[str, Any]):
        percent = poll_progress(job.status, job.poll_count)
        if job.status == JobStatus.QUEUED:
            position = status_body.get('queue_position')
            message = "In queue" + (f" (position {position})" if position else "") + "…"
            progress.publish(Stage.IN_QUEUE, percent, message)
        else:
            progress.publish(Stage.GENERATING, percent, "Generating…")

    async def _fetch_result(self, job: GenerationJob) -> Dict[str, Any]:
        try:
            response = await self.client.get(job.response_url, headers=self._auth_headers())
        except httpx.HTTPError as e:
            raise RemoteFailure(f"Could not read result of {job.request_id}: {e}") from e

        if not response.is_success:
            raise RemoteFailure(
                f"Could not read result of {job.request_id} "
                f"(HTTP {response.status_code}): {describe_error_body(response)}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise RemoteFailure(f"Result of {job.request_id} is not valid JSON: {e}") from e

    async def download(self, url: str) -> bytes:
        """Download the generated video, following redirects."""
        try:
            response = await self.client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise DownloadError(f"Video download failed: {e}") from e

        if not response.is_success:
            raise DownloadError(f"HTTP {response.status_code} fetching video")

        data = response.content
        logger.info(f"Video downloaded: {len(data) / 1024:.1f} KB")
        return data

    async def run(self, image_url: str, request: GenerationRequest,
                  progress: Optional[ProgressChannel] = None) -> bytes:
        """Submit, poll until completion and download the resulting video."""
        job = await self.submit(image_url, request)
        if progress is not None:
            progress.publish(Stage.IN_QUEUE, 15, "Generating video…")

        result = await self.poll(job, progress)
        video_url = video_url_from_result(result)
        logger.info(f"Video generated: {video_url}")

        if progress is not None:
            progress.publish(Stage.DOWNLOADING, 92, "Downloading video…")
        return await self.download(video_url)
