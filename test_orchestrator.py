"""
Tests for media upload and remote job orchestration against a stubbed service.
"""

import asyncio
import json

import httpx
import pytest

from cutout_animator.config import Config
from cutout_animator.errors import (
    ConfigError,
    DownloadError,
    PollTimeoutError,
    RemoteFailure,
    SubmissionError,
    UploadInitError,
    UploadTransferError,
)
from cutout_animator.orchestrator import (
    GenerationJob,
    GenerationRequest,
    JobOrchestrator,
    JobStatus,
    poll_progress,
    video_url_from_result,
)
from cutout_animator.progress import ProgressChannel, Stage
from cutout_animator.uploader import MediaUploader

UPLOAD_INIT_URL = "https://rest.test/storage/upload/initiate"
QUEUE_BASE_URL = "https://queue.test"
MODEL_ID = "acme/image-to-video"
# Deliberately not derivable from the request id
STATUS_URL = "https://queue.test/acme/requests/abc-123/status"
RESPONSE_URL = "https://queue.test/acme/requests/abc-123"


def make_config(**overrides) -> Config:
    values = dict(
        api_key="test-key",
        upload_init_url=UPLOAD_INIT_URL,
        queue_base_url=QUEUE_BASE_URL,
        model_id=MODEL_ID,
        max_polls=10,
    )
    values.update(overrides)
    return Config(**values)


class FakeService:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self, statuses=None):
        self.requests = []
        self.statuses = list(statuses or ["COMPLETED"])
        self.status_polls = 0
        self.overrides = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url in self.overrides:
            override = self.overrides[url]
            return override(request) if callable(override) else override

        if url == UPLOAD_INIT_URL:
            return httpx.Response(200, json={
                "upload_url": "https://upload.test/slot/1",
                "file_url": "https://cdn.test/cutout.png",
            })
        if url == "https://upload.test/slot/1":
            return httpx.Response(200)
        if url == f"{QUEUE_BASE_URL}/{MODEL_ID}":
            return httpx.Response(200, json={
                "request_id": "abc-123",
                "status_url": STATUS_URL,
                "response_url": RESPONSE_URL,
            })
        if url == STATUS_URL:
            index = min(self.status_polls, len(self.statuses) - 1)
            self.status_polls += 1
            status = self.statuses[index]
            if isinstance(status, Exception):
                raise status
            if isinstance(status, httpx.Response):
                return status
            return httpx.Response(200, json={"status": status, "queue_position": 2})
        if url == RESPONSE_URL:
            return httpx.Response(200, json={"video": {"url": "https://cdn.test/video.mp4"}})
        if url == "https://cdn.test/video.mp4":
            return httpx.Response(302, headers={"Location": "https://cdn.test/real/video.mp4"})
        if url == "https://cdn.test/real/video.mp4":
            return httpx.Response(200, content=b"fake-mp4-bytes")
        return httpx.Response(404, json={"detail": f"No route for {url}"})

    def urls(self, method=None):
        return [str(r.url) for r in self.requests if method is None or r.method == method]


class Sleeper:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def run_with_client(service: FakeService, action):
    async def runner():
        async with httpx.AsyncClient(transport=httpx.MockTransport(service.handler)) as client:
            return await action(client)
    return asyncio.run(runner())


def make_job() -> GenerationJob:
    return GenerationJob(request_id="abc-123", status_url=STATUS_URL, response_url=RESPONSE_URL)


class TestMediaUploader:
    """Test the two-phase upload."""

    def test_upload_returns_file_url(self):
        service = FakeService()
        config = make_config()

        url = run_with_client(service, lambda c: MediaUploader(c, config).upload(b"png-bytes"))

        assert url == "https://cdn.test/cutout.png"
        init, put = service.requests
        assert init.headers["Authorization"] == "Key test-key"
        assert json.loads(init.content) == {"content_type": "image/png", "file_name": "cutout.png"}
        assert put.method == "PUT"
        assert put.content == b"png-bytes"
        assert put.headers["Content-Type"] == "image/png"
        assert put.headers["Content-Length"] == "9"

    def test_init_rejection(self):
        service = FakeService()
        service.overrides[UPLOAD_INIT_URL] = httpx.Response(401, json={"detail": "Invalid key"})

        with pytest.raises(UploadInitError, match="Invalid key"):
            run_with_client(service, lambda c: MediaUploader(c, make_config()).upload(b"x"))
        assert service.urls("PUT") == []

    def test_init_missing_urls(self):
        service = FakeService()
        service.overrides[UPLOAD_INIT_URL] = httpx.Response(200, json={"file_url": "https://cdn.test/x"})

        with pytest.raises(UploadInitError):
            run_with_client(service, lambda c: MediaUploader(c, make_config()).upload(b"x"))

    def test_transfer_failure(self):
        service = FakeService()
        service.overrides["https://upload.test/slot/1"] = httpx.Response(500, text="storage down")

        with pytest.raises(UploadTransferError, match="500"):
            run_with_client(service, lambda c: MediaUploader(c, make_config()).upload(b"x"))

    def test_missing_api_key_fails_before_network(self):
        service = FakeService()

        with pytest.raises(ConfigError):
            run_with_client(service, lambda c: MediaUploader(c, make_config(api_key=None)).upload(b"x"))
        assert service.requests == []


class TestSubmit:
    """Test job submission."""

    def test_submit_keeps_returned_urls(self):
        service = FakeService()
        request = GenerationRequest(prompt="The subject waves", num_frames=33, fps=16)

        job = run_with_client(
            service,
            lambda c: JobOrchestrator(c, make_config()).submit("https://cdn.test/cutout.png", request),
        )

        assert job.request_id == "abc-123"
        assert job.status_url == STATUS_URL
        assert job.response_url == RESPONSE_URL
        assert job.status == JobStatus.SUBMITTED

        payload = json.loads(service.requests[0].content)
        assert payload["image_url"] == "https://cdn.test/cutout.png"
        assert payload["prompt"] == "The subject waves"
        assert payload["num_frames"] == 33
        assert payload["frames_per_second"] == 16
        assert payload["resolution"] == "480p"

    def test_rejected_submission(self):
        service = FakeService()
        service.overrides[f"{QUEUE_BASE_URL}/{MODEL_ID}"] = httpx.Response(
            422, json={"detail": "num_frames out of range"}
        )
        request = GenerationRequest(prompt="p", num_frames=999, fps=16)

        with pytest.raises(SubmissionError, match="num_frames out of range"):
            run_with_client(service, lambda c: JobOrchestrator(c, make_config()).submit("u", request))

    def test_submission_without_status_url(self):
        service = FakeService()
        service.overrides[f"{QUEUE_BASE_URL}/{MODEL_ID}"] = httpx.Response(
            200, json={"request_id": "abc-123", "response_url": RESPONSE_URL}
        )
        request = GenerationRequest(prompt="p", num_frames=33, fps=16)

        with pytest.raises(SubmissionError):
            run_with_client(service, lambda c: JobOrchestrator(c, make_config()).submit("u", request))


class TestPoll:
    """Test polling to a terminal state."""

    def test_completed_reads_response_url(self):
        service = FakeService(["IN_QUEUE", "IN_PROGRESS", "COMPLETED"])
        sleeper = Sleeper()
        job = make_job()

        result = run_with_client(
            service, lambda c: JobOrchestrator(c, make_config(), sleep=sleeper).poll(job)
        )

        assert video_url_from_result(result) == "https://cdn.test/video.mp4"
        assert job.status == JobStatus.COMPLETED
        assert service.urls("GET") == [STATUS_URL] * 3 + [RESPONSE_URL]
        assert sleeper.delays == [2.0, 1.0, 1.0]

    def test_poll_ceiling(self):
        service = FakeService(["IN_PROGRESS"])
        job = make_job()

        with pytest.raises(PollTimeoutError) as excinfo:
            run_with_client(
                service,
                lambda c: JobOrchestrator(c, make_config(max_polls=5), sleep=Sleeper()).poll(job),
            )

        assert service.status_polls == 5
        assert excinfo.value.polls == 5
        assert job.status == JobStatus.TIMED_OUT

    def test_remote_failure(self):
        service = FakeService()
        service.overrides[STATUS_URL] = httpx.Response(200, json={"status": "FAILED", "error": "NSFW input"})

        with pytest.raises(RemoteFailure, match="NSFW input"):
            run_with_client(
                service, lambda c: JobOrchestrator(c, make_config(), sleep=Sleeper()).poll(make_job())
            )

    def test_transient_errors_retried_with_backoff(self):
        service = FakeService([
            httpx.ConnectError("connection reset"),
            httpx.Response(503, text="busy"),
            "COMPLETED",
        ])
        sleeper = Sleeper()

        result = run_with_client(
            service, lambda c: JobOrchestrator(c, make_config(), sleep=sleeper).poll(make_job())
        )

        assert result["video"]["url"] == "https://cdn.test/video.mp4"
        assert sleeper.delays == [2.0, 2.0, 2.0]

    def test_transient_errors_count_against_ceiling(self):
        service = FakeService([httpx.ConnectError("down")])

        with pytest.raises(PollTimeoutError):
            run_with_client(
                service,
                lambda c: JobOrchestrator(c, make_config(max_polls=3), sleep=Sleeper()).poll(make_job()),
            )
        assert service.status_polls == 3

    def test_unknown_status_keeps_polling(self):
        service = FakeService(["WARMING_UP", "COMPLETED"])
        job = make_job()

        run_with_client(service, lambda c: JobOrchestrator(c, make_config(), sleep=Sleeper()).poll(job))

        assert job.poll_count == 2

    def test_result_read_failure(self):
        service = FakeService()
        service.overrides[RESPONSE_URL] = httpx.Response(500, text="oops")

        with pytest.raises(RemoteFailure):
            run_with_client(
                service, lambda c: JobOrchestrator(c, make_config(), sleep=Sleeper()).poll(make_job())
            )

    def test_progress_reported_while_waiting(self):
        service = FakeService(["IN_QUEUE", "IN_QUEUE", "IN_PROGRESS", "IN_PROGRESS", "COMPLETED"])
        channel = ProgressChannel()
        events = []
        channel.subscribe(events.append)

        run_with_client(
            service, lambda c: JobOrchestrator(c, make_config(), sleep=Sleeper()).poll(make_job(), channel)
        )

        assert [e.stage for e in events] == [Stage.IN_QUEUE] * 2 + [Stage.GENERATING] * 2
        assert [e.percent for e in events] == [2, 4, 24, 27]
        assert "position 2" in events[0].message


class TestRunAndDownload:
    """Test the full remote round trip."""

    def test_run_downloads_following_redirects(self):
        service = FakeService(["IN_PROGRESS", "COMPLETED"])
        channel = ProgressChannel()
        events = []
        channel.subscribe(events.append)
        request = GenerationRequest(prompt="p", num_frames=33, fps=16)

        video = run_with_client(
            service,
            lambda c: JobOrchestrator(c, make_config(), sleep=Sleeper()).run("https://cdn.test/cutout.png",
                                                                             request, channel),
        )

        assert video == b"fake-mp4-bytes"
        assert events[0].stage == Stage.IN_QUEUE
        assert events[-1].stage == Stage.DOWNLOADING
        assert events[-1].percent == 92

    def test_download_failure(self):
        service = FakeService()
        service.overrides["https://cdn.test/video.mp4"] = httpx.Response(404)

        with pytest.raises(DownloadError, match="404"):
            run_with_client(
                service, lambda c: JobOrchestrator(c, make_config()).download("https://cdn.test/video.mp4")
            )

    def test_missing_video_url(self):
        with pytest.raises(RemoteFailure):
            video_url_from_result({"video": None})


class TestPollProgress:
    """Test the waiting percentage curve."""

    def test_queue_creeps_to_fifteen(self):
        assert poll_progress(JobStatus.QUEUED, 3) == 6
        assert poll_progress(JobStatus.QUEUED, 50) == 15

    def test_generating_caps_at_ninety(self):
        assert poll_progress(JobStatus.IN_PROGRESS, 1) == 18
        assert poll_progress(JobStatus.IN_PROGRESS, 100) == 90
