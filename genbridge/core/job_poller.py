"""Submit/poll state machine for queue-based backends.

A job is submitted with a ``Prefer: wait`` header so fast jobs come back
already resolved. Otherwise the job's own poll URL is fetched on a fixed
interval until it reaches a terminal state or the wall-clock ceiling, measured
from submission, runs out. Nothing in here retries: every non-2xx response is
fatal.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from genbridge.core.errors import ConfigurationError, JobTimeoutError, UpstreamError
from genbridge.core.models import AsyncJob, ImageInput, JobStatus
from genbridge.utils.image_utils import bytes_to_input

logger = logging.getLogger(__name__)

REPLICATE_API_BASE = "https://api.replicate.com/v1"

# Single-image edits and multi-output style transfers
EDIT_TIMEOUT = 120.0
STYLE_TRANSFER_TIMEOUT = 240.0

# Per-request socket timeouts; the submit call may be held open for prefer_wait
SUBMIT_TIMEOUT_MARGIN = 15.0
MIN_REQUEST_TIMEOUT = 1.0
POLL_REQUEST_TIMEOUT = 30.0

_STATUS_RANK = {
    JobStatus.STARTING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELED: 2,
}


class JobTracker:
    """Applies poll responses to a job, only ever moving it forward.

    Attributes:
        job: Latest accepted snapshot of the job
        history: Statuses the job has gone through, in order
    """

    def __init__(self, job: AsyncJob):
        self.job = job
        self.history: List[JobStatus] = [job.status]

    @property
    def is_terminal(self) -> bool:
        return self.job.status.is_terminal

    def apply(self, update: AsyncJob) -> AsyncJob:
        """Accept a newer snapshot of the job.

        Raises:
            UpstreamError: If the update belongs to another job or moves the
                job backwards
        """
        current = self.job.status
        if update.id != self.job.id:
            raise UpstreamError(f"Poll returned job {update.id}, expected {self.job.id}")
        if current.is_terminal:
            raise UpstreamError(f"Job {self.job.id} is already {current.value}")
        if _STATUS_RANK[update.status] < _STATUS_RANK[current]:
            raise UpstreamError(
                f"Job {self.job.id} moved backwards from {current.value} to {update.status.value}"
            )

        # Poll responses may omit urls, keep the one from submission
        if update.poll_url is None and self.job.poll_url is not None:
            update = update.model_copy(update={"urls": self.job.urls})

        if update.status != current:
            logger.debug(f"Job {self.job.id}: {current.value} -> {update.status.value}")
            self.history.append(update.status)
        self.job = update
        return update


class JobPoller:
    """Runs jobs against a Replicate-style predictions API.

    Attributes:
        api_token: Token sent as a bearer credential
        base_url: Root of the predictions API
        poll_interval: Seconds to wait between two polls
        prefer_wait: Seconds the backend may hold the submit call open
    """

    DEFAULT_POLL_INTERVAL = 1.2
    DEFAULT_PREFER_WAIT = 60

    def __init__(
        self,
        api_token: str,
        session: Optional[requests.Session] = None,
        base_url: str = REPLICATE_API_BASE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        prefer_wait: int = DEFAULT_PREFER_WAIT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_token:
            raise ConfigurationError("Replicate API token is required")
        self.api_token = api_token
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.prefer_wait = prefer_wait
        self._clock = clock
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def submit(self, model: str, input: Dict[str, Any], timeout: Optional[float] = None) -> AsyncJob:
        """Create a job for ``model`` and return its first snapshot.

        Args:
            model: Model name or version id
            input: Model inputs; None values are dropped
            timeout: Ceiling of the whole job; the request never outlives it

        Raises:
            JobTimeoutError: If the submit request itself timed out
            UpstreamError: If the backend did not accept the job
        """
        headers = self._headers()
        headers["Prefer"] = f"wait={self.prefer_wait}"
        payload = {"version": model, "input": {k: v for k, v in input.items() if v is not None}}

        request_timeout = self.prefer_wait + SUBMIT_TIMEOUT_MARGIN
        if timeout is not None:
            request_timeout = min(request_timeout, max(MIN_REQUEST_TIMEOUT, timeout))

        logger.info(f"Submitting job for {model} with inputs: {sorted(payload['input'])}")
        try:
            response = self.session.post(
                f"{self.base_url}/predictions", json=payload, headers=headers, timeout=request_timeout
            )
        except requests.Timeout as e:
            logger.error(f"Job submission for {model} timed out after {request_timeout:.0f}s")
            raise JobTimeoutError(f"Job submission timed out after {request_timeout:.0f}s") from e
        except requests.RequestException as e:
            raise UpstreamError(f"Job submission failed: {e}") from e
        job = self._parse_job(response, "Job submission")
        logger.info(f"Submitted job {job.id} ({job.status.value})")
        return job

    def poll(self, job: AsyncJob, timeout: float = POLL_REQUEST_TIMEOUT) -> AsyncJob:
        """Fetch the current snapshot of ``job`` from its poll URL.

        Raises:
            ConfigurationError: If the job carries no poll URL
            JobTimeoutError: If the poll request timed out
            UpstreamError: If the poll request failed
        """
        if not job.poll_url:
            raise ConfigurationError(f"Job {job.id} has no poll URL")
        try:
            response = self.session.get(job.poll_url, headers=self._headers(), timeout=timeout)
        except requests.Timeout as e:
            logger.error(f"Polling job {job.id} timed out after {timeout:.1f}s")
            raise JobTimeoutError(f"Polling job {job.id} timed out after {timeout:.1f}s") from e
        except requests.RequestException as e:
            raise UpstreamError(f"Polling job {job.id} failed: {e}") from e
        return self._parse_job(response, f"Polling job {job.id}")

    def wait(self, job: AsyncJob, timeout: float, started_at: Optional[float] = None) -> AsyncJob:
        """Poll ``job`` until it is terminal.

        Args:
            job: Snapshot returned by submit
            timeout: Wall-clock ceiling in seconds
            started_at: Clock reading at submission (defaults to now)

        Returns:
            The terminal snapshot of the job

        Raises:
            JobTimeoutError: If the ceiling elapsed first
            ConfigurationError: If a non-terminal job has no poll URL
            UpstreamError: If a poll request failed
        """
        started_at = self._clock() if started_at is None else started_at
        tracker = JobTracker(job)

        while not tracker.is_terminal:
            elapsed = self._clock() - started_at
            if elapsed > timeout:
                logger.error(f"Job {job.id} still {tracker.job.status.value} after {elapsed:.1f}s")
                raise JobTimeoutError(f"Job {job.id} did not finish within {timeout:.0f}s")
            if not tracker.job.poll_url:
                raise ConfigurationError(f"Job {job.id} is {tracker.job.status.value} but has no poll URL")
            self._sleep(self.poll_interval)
            remaining = timeout - (self._clock() - started_at)
            tracker.apply(self.poll(tracker.job, timeout=max(MIN_REQUEST_TIMEOUT, remaining)))

        logger.info(f"Job {job.id} finished as {tracker.job.status.value}")
        return tracker.job

    def run(self, model: str, input: Dict[str, Any], timeout: float = EDIT_TIMEOUT) -> AsyncJob:
        """Submit a job and wait for its terminal snapshot."""
        started_at = self._clock()
        job = self.submit(model, input, timeout=timeout)
        return self.wait(job, timeout=timeout, started_at=started_at)

    def resolve_outputs(self, job: AsyncJob, limit: Optional[int] = None) -> List[ImageInput]:
        """Download the outputs of a terminal job.

        Element 0 is the primary result; the rest are kept for callers that
        asked one job for several variants.

        Raises:
            UpstreamError: If the job did not succeed or returned no output
        """
        if job.status != JobStatus.SUCCEEDED:
            if job.status == JobStatus.CANCELED:
                raise UpstreamError(job.error or f"Job {job.id} was canceled")
            raise UpstreamError(job.error or f"Job {job.id} failed")

        urls = job.output_urls()
        if limit is not None:
            urls = urls[:limit]
        if not urls:
            raise UpstreamError(f"Job {job.id} returned no output image")
        return [self.fetch_output(url) for url in urls]

    def fetch_output(self, url: str) -> ImageInput:
        """Fetch an output URL and return it as embeddable bytes."""
        try:
            response = self.session.get(url, timeout=60)
        except requests.RequestException as e:
            raise UpstreamError(f"Failed to download output {url}: {e}") from e
        if not response.ok:
            raise UpstreamError(f"Failed to download output ({response.status_code})", response.status_code)

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        logger.debug(f"Downloaded output {url} ({len(response.content)} bytes)")
        return bytes_to_input(response.content, content_type if content_type.startswith("image/") else None)

    @staticmethod
    def _parse_job(response: requests.Response, context: str) -> AsyncJob:
        if not response.ok:
            logger.error(f"{context} returned {response.status_code}")
            raise UpstreamError(f"{context} failed ({response.status_code})", response.status_code)
        try:
            return AsyncJob.model_validate(response.json())
        except ValueError as e:
            raise UpstreamError(f"{context} returned an invalid job: {e}") from e
