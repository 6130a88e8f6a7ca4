"""Unit tests for the async job poller."""

import pytest
import requests

from genbridge.core.errors import ConfigurationError, JobTimeoutError, UpstreamError
from genbridge.core.job_poller import JobPoller, JobTracker
from genbridge.core.models import AsyncJob, JobStatus


def job_json(status, job_id="job-1", output=None, error=None, poll_url="https://api.replicate.com/v1/predictions/job-1"):
    data = {"id": job_id, "status": status, "output": output, "error": error}
    if poll_url:
        data["urls"] = {"get": poll_url}
    return data


class FakeClock:
    """Manual clock advanced by the poller's sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(mock_session, clock):
    return JobPoller("r8_test_token", session=mock_session, clock=clock, sleep=clock.sleep)


class TestJobTracker:
    """Tests for forward-only job state tracking."""

    def test_forward_transitions_recorded(self):
        tracker = JobTracker(AsyncJob(id="a", status=JobStatus.STARTING))

        tracker.apply(AsyncJob(id="a", status=JobStatus.PROCESSING))
        tracker.apply(AsyncJob(id="a", status=JobStatus.PROCESSING))
        tracker.apply(AsyncJob(id="a", status=JobStatus.SUCCEEDED, output="https://x/a.png"))

        assert tracker.history == [JobStatus.STARTING, JobStatus.PROCESSING, JobStatus.SUCCEEDED]
        assert tracker.is_terminal

    def test_backward_transition_rejected(self):
        tracker = JobTracker(AsyncJob(id="a", status=JobStatus.PROCESSING))

        with pytest.raises(UpstreamError, match="backwards"):
            tracker.apply(AsyncJob(id="a", status=JobStatus.STARTING))

    @pytest.mark.parametrize("terminal", [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED])
    def test_terminal_job_accepts_nothing(self, terminal):
        """Test that a terminal job never revisits starting or processing."""
        tracker = JobTracker(AsyncJob(id="a", status=terminal))

        for status in JobStatus:
            with pytest.raises(UpstreamError):
                tracker.apply(AsyncJob(id="a", status=status))
        assert tracker.job.status == terminal

    def test_other_job_rejected(self):
        tracker = JobTracker(AsyncJob(id="a"))

        with pytest.raises(UpstreamError, match="expected a"):
            tracker.apply(AsyncJob(id="b", status=JobStatus.PROCESSING))

    def test_poll_url_kept_when_update_omits_it(self):
        tracker = JobTracker(AsyncJob.model_validate(job_json("starting", job_id="a")))

        tracker.apply(AsyncJob(id="a", status=JobStatus.PROCESSING))

        assert tracker.job.poll_url == "https://api.replicate.com/v1/predictions/job-1"


class TestJobPollerSubmit:
    """Tests for job submission."""

    def test_empty_token_rejected(self):
        with pytest.raises(ConfigurationError):
            JobPoller("")

    def test_submit_request(self, poller, mock_session, response_factory):
        """Test the submit call carries the wait preference and drops unset inputs."""
        mock_session.post.return_value = response_factory(201, job_json("starting"))

        job = poller.submit("owner/model", {"prompt": "a cat", "seed": None})

        url = mock_session.post.call_args[0][0]
        kwargs = mock_session.post.call_args[1]
        assert url == "https://api.replicate.com/v1/predictions"
        assert kwargs["json"] == {"version": "owner/model", "input": {"prompt": "a cat"}}
        assert kwargs["headers"]["Prefer"] == "wait=60"
        assert kwargs["headers"]["Authorization"] == "Bearer r8_test_token"
        assert job.status == JobStatus.STARTING
        assert job.poll_url.endswith("/job-1")

    def test_submit_non_2xx_is_fatal(self, poller, mock_session, response_factory):
        mock_session.post.return_value = response_factory(422, {"detail": "bad input"}, reason="Unprocessable")

        with pytest.raises(UpstreamError) as exc_info:
            poller.submit("owner/model", {})
        assert exc_info.value.status_code == 422
        assert mock_session.post.call_count == 1

    def test_submit_network_error(self, poller, mock_session):
        mock_session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(UpstreamError, match="refused"):
            poller.submit("owner/model", {})


class TestJobPollerRun:
    """Tests for the submit-then-poll loop."""

    def test_processing_twice_then_succeeded(self, poller, mock_session, clock, response_factory):
        """Test a job resolving after two processing polls yields exactly one artifact."""
        mock_session.post.return_value = response_factory(201, job_json("starting"))
        mock_session.get.side_effect = [
            response_factory(200, job_json("processing")),
            response_factory(200, job_json("processing")),
            response_factory(200, job_json("succeeded", output=["https://x/a.png"])),
            response_factory(200, None, content=b"\x89PNG-bytes", headers={"Content-Type": "image/png"}),
        ]

        job = poller.run("owner/model", {"prompt": "p"})
        outputs = poller.resolve_outputs(job)

        assert job.status == JobStatus.SUCCEEDED
        assert len(outputs) == 1
        assert outputs[0].data == b"\x89PNG-bytes"
        assert outputs[0].mime_type == "image/png"
        assert clock.sleeps == [1.2, 1.2, 1.2]
        assert mock_session.get.call_args_list[0][0][0] == "https://api.replicate.com/v1/predictions/job-1"
        assert mock_session.get.call_args_list[3][0][0] == "https://x/a.png"

    def test_resolved_inline_skips_polling(self, poller, mock_session, clock, response_factory):
        mock_session.post.return_value = response_factory(201, job_json("succeeded", output="https://x/a.png"))

        job = poller.run("owner/model", {})

        assert job.status == JobStatus.SUCCEEDED
        assert clock.sleeps == []
        mock_session.get.assert_not_called()

    def test_timeout(self, mock_session, clock, response_factory):
        """Test that the ceiling is enforced without real waiting."""
        poller = JobPoller("r8_test_token", session=mock_session, poll_interval=5,
                           clock=clock, sleep=clock.sleep)
        mock_session.post.return_value = response_factory(201, job_json("starting"))
        mock_session.get.return_value = response_factory(200, job_json("processing"))

        with pytest.raises(JobTimeoutError, match="12s"):
            poller.run("owner/model", {}, timeout=12)
        assert clock.now == 15

    def test_request_timeouts_bounded_by_ceiling(self, mock_session, clock, response_factory):
        """Test that no single request can outlive the remaining ceiling."""
        poller = JobPoller("r8_test_token", session=mock_session, poll_interval=5,
                           clock=clock, sleep=clock.sleep)
        mock_session.post.return_value = response_factory(201, job_json("starting"))
        mock_session.get.return_value = response_factory(200, job_json("processing"))

        with pytest.raises(JobTimeoutError):
            poller.run("owner/model", {}, timeout=12)

        assert mock_session.post.call_args[1]["timeout"] == 12
        assert [c[1]["timeout"] for c in mock_session.get.call_args_list] == [7, 2, 1.0]

    def test_submit_timeout_covers_prefer_wait(self, poller, mock_session, response_factory):
        mock_session.post.return_value = response_factory(201, job_json("starting"))

        poller.submit("owner/model", {})

        assert mock_session.post.call_args[1]["timeout"] == 75

    def test_stalled_poll_raises_timeout(self, poller, mock_session, response_factory):
        mock_session.post.return_value = response_factory(201, job_json("starting"))
        mock_session.get.side_effect = requests.ReadTimeout("stalled")

        with pytest.raises(JobTimeoutError, match="timed out"):
            poller.run("owner/model", {})
        assert mock_session.get.call_args[1]["timeout"] == pytest.approx(118.8)

    def test_stalled_submit_raises_timeout(self, poller, mock_session):
        mock_session.post.side_effect = requests.ConnectTimeout("no route")

        with pytest.raises(JobTimeoutError):
            poller.submit("owner/model", {})

    def test_missing_poll_url_is_fatal(self, poller, mock_session, response_factory):
        mock_session.post.return_value = response_factory(201, job_json("starting", poll_url=None))

        with pytest.raises(ConfigurationError, match="no poll URL"):
            poller.run("owner/model", {})
        mock_session.get.assert_not_called()

    def test_poll_non_2xx_is_fatal(self, poller, mock_session, response_factory):
        mock_session.post.return_value = response_factory(201, job_json("starting"))
        mock_session.get.return_value = response_factory(500, None, text="oops", reason="Server Error")

        with pytest.raises(UpstreamError) as exc_info:
            poller.run("owner/model", {})
        assert exc_info.value.status_code == 500
        assert mock_session.get.call_count == 1

    def test_poll_directly_without_url(self, poller):
        with pytest.raises(ConfigurationError):
            poller.poll(AsyncJob(id="a"))


class TestResolveOutputs:
    """Tests for output resolution."""

    def test_failed_job_carries_error_text(self, poller):
        job = AsyncJob(id="a", status=JobStatus.FAILED, error="NSFW content detected")

        with pytest.raises(UpstreamError, match="NSFW content detected"):
            poller.resolve_outputs(job)

    def test_canceled_job(self, poller):
        with pytest.raises(UpstreamError, match="canceled"):
            poller.resolve_outputs(AsyncJob(id="a", status=JobStatus.CANCELED))

    def test_no_output(self, poller):
        with pytest.raises(UpstreamError, match="no output"):
            poller.resolve_outputs(AsyncJob(id="a", status=JobStatus.SUCCEEDED, output=[]))

    def test_all_outputs_kept_in_order(self, poller, mock_session, response_factory):
        mock_session.get.side_effect = [
            response_factory(200, None, content=b"\x89PNG-one", headers={"Content-Type": "image/png"}),
            response_factory(200, None, content=b"\xff\xd8-two", headers={"Content-Type": "application/octet-stream"}),
        ]
        job = AsyncJob(id="a", status=JobStatus.SUCCEEDED, output=["https://x/1.png", "https://x/2"])

        outputs = poller.resolve_outputs(job)

        assert [o.data for o in outputs] == [b"\x89PNG-one", b"\xff\xd8-two"]
        assert outputs[1].mime_type == "image/jpeg"

    def test_limit(self, poller, mock_session, response_factory):
        mock_session.get.return_value = response_factory(200, None, content=b"\x89PNG", headers={"Content-Type": "image/png"})
        job = AsyncJob(id="a", status=JobStatus.SUCCEEDED, output=["https://x/1", "https://x/2"])

        assert len(poller.resolve_outputs(job, limit=1)) == 1
        assert mock_session.get.call_count == 1

    def test_download_failure(self, poller, mock_session, response_factory):
        mock_session.get.return_value = response_factory(404, None, reason="Not Found")
        job = AsyncJob(id="a", status=JobStatus.SUCCEEDED, output="https://x/1")

        with pytest.raises(UpstreamError, match="404"):
            poller.resolve_outputs(job)
