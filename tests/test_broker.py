import json

import pytest
import redis

from transcoder import tasks
from transcoder.broker import DjangoJobBroker, get_events_client
from transcoder.ladder import get_ladder
from transcoder.models import Job
from transcoder.orchestrator import JobOutcome

pytestmark = pytest.mark.django_db


class FakeEventsClient:
    def __init__(self, failures=0):
        self.failures = failures
        self.published = []

    def publish(self, channel, message):
        if self.failures:
            self.failures -= 1
            raise redis.ConnectionError("redis unavailable")
        self.published.append((channel, json.loads(message)))
        return 1


@pytest.fixture
def events():
    return FakeEventsClient()


@pytest.fixture
def job_broker(events):
    return DjangoJobBroker(events, channel="events", sleep=lambda s: None)


@pytest.fixture
def job():
    return Job.objects.create(source_key="uploads/clip.mp4")


def test_enqueue_creates_queued_job_and_dispatches(monkeypatch, job_broker):
    dispatched = []
    monkeypatch.setattr(tasks.transcode_job, "delay", lambda job_id: dispatched.append(job_id))

    job_id = job_broker.enqueue("uploads/abc_clip.mp4")

    job = Job.objects.get(pk=job_id)
    assert job.status == Job.Status.QUEUED
    assert job.source_key == "uploads/abc_clip.mp4"
    assert dispatched == [job_id]


def test_mark_active(job_broker, job):
    job_broker.mark_active(str(job.id))
    job.refresh_from_db()
    assert job.status == Job.Status.ACTIVE


def test_progress_is_persisted_and_published(job_broker, events, job):
    job_broker.publish_progress(str(job.id), 40)

    job.refresh_from_db()
    assert job.progress == 40
    assert events.published == [("events", {"jobId": str(job.id), "event": "progress", "data": 40})]


def test_persisted_progress_never_goes_down(job_broker, job):
    job_broker.publish_progress(str(job.id), 60)
    job_broker.publish_progress(str(job.id), 30)
    job.refresh_from_db()
    assert job.progress == 60


def test_progress_transport_errors_are_swallowed(job, caplog):
    broker = DjangoJobBroker(FakeEventsClient(failures=1), channel="events")
    broker.publish_progress(str(job.id), 10)
    assert "Dropped progress" in caplog.text


def test_completed_terminal_state(job_broker, events, job):
    job_broker.publish_terminal(str(job.id), "completed", manifest_key=f"hls/{job.id}/master.m3u8")

    job.refresh_from_db()
    assert job.status == Job.Status.COMPLETED
    assert job.progress == 100
    assert job.package_key == f"hls/{job.id}/master.m3u8"
    assert events.published[-1][1] == {"jobId": str(job.id), "event": "completed", "data": None}


def test_failed_terminal_state_keeps_reason(job_broker, events, job):
    job_broker.publish_terminal(str(job.id), "failed", reason="source unavailable")

    job.refresh_from_db()
    assert job.status == Job.Status.FAILED
    assert job.error == "source unavailable"
    assert events.published[-1][1]["data"] == "source unavailable"


def test_terminal_publish_is_retried(job):
    events = FakeEventsClient(failures=2)
    DjangoJobBroker(events, channel="events", sleep=lambda s: None).publish_terminal(str(job.id), "failed", "x")
    assert len(events.published) == 1


def test_terminal_state_survives_unreachable_channel(job):
    events = FakeEventsClient(failures=10)
    DjangoJobBroker(events, channel="events", sleep=lambda s: None).publish_terminal(str(job.id), "completed")
    job.refresh_from_db()
    assert job.status == Job.Status.COMPLETED


def test_rejects_non_terminal_state(job_broker, job):
    with pytest.raises(ValueError):
        job_broker.publish_terminal(str(job.id), "active")


class TestTranscodeTask:
    def test_runs_orchestrator_for_queued_job(self, monkeypatch, job):
        ran = []

        class StubOrchestrator:
            def run(self):
                ran.append(True)
                return JobOutcome(str(job.id), "completed", manifest_key="hls/x/master.m3u8")

        monkeypatch.setattr(tasks, "build_orchestrator", lambda j, broker=None: StubOrchestrator())

        result = tasks.transcode_job(str(job.id))

        assert ran == [True]
        assert result["state"] == "completed"

    def test_redelivered_finished_job_is_not_rerun(self, monkeypatch, job):
        job.status = Job.Status.COMPLETED
        job.save()
        monkeypatch.setattr(tasks, "build_orchestrator", lambda j, broker=None: pytest.fail("should not run"))

        assert tasks.transcode_job(str(job.id))["state"] == Job.Status.COMPLETED

    def test_unknown_job(self):
        result = tasks.transcode_job("00000000-0000-0000-0000-000000000000")
        assert result["state"] == Job.Status.FAILED

    def test_bad_ladder_fails_the_job_instead_of_leaving_it_queued(self, monkeypatch, settings, job):
        events = FakeEventsClient()
        monkeypatch.setattr(tasks, "DjangoJobBroker", lambda: DjangoJobBroker(events, channel="events"))
        settings.TRANSCODER_LADDER = ""
        get_ladder.cache_clear()
        try:
            result = tasks.transcode_job(str(job.id))
        finally:
            get_ladder.cache_clear()

        assert result["state"] == Job.Status.FAILED
        job.refresh_from_db()
        assert job.status == Job.Status.FAILED
        assert job.error.startswith("configuration error")
        assert events.published[-1][1]["event"] == "failed"


def test_events_client_has_bounded_socket_timeouts(settings):
    settings.EVENTS_REDIS_URL = "redis://127.0.0.1:6379/0"
    settings.EVENTS_SOCKET_TIMEOUT = 2.5

    kwargs = get_events_client().connection_pool.connection_kwargs

    assert kwargs["socket_timeout"] == 2.5
    assert kwargs["socket_connect_timeout"] == 2.5
