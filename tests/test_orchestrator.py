import shutil

import pytest

from transcoder import orchestrator as orchestrator_module
from transcoder.exceptions import EncodeError
from transcoder.orchestrator import TranscodeOrchestrator, Workspace
from transcoder.s3 import StorageClient

from tests.fakes import FakeEncoder, FakeS3Client

JOB_ID = "job-1"


@pytest.fixture
def make_orchestrator(storage, encoder, broker, ladder, workspace_root):
    def _make(**overrides):
        kwargs = dict(
            storage=storage,
            encoder=encoder,
            broker=broker,
            ladder=ladder,
            workspace_root=workspace_root,
            namespace="hls",
        )
        kwargs.update(overrides)
        return TranscodeOrchestrator(JOB_ID, "uploads/clip.mp4", **kwargs)

    return _make


@pytest.fixture
def rmtree_calls(monkeypatch):
    calls = []
    real_rmtree = shutil.rmtree

    def counting_rmtree(path, *args, **kwargs):
        calls.append(str(path))
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(orchestrator_module.shutil, "rmtree", counting_rmtree)
    return calls


def stream_inf_lines(manifest: bytes):
    return [l for l in manifest.decode().splitlines() if l.startswith("#EXT-X-STREAM-INF")]


class TestSuccessfulJob:
    def test_three_rendition_ladder_completes(self, make_orchestrator, broker, s3_client, workspace_root):
        outcome = make_orchestrator().run()

        assert outcome.ok
        assert outcome.manifest_key == "hls/job-1/master.m3u8"
        assert broker.terminal == [("completed", "hls/job-1/master.m3u8")]
        assert broker.events[0][1] == "active"

        progress = broker.progress
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert all(p < 100 for p in progress[:-1])
        # The last thing before the terminal event is the explicit 100.
        assert broker.events[-2][1:] == ("progress", 100)

        lines = stream_inf_lines(s3_client.objects["hls/job-1/master.m3u8"])
        assert len(lines) == 3
        assert [l.split("RESOLUTION=")[1].split(",")[0] for l in lines] == ["640x360", "1280x720", "1920x1080"]
        assert "BANDWIDTH=800000," in lines[0]
        assert "BANDWIDTH=5000000," in lines[2]

        assert not (workspace_root / JOB_ID).exists()

    def test_package_layout_in_object_store(self, make_orchestrator, s3_client):
        outcome = make_orchestrator().run()

        packaged = sorted(k for k in s3_client.objects if k.startswith("hls/"))
        assert packaged == sorted(outcome.uploaded_keys)
        assert packaged == [
            "hls/job-1/1080p/index.m3u8",
            "hls/job-1/1080p/seg_0000.ts",
            "hls/job-1/360p/index.m3u8",
            "hls/job-1/360p/seg_0000.ts",
            "hls/job-1/720p/index.m3u8",
            "hls/job-1/720p/seg_0000.ts",
            "hls/job-1/master.m3u8",
        ]
        # Master manifest goes up last.
        assert outcome.uploaded_keys[-1] == "hls/job-1/master.m3u8"

    def test_hundred_is_only_published_after_upload(self, make_orchestrator, broker, s3_client):
        seen_at_100 = []
        original = broker.publish_progress

        def publish_progress(job_id, percent):
            if percent == 100:
                seen_at_100.append("hls/job-1/master.m3u8" in s3_client.objects)
            original(job_id, percent)

        broker.publish_progress = publish_progress
        make_orchestrator().run()

        assert seen_at_100 == [True]

    def test_encoder_receives_ladder_in_order(self, make_orchestrator, encoder):
        make_orchestrator().run()

        assert [s.output_dir.name for s in encoder.calls] == ["360p", "720p", "1080p"]
        assert [s.bitrate for s in encoder.calls] == ["800k", "2500k", "5000k"]
        assert all(s.segment_seconds == 10 and s.list_size == 0 for s in encoder.calls)

    def test_stale_workspace_from_earlier_attempt_is_discarded(self, make_orchestrator, s3_client, workspace_root):
        stale = workspace_root / JOB_ID / "output" / "leftover.ts"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"old")

        assert make_orchestrator().run().ok
        assert not any("leftover" in k for k in s3_client.objects)
        assert not (workspace_root / JOB_ID).exists()


class TestFailures:
    def test_download_failure(self, make_orchestrator, broker, encoder, s3_client, workspace_root, rmtree_calls):
        s3_client.objects.clear()

        outcome = make_orchestrator().run()

        assert outcome.state == "failed"
        assert broker.terminal == [("failed", "source unavailable")]
        assert encoder.calls == []
        assert s3_client.put_attempts == []
        assert not (workspace_root / JOB_ID).exists()
        assert rmtree_calls == [str(workspace_root / JOB_ID)]

    def test_encode_failure_on_second_rendition(self, make_orchestrator, broker, s3_client, workspace_root, rmtree_calls):
        encoder = FakeEncoder(fail_on="720p")

        outcome = make_orchestrator(encoder=encoder).run()

        assert outcome.state == "failed"
        assert broker.terminal == [("failed", "encode failed: Invalid data found")]
        assert [s.output_dir.name for s in encoder.calls] == ["360p", "720p"]
        assert s3_client.put_attempts == []
        assert 100 not in broker.progress
        assert not (workspace_root / JOB_ID).exists()
        assert rmtree_calls == [str(workspace_root / JOB_ID)]

    def test_unexpected_encoder_exception_fails_the_job(self, make_orchestrator, broker):
        class ExplodingEncoder:
            def transcode(self, input_path, spec, on_progress):
                raise MemoryError("out of memory")

        outcome = make_orchestrator(encoder=ExplodingEncoder()).run()

        assert outcome.state == "failed"
        assert broker.terminal == [("failed", "encode failed: out of memory")]

    def test_upload_of_1080p_exhausts_retries(self, make_orchestrator, broker, workspace_root, rmtree_calls):
        client = FakeS3Client(
            {"uploads/clip.mp4": b"source"},
            fail_put=lambda key: key.startswith("hls/job-1/1080p/"),
        )
        storage = StorageClient(client, bucket="b", attempts=3, sleep=lambda s: None)

        outcome = make_orchestrator(storage=storage).run()

        assert outcome.state == "failed"
        assert broker.terminal[0][0] == "failed"
        assert broker.terminal[0][1] == "upload failed"
        assert client.put_attempts.count("hls/job-1/1080p/index.m3u8") == 3
        assert "hls/job-1/360p/index.m3u8" in client.objects
        assert "hls/job-1/720p/index.m3u8" in client.objects
        assert "hls/job-1/master.m3u8" not in client.objects
        assert 100 not in broker.progress
        assert not (workspace_root / JOB_ID).exists()
        assert rmtree_calls == [str(workspace_root / JOB_ID)]

    def test_exactly_one_terminal_event(self, make_orchestrator, broker):
        make_orchestrator(encoder=FakeEncoder(fail_on="360p")).run()
        assert len(broker.terminal) == 1


def test_empty_ladder_is_rejected(make_orchestrator):
    with pytest.raises(ValueError):
        make_orchestrator(ladder=())


def test_workspace_removed_when_body_raises(tmp_path):
    with pytest.raises(EncodeError):
        with Workspace(tmp_path, "j") as ws:
            (ws.output_dir / "360p").mkdir()
            raise EncodeError("boom")
    assert not (tmp_path / "j").exists()
