"""
The worker state machine for a single transcoding job.

PREPARING -> DOWNLOADING -> ENCODING -> PACKAGING -> UPLOADING -> DONE,
with FAILED reachable from every non-terminal stage. Whatever happens, the
job's workspace is removed before the terminal event is published, and
``run()`` reports failures through the broker instead of raising.
"""
import enum
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Sequence

from .encoder import OutputSpec
from .exceptions import EncodeError, SourceUnavailableError, TranscodeError, UploadError
from .ladder import RenditionSpec
from .manifest import MASTER_MANIFEST_NAME, RenditionResult, build_master_manifest
from .progress import ProgressAggregator, ProgressPublisher

logger = logging.getLogger(__name__)


class Stage(str, enum.Enum):
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    ENCODING = "encoding"
    PACKAGING = "packaging"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


COMPLETED = "completed"
FAILED = "failed"


@dataclass
class JobOutcome:
    job_id: str
    state: str
    reason: str = ""
    manifest_key: str = ""
    uploaded_keys: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == COMPLETED


class Workspace:
    """
    <root>/<job_id>/{input,output}. Entering wipes whatever a previous attempt
    at the same job left behind; leaving always removes the tree.
    """

    def __init__(self, root, job_id: str):
        self.path = Path(root) / str(job_id)
        self.input_dir = self.path / "input"
        self.output_dir = self.path / "output"

    def __enter__(self):
        if self.path.exists():
            logger.info("Discarding stale workspace %s", self.path)
            shutil.rmtree(self.path)
        try:
            self.input_dir.mkdir(parents=True)
            self.output_dir.mkdir(parents=True)
        except OSError:
            shutil.rmtree(self.path, ignore_errors=True)
            raise
        return self

    def __exit__(self, *exc_info):
        shutil.rmtree(self.path, ignore_errors=True)
        return False


class TranscodeOrchestrator:
    def __init__(
        self,
        job_id: str,
        source_key: str,
        *,
        storage,
        encoder,
        broker,
        ladder: Sequence[RenditionSpec],
        workspace_root,
        namespace: str = "hls",
        codecs: str = "avc1.42c01e,mp4a.40.2",
        segment_seconds: int = 10,
    ):
        if not ladder:
            raise ValueError("The bitrate ladder must not be empty")
        self.job_id = str(job_id)
        self.source_key = source_key
        self.storage = storage
        self.encoder = encoder
        self.broker = broker
        self.ladder = tuple(ladder)
        self.workspace_root = Path(workspace_root)
        self.namespace = namespace.strip("/")
        self.codecs = codecs
        self.segment_seconds = segment_seconds
        self.stage = Stage.PREPARING

    @property
    def key_prefix(self) -> str:
        return f"{self.namespace}/{self.job_id}"

    def _enter(self, stage: Stage):
        logger.info("Job %s: %s -> %s", self.job_id, self.stage.value, stage.value)
        self.stage = stage

    def run(self) -> JobOutcome:
        self.broker.mark_active(self.job_id)
        publisher = ProgressPublisher(
            lambda percent: self.broker.publish_progress(self.job_id, percent),
            name=f"progress-{self.job_id}",
        )
        outcome = JobOutcome(self.job_id, FAILED)
        try:
            with Workspace(self.workspace_root, self.job_id) as workspace:
                source = self._download(workspace)
                results = self._encode_all(workspace, source, publisher)
                self._package(workspace, results)
                outcome.uploaded_keys = self._upload(workspace)
            outcome.state = COMPLETED
            outcome.manifest_key = f"{self.key_prefix}/{MASTER_MANIFEST_NAME}"
        except TranscodeError as exc:
            outcome.reason = exc.reason
            logger.error("Job %s failed while %s: %s", self.job_id, self.stage.value, exc)
        except Exception as exc:
            outcome.reason = f"internal error: {exc}"
            logger.exception("Job %s crashed while %s", self.job_id, self.stage.value)
        finally:
            # Accepted progress updates land (or are discarded) before the terminal event.
            publisher.close()

        if outcome.ok:
            self._enter(Stage.DONE)
            self.broker.publish_progress(self.job_id, 100)
            self.broker.publish_terminal(self.job_id, COMPLETED, manifest_key=outcome.manifest_key)
        else:
            self._enter(Stage.FAILED)
            self.broker.publish_terminal(self.job_id, FAILED, reason=outcome.reason)
        return outcome

    def _download(self, workspace: Workspace) -> Path:
        self._enter(Stage.DOWNLOADING)
        local = workspace.input_dir / (PurePosixPath(self.source_key).name or "source")
        try:
            self.storage.get(self.source_key, local)
        except Exception as exc:
            raise SourceUnavailableError(f"download of {self.source_key} failed: {exc}") from exc
        return local

    def _encode_all(self, workspace: Workspace, source: Path, publisher: ProgressPublisher) -> list[RenditionResult]:
        self._enter(Stage.ENCODING)
        aggregator = ProgressAggregator(len(self.ladder))
        results = []
        for index, rendition in enumerate(self.ladder, start=1):
            logger.info("Job %s: encoding %s (%d/%d)", self.job_id, rendition.name, index, len(self.ladder))
            spec = OutputSpec(
                resolution=rendition.resolution,
                bitrate=rendition.ffmpeg_bitrate,
                output_dir=workspace.output_dir / rendition.name,
                segment_seconds=self.segment_seconds,
            )

            def on_progress(percent, _aggregator=aggregator):
                publisher.submit(_aggregator.update(percent))

            try:
                self.encoder.transcode(source, spec, on_progress)
            except EncodeError:
                raise
            except Exception as exc:
                raise EncodeError(str(exc), reason=f"encode failed: {exc}") from exc

            publisher.submit(aggregator.complete_rendition())
            results.append(
                RenditionResult(
                    name=rendition.name,
                    relative_manifest_path=f"{rendition.name}/{spec.playlist_name}",
                    bitrate_bits=rendition.bitrate,
                    resolution=rendition.resolution,
                    codec_tags=self.codecs,
                )
            )
        return results

    def _package(self, workspace: Workspace, results: list[RenditionResult]) -> Path:
        self._enter(Stage.PACKAGING)
        master = workspace.output_dir / MASTER_MANIFEST_NAME
        master.write_text(build_master_manifest(results, self.segment_seconds), encoding="utf-8")
        return master

    def _upload(self, workspace: Workspace) -> list[str]:
        """
        Renditions go up in ladder order, the master manifest last, so a
        package whose upload broke off never has a playable entry point.
        """
        self._enter(Stage.UPLOADING)
        uploaded = []
        try:
            for rendition in self.ladder:
                uploaded += self.storage.put_tree(
                    workspace.output_dir / rendition.name, f"{self.key_prefix}/{rendition.name}"
                )
            master_key = f"{self.key_prefix}/{MASTER_MANIFEST_NAME}"
            self.storage.put(workspace.output_dir / MASTER_MANIFEST_NAME, master_key)
            uploaded.append(master_key)
        except Exception as exc:
            logger.warning("Job %s: %d object(s) left behind under %s", self.job_id, len(uploaded), self.key_prefix)
            raise UploadError(f"upload to {self.key_prefix} failed: {exc}") from exc
        return uploaded
