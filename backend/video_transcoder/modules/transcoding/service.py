"""Transcode job orchestration.

A job runs strictly in order: download, probe, plan, then for each planned
rendition (lowest first) encode and upload. Any failure stops the job; the
scratch workspace is removed on every exit path.
"""

import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from video_transcoder.core.config import Settings, settings as default_settings
from video_transcoder.core.metrics import (
    TRANSCODE_JOBS_TOTAL,
    TRANSCODE_JOB_DURATION_SECONDS,
    TRANSCODE_JOBS_IN_PROGRESS,
    TRANSCODE_RENDITIONS_TOTAL,
)
from video_transcoder.core.storage import StorageError
from video_transcoder.core.tracing import create_span
from video_transcoder.modules.transcoding.ffmpeg import (
    EncodeError,
    EncodingProfile,
    FFmpegEncoder,
    FFprobeProber,
    MediaProber,
    ProbeError,
    ProcessCancelledError,
    RenditionEncoder,
    list_segments,
)
from video_transcoder.modules.transcoding.models import Rendition, Stage, TranscodeResult
from video_transcoder.modules.transcoding.planner import plan_renditions
from video_transcoder.modules.transcoding.storage import (
    StorageGateway,
    build_playlist_key,
    build_segment_key,
    create_storage_gateway,
)

logger = logging.getLogger(__name__)

Planner = Callable[[int, int], list[Rendition]]


class TranscodingServiceError(Exception):
    """Base exception for transcoding service errors."""

    pass


class OrchestrationError(TranscodingServiceError):
    """Raised when a job stops before producing its renditions.

    Attributes:
        stage: Stage the job stopped in
        rendition: Rendition being processed, for encode and upload failures
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        stage: Stage,
        cause: Optional[BaseException] = None,
        rendition: Optional[Rendition] = None,
        detail: Optional[str] = None,
    ):
        self.stage = stage
        self.rendition = rendition
        self.cause = cause
        self.detail = detail or (str(cause) if cause is not None else "")
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.stage in (Stage.NO_OUTPUT, Stage.CANCELLED):
            return f"{self.stage.value}: {self.detail}"
        target = f" for {self.rendition.value}" if self.rendition else ""
        return f"{self.stage.value} failed{target}: {self.detail}"


class ScratchWorkspace:
    """Job-scoped temporary directory.

    Holds the downloaded source and one subdirectory per rendition. The
    whole tree is removed when the context exits, however it exits.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = root
        self.path: Optional[Path] = None

    def create(self) -> Path:
        """Create the workspace directory.

        Raises:
            OSError: If the directory cannot be created
        """
        if self.path is None:
            self.path = Path(tempfile.mkdtemp(prefix="transcoded-", dir=self.root))
            logger.debug(f"Created scratch workspace {self.path}")
        return self.path

    def __enter__(self) -> "ScratchWorkspace":
        self.create()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path is None:
            return
        try:
            shutil.rmtree(self.path)
        except OSError:
            # Never let cleanup mask the job's own outcome
            logger.warning(f"Failed to remove scratch workspace {self.path}", exc_info=True)
        else:
            logger.debug(f"Removed scratch workspace {self.path}")
        self.path = None

    def rendition_dir(self, rendition: Rendition) -> Path:
        """Create (if needed) and return the output directory of a rendition."""
        if self.path is None:
            raise RuntimeError("workspace is not active")
        output_dir = self.path / rendition.value
        output_dir.mkdir(exist_ok=True)
        return output_dir


class TranscodeOrchestrator:
    """Runs transcode jobs against injected storage, prober and encoder.

    A single orchestrator is shared by concurrent requests; all per-job
    state lives inside ``run``.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        prober: MediaProber,
        encoder: RenditionEncoder,
        planner: Planner = plan_renditions,
        scratch_root: Optional[str] = None,
        rollback_on_failure: bool = True,
    ):
        """Initialize orchestrator.

        Args:
            gateway: Storage gateway for source download and rendition upload
            prober: Media prober
            encoder: Rendition encoder
            planner: Maps source width/height to the renditions to produce
            scratch_root: Parent directory of job workspaces (system temp dir if None)
            rollback_on_failure: Delete a failed job's uploaded objects
        """
        self.gateway = gateway
        self.prober = prober
        self.encoder = encoder
        self.planner = planner
        self.scratch_root = scratch_root
        self.rollback_on_failure = rollback_on_failure

    def run(
        self,
        source_key: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> TranscodeResult:
        """Transcode one source video into its rendition ladder.

        Blocks until the job finishes; run it in a worker thread from async code.

        Args:
            source_key: Key of the source object in the download bucket
            cancel_event: Set to abort the job

        Returns:
            TranscodeResult with the produced renditions and source duration

        Raises:
            OrchestrationError: If any stage fails, the job is cancelled or
                nothing was produced
        """
        cancel_event = cancel_event or threading.Event()
        uploaded_keys: list[str] = []
        status = "completed"
        start = time.perf_counter()

        logger.info(f"Starting transcode of {source_key}", extra={"source_key": source_key})
        TRANSCODE_JOBS_IN_PROGRESS.inc()

        try:
            with create_span("transcode.job", attributes={"source_key": source_key}):
                result = self._run(source_key, cancel_event, uploaded_keys)
        except Exception as e:
            status = e.stage.value if isinstance(e, OrchestrationError) else "error"
            logger.error(
                f"Transcode of {source_key} failed: {e}",
                extra={"source_key": source_key, "stage": status},
            )
            if uploaded_keys and self.rollback_on_failure:
                self._rollback(uploaded_keys)
            raise
        finally:
            duration = time.perf_counter() - start
            TRANSCODE_JOBS_IN_PROGRESS.dec()
            TRANSCODE_JOBS_TOTAL.labels(status=status).inc()
            TRANSCODE_JOB_DURATION_SECONDS.observe(duration)

        logger.info(
            f"Transcoded {source_key} into {result.rendition_names} in {duration:.1f}s",
            extra={
                "source_key": source_key,
                "renditions": result.rendition_names,
                "duration_millis": result.source_duration_millis,
            },
        )
        return result

    def _run(
        self,
        source_key: str,
        cancel_event: threading.Event,
        uploaded_keys: list[str],
    ) -> TranscodeResult:
        workspace = ScratchWorkspace(self.scratch_root)
        try:
            workspace.create()
        except OSError as e:
            raise OrchestrationError(
                Stage.DOWNLOAD, cause=e, detail=f"failed to create scratch workspace: {e}"
            ) from e

        with workspace:
            return self._run_in_workspace(source_key, workspace, cancel_event, uploaded_keys)

    def _run_in_workspace(
        self,
        source_key: str,
        workspace: ScratchWorkspace,
        cancel_event: threading.Event,
        uploaded_keys: list[str],
    ) -> TranscodeResult:
        self._check_cancelled(cancel_event)
        with create_span("transcode.download", attributes={"source_key": source_key}):
            try:
                source_path = self.gateway.download(source_key, str(workspace.path))
            except StorageError as e:
                raise OrchestrationError(Stage.DOWNLOAD, cause=e) from e

        self._check_cancelled(cancel_event)
        with create_span("transcode.probe"):
            try:
                metadata = self.prober.probe(str(source_path), cancel_event)
            except ProcessCancelledError as e:
                raise OrchestrationError(Stage.CANCELLED, cause=e) from e
            except ProbeError as e:
                raise OrchestrationError(Stage.PROBE, cause=e) from e

        plan = self.planner(metadata.width, metadata.height)
        logger.info(
            f"Original resolution: {metadata.width}x{metadata.height}, "
            f"selected resolutions: {[r.value for r in plan]}",
        )

        result = TranscodeResult(source_duration_millis=metadata.duration_millis)
        for rendition in plan:
            self._check_cancelled(cancel_event)
            self._process_rendition(
                source_key, source_path, rendition, workspace, cancel_event, uploaded_keys
            )
            result.produced_renditions.append(rendition)

        if not result.produced_renditions:
            raise OrchestrationError(Stage.NO_OUTPUT, detail="no valid resolutions were processed")

        result.uploaded_keys = list(uploaded_keys)
        return result

    def _process_rendition(
        self,
        source_key: str,
        source_path: Path,
        rendition: Rendition,
        workspace: ScratchWorkspace,
        cancel_event: threading.Event,
        uploaded_keys: list[str],
    ) -> None:
        """Encode one rendition, then upload its playlist and segments."""
        with create_span("transcode.encode", attributes={"rendition": rendition.value}):
            try:
                output_dir = workspace.rendition_dir(rendition)
                playlist = self.encoder.encode(
                    str(source_path), rendition, str(output_dir), cancel_event
                )
            except ProcessCancelledError as e:
                raise OrchestrationError(Stage.CANCELLED, cause=e, rendition=rendition) from e
            except (EncodeError, OSError) as e:
                TRANSCODE_RENDITIONS_TOTAL.labels(rendition=rendition.value, status="failed").inc()
                raise OrchestrationError(Stage.ENCODE, cause=e, rendition=rendition) from e

        files = [(Path(playlist), build_playlist_key(source_key, rendition))]
        files.extend(
            (segment, build_segment_key(source_key, rendition, segment.name))
            for segment in list_segments(str(output_dir))
        )

        with create_span(
            "transcode.upload",
            attributes={"rendition": rendition.value, "files": len(files)},
        ):
            for local_path, key in files:
                self._check_cancelled(cancel_event)
                try:
                    self.gateway.upload(str(local_path), key)
                except StorageError as e:
                    TRANSCODE_RENDITIONS_TOTAL.labels(
                        rendition=rendition.value, status="failed"
                    ).inc()
                    raise OrchestrationError(Stage.UPLOAD, cause=e, rendition=rendition) from e
                uploaded_keys.append(key)

        TRANSCODE_RENDITIONS_TOTAL.labels(rendition=rendition.value, status="success").inc()
        logger.info(
            f"Published {rendition.value} ({len(files)} files)",
            extra={"rendition": rendition.value, "files": len(files)},
        )

    def _check_cancelled(self, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise OrchestrationError(Stage.CANCELLED, detail="job cancelled")

    def _rollback(self, keys: list[str]) -> None:
        """Delete a failed job's uploads, best effort."""
        failed = 0
        for key in reversed(keys):
            try:
                self.gateway.delete(key)
            except StorageError as e:
                failed += 1
                logger.warning(f"Rollback could not delete {key}: {e}")
        logger.info(
            f"Rolled back {len(keys) - failed} of {len(keys)} uploaded objects",
            extra={"deleted": len(keys) - failed, "failed": failed},
        )


def create_orchestrator(settings: Optional[Settings] = None) -> TranscodeOrchestrator:
    """Build an orchestrator wired to ffmpeg, ffprobe and the configured buckets."""
    settings = settings or default_settings
    return TranscodeOrchestrator(
        gateway=create_storage_gateway(settings),
        prober=FFprobeProber(
            ffprobe_path=settings.FFPROBE_PATH,
            timeout=settings.PROBE_TIMEOUT_SECONDS,
        ),
        encoder=FFmpegEncoder(
            ffmpeg_path=settings.FFMPEG_PATH,
            profile=EncodingProfile.from_settings(settings),
            timeout=settings.ENCODE_TIMEOUT_SECONDS,
        ),
        scratch_root=settings.SCRATCH_DIR,
        rollback_on_failure=settings.ROLLBACK_ON_FAILURE,
    )
