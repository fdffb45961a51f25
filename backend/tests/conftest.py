"""Shared fixtures: fake media tools and a gateway over local directories."""

import threading
from pathlib import Path
from typing import Callable, Optional

import pytest

from video_transcoder.core.storage import LocalStorage, StorageConfig
from video_transcoder.modules.transcoding.ffmpeg import (
    PLAYLIST_FILENAME,
    EncodeError,
    MediaProber,
    ProbeError,
    RenditionEncoder,
)
from video_transcoder.modules.transcoding.models import MediaMetadata, Rendition
from video_transcoder.modules.transcoding.service import TranscodeOrchestrator
from video_transcoder.modules.transcoding.storage import StorageGateway


class FakeProber(MediaProber):
    """Returns fixed metadata, or raises ProbeError when ``error`` is set."""

    def __init__(self, width: int = 1920, height: int = 1080, duration_millis: int = 12_500,
                 error: Optional[str] = None):
        self.metadata = MediaMetadata(duration_millis=duration_millis, width=width, height=height)
        self.error = error
        self.probed: list[str] = []

    def probe(self, input_path: str, cancel_event: Optional[threading.Event] = None) -> MediaMetadata:
        self.probed.append(input_path)
        if self.error:
            raise ProbeError(self.error)
        return self.metadata


class FakeEncoder(RenditionEncoder):
    """Writes a playlist plus ``segments`` segment files per rendition.

    Renditions listed in ``fail_on`` raise EncodeError; ``before_encode`` is
    called with each rendition before anything is written.
    """

    def __init__(self, segments: int = 2, fail_on: tuple[Rendition, ...] = (),
                 before_encode: Optional[Callable[[Rendition], None]] = None):
        self.segments = segments
        self.fail_on = set(fail_on)
        self.before_encode = before_encode
        self.encoded: list[Rendition] = []
        self.inputs: list[str] = []

    def encode(self, input_path: str, rendition: Rendition, output_dir: str,
               cancel_event: Optional[threading.Event] = None) -> Path:
        self.inputs.append(input_path)
        if self.before_encode is not None:
            self.before_encode(rendition)
        if rendition in self.fail_on:
            raise EncodeError(
                f"transcode failed for {rendition.value}: ffmpeg exited with code 1",
                stderr="boom",
            )

        output = Path(output_dir)
        playlist = output / PLAYLIST_FILENAME
        playlist.write_text("#EXTM3U\n#EXT-X-PLAYLIST-TYPE:VOD\n")
        for index in range(self.segments):
            (output / f"segment_{index:03d}.ts").write_bytes(b"\x47" * 188)
        self.encoded.append(rendition)
        return playlist


@pytest.fixture
def source_storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(StorageConfig(backend="local", local_path=str(tmp_path / "source")))


@pytest.fixture
def destination_storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(StorageConfig(backend="local", local_path=str(tmp_path / "destination")))


@pytest.fixture
def gateway(source_storage: LocalStorage, destination_storage: LocalStorage) -> StorageGateway:
    return StorageGateway(source=source_storage, destination=destination_storage)


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def put_source(source_storage: LocalStorage, tmp_path: Path) -> Callable[[str], str]:
    """Store a small fake video under ``key`` in the source backend."""

    def _put(key: str) -> str:
        local = tmp_path / "upload.bin"
        local.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        source_storage.upload(str(local), key)
        return key

    return _put


@pytest.fixture
def make_orchestrator(gateway: StorageGateway, scratch_root: Path):
    """Build an orchestrator over the local gateway and the given fakes."""

    def _make(prober: Optional[MediaProber] = None, encoder: Optional[RenditionEncoder] = None,
              **kwargs) -> TranscodeOrchestrator:
        return TranscodeOrchestrator(
            gateway=gateway,
            prober=prober or FakeProber(),
            encoder=encoder or FakeEncoder(),
            scratch_root=str(scratch_root),
            **kwargs,
        )

    return _make
