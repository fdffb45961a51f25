"""Domain models for the transcoding pipeline.

Nothing here is persisted; every object lives for one job only.
"""

from dataclasses import dataclass, field
from enum import Enum


class Rendition(str, Enum):
    """Output quality tiers, declared in ascending order of quality."""
    RES_240P = "240p"
    RES_360P = "360p"
    RES_480P = "480p"
    RES_720P = "720p"
    RES_1080P = "1080p"

    @property
    def dimensions(self) -> tuple[int, int]:
        """Target (width, height) the encoder scales into."""
        return RENDITION_DIMENSIONS[self]

    @property
    def threshold(self) -> tuple[int, int]:
        """Minimum source (width, height) that classifies into this tier."""
        return RENDITION_THRESHOLDS[self]

    @property
    def rank(self) -> int:
        """Position in the ascending ladder, starting at 0."""
        return RENDITION_LADDER.index(self)


RENDITION_LADDER: tuple[Rendition, ...] = tuple(Rendition)

# Scale targets. 480p uses 852 rather than 854 so the width stays even.
RENDITION_DIMENSIONS = {
    Rendition.RES_240P: (426, 240),
    Rendition.RES_360P: (640, 360),
    Rendition.RES_480P: (852, 480),
    Rendition.RES_720P: (1280, 720),
    Rendition.RES_1080P: (1920, 1080),
}

# Classification thresholds (source must meet both width and height)
RENDITION_THRESHOLDS = {
    Rendition.RES_240P: (426, 240),
    Rendition.RES_360P: (640, 360),
    Rendition.RES_480P: (854, 480),
    Rendition.RES_720P: (1280, 720),
    Rendition.RES_1080P: (1920, 1080),
}


class Stage(str, Enum):
    """Pipeline stage a job failed in."""
    DOWNLOAD = "download"
    PROBE = "probe"
    ENCODE = "encode"
    UPLOAD = "upload"
    NO_OUTPUT = "no-output"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class MediaMetadata:
    """Facts about the source video, read once after download."""
    duration_millis: int
    width: int
    height: int

    def __post_init__(self):
        if self.duration_millis < 0:
            raise ValueError(f"duration_millis must be >= 0, got {self.duration_millis}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"dimensions must be positive, got {self.width}x{self.height}")


@dataclass
class TranscodeResult:
    """Outcome of a successful job."""
    source_duration_millis: int
    produced_renditions: list[Rendition] = field(default_factory=list)
    uploaded_keys: list[str] = field(default_factory=list)

    @property
    def rendition_names(self) -> list[str]:
        return [rendition.value for rendition in self.produced_renditions]
