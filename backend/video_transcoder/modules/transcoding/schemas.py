"""Pydantic schemas for the transcode endpoint.

One request stream carries any number of ``TranscodeVideoRequest`` chunks
(one JSON object per line); the server answers with a single
``TranscodeVideoResponse``.
"""

from pydantic import BaseModel, Field

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class TranscodeVideoRequest(BaseModel):
    """One chunk of the request stream."""
    filename: str = Field(..., min_length=1, description="Key of the source video object")


class TranscodeVideoResponse(BaseModel):
    """Outcome of a transcode call."""
    message: str = Field(..., description="Human readable outcome or failure diagnostic")
    success: bool
    transcoded_files: list[str] = Field(
        default_factory=list,
        alias="transcodedFiles",
        description="Produced renditions in ascending quality order",
    )
    duration_millis: int = Field(
        default=0,
        alias="durationMillis",
        description="Source duration in milliseconds",
    )

    class Config:
        populate_by_name = True

    @classmethod
    def failure(cls, message: str) -> "TranscodeVideoResponse":
        return cls(message=message, success=False)
