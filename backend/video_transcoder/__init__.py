"""Video Transcoder Service.

Downloads a source video from object storage, encodes it into a ladder of
segmented HLS renditions and publishes the renditions to a destination bucket.

Modules:
    - core: Configuration, logging, tracing, metrics, storage backends
    - modules.transcoding: Resolution planning, ffmpeg/ffprobe invocation,
      job orchestration and the streaming transcode endpoint
"""

__version__ = "0.1.0"
