"""Application modules.

- transcoding: Source download, probing, rendition planning, HLS encoding and upload
"""
