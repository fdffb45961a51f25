"""Transcoding module for HLS rendition ladders.

Downloads a source video, probes it with ffprobe, plans the renditions the
source can support, encodes each one to HLS with ffmpeg and uploads the
playlist and segments to the destination bucket.
"""
