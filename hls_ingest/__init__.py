"""
HLS Ingest - A package for turning remote video files into published HLS streams.

Core components:
- pipeline: Per-item stage machine and the backlog runner
- media_utils: Streaming downloads of the source media
- transcode: ffmpeg HLS segmentation
- s3_utils: Publishing playlists and segments to S3
- db_utils_dynamo: DynamoDB provenance catalog
"""

__version__ = "0.1.0"
