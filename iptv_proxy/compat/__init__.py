"""
Compatibility renditions.

Remuxes or transcodes a source stream with an external ffmpeg process into a
locally served rolling HLS playlist:

- job: TranscodeJob state, content addressing and readiness inspection
- ffmpeg: Transcoder command line for remux and transcode modes
- manager: Job table, per-id creation, readiness wait, fallback and idle eviction
"""
