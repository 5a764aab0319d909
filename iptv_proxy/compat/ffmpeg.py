import os
from typing import Dict, List, Optional

from iptv_proxy.compat.job import JobMode, SEGMENT_PATTERN, TranscodeJob
from iptv_proxy.configs import settings

AUDIO_CODEC = "aac"
AUDIO_CHANNELS = "2"
VIDEO_CODEC = "libx264"
VIDEO_PRESET = "veryfast"


def build_ffmpeg_command(
    job: TranscodeJob,
    user_agent: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    ffmpeg_path: Optional[str] = None,
) -> List[str]:
    """
    Build the transcoder command line for a job.

    Args:
        job (TranscodeJob): The job to run.
        user_agent (str, optional): User-agent sent to the source.
        headers (dict, optional): Extra request headers (Referer, Origin) sent to the source.
        ffmpeg_path (str, optional): The transcoder binary.

    Returns:
        list[str]: The argument vector.
    """
    cmd = [
        ffmpeg_path or settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "error",
        "-reconnect",
        "1",
        "-reconnect_streamed",
        "1",
        "-reconnect_on_network_error",
        "1",
        "-reconnect_delay_max",
        "5",
    ]

    if user_agent:
        cmd.extend(["-user_agent", user_agent])

    header_lines = [f"{k}: {v}" for k, v in (headers or {}).items() if v]
    if header_lines:
        cmd.extend(["-headers", "\r\n".join(header_lines) + "\r\n"])

    cmd.extend(["-i", job.source_url, "-map", "0:v:0?", "-map", "0:a:0?"])

    if job.mode is JobMode.TRANSCODE:
        cmd.extend(
            [
                "-c:v",
                VIDEO_CODEC,
                "-preset",
                VIDEO_PRESET,
                "-tune",
                "zerolatency",
                "-b:v",
                job.video_bitrate,
                "-maxrate",
                job.video_bitrate,
                "-bufsize",
                job.video_bitrate,
                "-pix_fmt",
                "yuv420p",
                "-g",
                str(settings.hls_time * 25),
                "-sc_threshold",
                "0",
            ]
        )
    else:
        cmd.extend(["-c:v", "copy"])

    cmd.extend(
        [
            "-c:a",
            AUDIO_CODEC,
            "-ac",
            AUDIO_CHANNELS,
            "-b:a",
            job.audio_bitrate,
            "-f",
            "hls",
            "-hls_time",
            str(settings.hls_time),
            "-hls_list_size",
            str(settings.hls_list_size),
            "-hls_flags",
            "delete_segments+omit_endlist+temp_file",
            "-hls_segment_filename",
            os.path.join(job.output_dir, SEGMENT_PATTERN),
            job.playlist_path,
        ]
    )
    return cmd
