import logging
import os
import re
from typing import Annotated

from fastapi import APIRouter, HTTPException, Path, Query
from fastapi.responses import FileResponse

from iptv_proxy.compat.job import JobMode
from iptv_proxy.configs import settings
from iptv_proxy.const import HLS_CONTENT_TYPE
from iptv_proxy.exceptions import ProxyError
from iptv_proxy.schemas import CompatParams, CompatResponse, is_truthy
from iptv_proxy.utils.request_utils import parse_target_url, resolve_user_agent

logger = logging.getLogger(__name__)

compat_router = APIRouter()

BITRATE_PATTERN = re.compile(r"^\d+(\.\d+)?[kKmM]?$")

MEDIA_TYPES = {
    ".m3u8": HLS_CONTENT_TYPE,
    ".ts": "video/mp2t",
}


def _get_job_manager():
    from iptv_proxy.compat.manager import job_manager

    return job_manager


def _validate_bitrate(name: str, value: str) -> str:
    if not BITRATE_PATTERN.match(value):
        raise HTTPException(status_code=400, detail=f"invalid {name}: {value}")
    return value


@compat_router.get("/start-compat", response_model=CompatResponse)
async def start_compat(params: Annotated[CompatParams, Query()]):
    """
    Start (or join) a compatibility rendition of a source stream.

    The source is remuxed or transcoded to a rolling HLS playlist served under
    the compatibility prefix. Identical requests share one transcoder process.

    Args:
        params (CompatParams): Source URL, mode, bitrates, wait and fallback flags, source headers.

    Returns:
        CompatResponse: The job id, the mode actually used and the playlist path.
    """
    try:
        target = parse_target_url(params.url)
    except ProxyError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    video_bitrate = _validate_bitrate("vbr", params.vbr or settings.default_video_bitrate)
    audio_bitrate = _validate_bitrate("abr", params.abr or settings.default_audio_bitrate)

    headers = {}
    if params.referer:
        headers["Referer"] = params.referer
    if params.origin:
        headers["Origin"] = params.origin

    try:
        result = await _get_job_manager().ensure_job(
            target.geturl(),
            JobMode(params.mode),
            video_bitrate,
            audio_bitrate,
            user_agent=resolve_user_agent(params.ua),
            headers=headers,
            wait=is_truthy(params.wait),
            auto_fallback=is_truthy(params.auto_fallback),
        )
    except ProxyError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return CompatResponse(id=result.job_id, mode=result.mode.value, play=result.play)


@compat_router.get(settings.compat_prefix.rstrip("/") + "/{job_id}/{filename}", name="compat_file")
async def compat_file(
    job_id: Annotated[str, Path(pattern=r"^[0-9a-f]{16}$")],
    filename: Annotated[str, Path(pattern=r"^[A-Za-z0-9_.-]+$")],
):
    """
    Serve a file from a job's output directory and mark the job as accessed.
    """
    job = _get_job_manager().touch(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Unknown compatibility job")

    file_path = os.path.join(job.output_dir, filename)
    if filename.startswith(".") or not os.path.isfile(file_path):
        raise HTTPException(status_code=404, detail="Not Found")

    _, extension = os.path.splitext(filename)
    return FileResponse(
        file_path,
        media_type=MEDIA_TYPES.get(extension.lower()),
        headers={"cache-control": "no-cache, no-store"},
    )
