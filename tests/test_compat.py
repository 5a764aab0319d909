import asyncio
import os
import time
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from iptv_proxy.compat.ffmpeg import build_ffmpeg_command
from iptv_proxy.compat.job import JobMode, TranscodeJob, compute_job_id
from iptv_proxy.compat.manager import CompatResult, TranscodeJobManager
from iptv_proxy.configs import settings
from iptv_proxy.const import HLS_CONTENT_TYPE
from iptv_proxy.exceptions import JobNotReadyError, TranscoderError
from iptv_proxy.main import app

SOURCE_URL = "http://origin.example.com/live/stream.ts"

READY_PLAYLIST = "#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4.000000,\nseg_00000.ts\n"


class FakeProcess:
    """Stands in for an ffmpeg process; exits only when told to (or terminated)."""

    def __init__(self, cmd: list[str]):
        self.cmd = cmd
        self.stderr = None
        self.returncode = None
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)


class FakeSpawner:
    """
    Spawns FakeProcess instances.

    ``behaviour`` decides, per command, whether the process writes a segment
    ("ready"), exits with an error ("fail"), exits cleanly ("exit") or just
    keeps running without output ("hang").
    """

    def __init__(self, behaviour="ready"):
        self.behaviour = behaviour
        self.processes: list[FakeProcess] = []

    async def __call__(self, cmd: list[str]) -> FakeProcess:
        process = FakeProcess(cmd)
        self.processes.append(process)
        behaviour = self.behaviour(cmd) if callable(self.behaviour) else self.behaviour
        if behaviour == "ready":
            with open(cmd[-1], "w") as f:
                f.write(READY_PLAYLIST)
        elif behaviour == "fail":
            process.exit(1)
        elif behaviour == "exit":
            process.exit(0)
        return process


@pytest.fixture(autouse=True)
def fast_readiness(monkeypatch):
    monkeypatch.setattr(settings, "ready_poll_interval", 0.01)
    monkeypatch.setattr(settings, "remux_ready_timeout", 0.3)
    monkeypatch.setattr(settings, "transcode_ready_timeout", 0.3)


@pytest_asyncio.fixture
async def make_manager(tmp_path):
    managers = []

    def _make(behaviour="ready"):
        spawner = FakeSpawner(behaviour)
        manager = TranscodeJobManager(output_root=str(tmp_path), spawner=spawner)
        managers.append(manager)
        return manager, spawner

    yield _make

    for manager in managers:
        await manager.close()


def test_job_id_is_a_pure_function_of_parameters():
    job_id = compute_job_id(SOURCE_URL, "remux", "2500k", "128k")

    assert job_id == compute_job_id(SOURCE_URL, JobMode.REMUX, "2500k", "128k")
    assert len(job_id) == 16
    assert job_id != compute_job_id(SOURCE_URL, "transcode", "2500k", "128k")
    assert job_id != compute_job_id(SOURCE_URL, "remux", "2500k", "96k")


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_process(make_manager):
    manager, spawner = make_manager("ready")

    results = await asyncio.gather(
        *(manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k") for _ in range(5))
    )

    assert len(spawner.processes) == 1
    assert len({result.job_id for result in results}) == 1
    assert results[0].mode is JobMode.REMUX
    assert results[0].play == f"/compat/{results[0].job_id}/index.m3u8"
    assert list(manager.get_active_jobs()) == [results[0].job_id]


@pytest.mark.asyncio
async def test_no_wait_returns_before_first_segment(make_manager):
    manager, spawner = make_manager("hang")

    result = await manager.ensure_job(SOURCE_URL, JobMode.TRANSCODE, "1500k", "96k", wait=False)

    assert result.job_id == compute_job_id(SOURCE_URL, "transcode", "1500k", "96k")
    assert not manager.get_job(result.job_id).ready.is_set()
    assert len(spawner.processes) == 1


@pytest.mark.asyncio
async def test_process_failure_is_a_transcoder_error(make_manager):
    manager, _ = make_manager("fail")

    with pytest.raises(TranscoderError) as exc_info:
        await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k")
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_missing_output_is_not_ready(make_manager):
    manager, _ = make_manager("hang")

    with pytest.raises(JobNotReadyError) as exc_info:
        await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_clean_exit_without_output_is_not_ready(make_manager):
    manager, _ = make_manager("exit")

    with pytest.raises(JobNotReadyError):
        await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k")


@pytest.mark.asyncio
async def test_spawn_failure_is_a_transcoder_error(tmp_path):
    async def spawner(cmd):
        raise FileNotFoundError("ffmpeg")

    manager = TranscodeJobManager(output_root=str(tmp_path), spawner=spawner)

    with pytest.raises(TranscoderError):
        await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k")
    assert manager.get_active_jobs() == {}
    await manager.close()


@pytest.mark.asyncio
async def test_remux_failure_falls_back_to_transcode(make_manager):
    manager, spawner = make_manager(lambda cmd: "fail" if "copy" in cmd else "ready")

    result = await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k", auto_fallback=True)

    assert result.mode is JobMode.TRANSCODE
    assert result.job_id == compute_job_id(SOURCE_URL, "transcode", settings.fallback_video_bitrate, "128k")
    assert len(spawner.processes) == 2
    assert "libx264" in spawner.processes[1].cmd
    assert settings.fallback_video_bitrate in spawner.processes[1].cmd


@pytest.mark.asyncio
async def test_remux_timeout_falls_back_to_transcode(make_manager):
    manager, spawner = make_manager(lambda cmd: "hang" if "copy" in cmd else "ready")

    result = await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k", auto_fallback=True)

    assert result.mode is JobMode.TRANSCODE
    assert len(spawner.processes) == 2


@pytest.mark.asyncio
async def test_exited_job_is_replaced(make_manager):
    outcomes = iter(["fail", "ready"])
    manager, spawner = make_manager(lambda cmd: next(outcomes))

    with pytest.raises(TranscoderError):
        await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k")
    result = await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k")

    assert len(spawner.processes) == 2
    assert manager.get_job(result.job_id).ready.is_set()


@pytest.mark.asyncio
async def test_idle_jobs_are_evicted(make_manager, monkeypatch):
    monkeypatch.setattr(settings, "job_idle_timeout", 60)
    manager, spawner = make_manager("hang")

    stale = await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k", wait=False)
    fresh = await manager.ensure_job(SOURCE_URL, JobMode.TRANSCODE, "2500k", "128k", wait=False)
    stale_job = manager.get_job(stale.job_id)
    stale_job.last_access = time.time() - 120

    evicted = await manager.evict_idle()

    assert evicted == [stale.job_id]
    assert manager.get_job(stale.job_id) is None
    assert manager.get_job(fresh.job_id) is not None
    assert spawner.processes[0].returncode == -15
    assert spawner.processes[1].returncode is None
    assert not os.path.exists(stale_job.output_dir)


@pytest.mark.asyncio
async def test_eviction_skips_jobs_with_waiters(make_manager, monkeypatch):
    monkeypatch.setattr(settings, "job_idle_timeout", 60)
    manager, _ = make_manager("hang")

    result = await manager.ensure_job(SOURCE_URL, JobMode.REMUX, "2500k", "128k", wait=False)
    job = manager.get_job(result.job_id)
    job.last_access = time.time() - 120
    job.waiters = 1

    assert await manager.evict_idle() == []
    assert manager.get_job(result.job_id) is job


def test_ffmpeg_command_for_remux_and_transcode(tmp_path):
    remux = TranscodeJob("a" * 16, SOURCE_URL, JobMode.REMUX, "2500k", "128k", str(tmp_path))
    transcode = TranscodeJob("b" * 16, SOURCE_URL, JobMode.TRANSCODE, "1800k", "96k", str(tmp_path))

    remux_cmd = build_ffmpeg_command(
        remux,
        user_agent="VLC/3.0.20",
        headers={"Referer": "https://site.example/", "Origin": ""},
        ffmpeg_path="/usr/bin/ffmpeg",
    )
    transcode_cmd = build_ffmpeg_command(transcode)

    assert remux_cmd[0] == "/usr/bin/ffmpeg"
    assert remux_cmd[remux_cmd.index("-i") + 1] == SOURCE_URL
    assert remux_cmd[remux_cmd.index("-c:v") + 1] == "copy"
    assert remux_cmd[remux_cmd.index("-user_agent") + 1] == "VLC/3.0.20"
    assert remux_cmd[remux_cmd.index("-headers") + 1] == "Referer: https://site.example/\r\n"
    assert remux_cmd[-1] == remux.playlist_path

    assert transcode_cmd[transcode_cmd.index("-c:v") + 1] == "libx264"
    assert transcode_cmd[transcode_cmd.index("-b:v") + 1] == "1800k"
    assert transcode_cmd[transcode_cmd.index("-b:a") + 1] == "96k"
    assert "-headers" not in transcode_cmd
    assert transcode_cmd[transcode_cmd.index("-hls_segment_filename") + 1] == os.path.join(
        str(tmp_path), "seg_%05d.ts"
    )


class StubJobManager:
    def __init__(self, result=None, error=None, job=None):
        self.result = result
        self.error = error
        self.job = job
        self.calls = []

    async def ensure_job(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if self.error:
            raise self.error
        return self.result

    def touch(self, job_id):
        if self.job is not None and self.job.id == job_id:
            return self.job
        return None


@pytest.fixture
def client():
    return TestClient(app)


def _use_manager(monkeypatch, manager):
    monkeypatch.setattr("iptv_proxy.routes.compat._get_job_manager", lambda: manager)


def test_start_compat_returns_play_path(client, monkeypatch):
    job_id = compute_job_id(SOURCE_URL, "transcode", "2000k", "128k")
    manager = StubJobManager(result=CompatResult(job_id, JobMode.TRANSCODE, f"/compat/{job_id}/index.m3u8"))
    _use_manager(monkeypatch, manager)

    response = client.get(
        "/start-compat",
        params={"url": SOURCE_URL, "mode": "transcode", "vbr": "2000k", "referer": "https://site.example/"},
    )

    assert response.status_code == 200
    assert response.json() == {"id": job_id, "mode": "transcode", "play": f"/compat/{job_id}/index.m3u8"}
    args, kwargs = manager.calls[0]
    assert args == (SOURCE_URL, JobMode.TRANSCODE, "2000k", settings.default_audio_bitrate)
    assert kwargs["headers"] == {"Referer": "https://site.example/"}
    assert kwargs["wait"] is True
    assert kwargs["auto_fallback"] is False


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"url": "file:///etc/passwd"},
        {"url": SOURCE_URL, "mode": "copy"},
        {"url": SOURCE_URL, "vbr": "fast"},
        {"url": SOURCE_URL, "abr": "128k; rm -rf /"},
    ],
)
def test_start_compat_rejects_bad_input(client, monkeypatch, params):
    manager = StubJobManager()
    _use_manager(monkeypatch, manager)

    response = client.get("/start-compat", params=params)

    assert response.status_code == 400
    assert manager.calls == []


@pytest.mark.parametrize(
    "error, status_code",
    [
        (TranscoderError("transcoder failed: Connection refused"), 500),
        (JobNotReadyError("stream not ready within 20s"), 502),
    ],
)
def test_start_compat_reports_job_errors(client, monkeypatch, error, status_code):
    _use_manager(monkeypatch, StubJobManager(error=error))

    response = client.get("/start-compat", params={"url": SOURCE_URL})

    assert response.status_code == status_code
    assert response.json()["detail"] == error.message


def test_compat_files_are_served_without_caching(client, monkeypatch, tmp_path):
    job_id = "0123456789abcdef"
    (tmp_path / "index.m3u8").write_text(READY_PLAYLIST)
    (tmp_path / "seg_00000.ts").write_bytes(b"\x47" * 188)
    _use_manager(monkeypatch, StubJobManager(job=SimpleNamespace(id=job_id, output_dir=str(tmp_path))))

    playlist = client.get(f"/compat/{job_id}/index.m3u8")
    segment = client.get(f"/compat/{job_id}/seg_00000.ts")

    assert playlist.status_code == 200
    assert playlist.headers["content-type"].startswith(HLS_CONTENT_TYPE)
    assert playlist.headers["cache-control"] == "no-cache, no-store"
    assert playlist.text == READY_PLAYLIST
    assert segment.headers["content-type"] == "video/mp2t"
    assert segment.content == b"\x47" * 188


def test_compat_files_of_unknown_jobs_are_404(client, monkeypatch, tmp_path):
    _use_manager(monkeypatch, StubJobManager(job=SimpleNamespace(id="0123456789abcdef", output_dir=str(tmp_path))))

    assert client.get("/compat/fedcba9876543210/index.m3u8").status_code == 404
    assert client.get("/compat/0123456789abcdef/missing.ts").status_code == 404
