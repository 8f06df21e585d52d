from __future__ import annotations

import asyncio
import enum
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from .store import CameraRecord, GlobalConfig

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = "output_%03d.mp4"
_SEGMENT_RE = re.compile(r"^output_(\d+)\.mp4$")

SpawnFn = Callable[..., Awaitable[Any]]


def with_credentials(url: str, username: str | None, password: str | None) -> str:
    """Return ``url`` with ``username:password@`` in its authority.

    The URL is returned untouched unless both credentials are present.
    """
    if not username or password is None:
        return url
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    userinfo = f"{quote(username, safe='')}:{quote(password, safe='')}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))


def split_credentials(url: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Strip ``user:pass@`` from ``url``, returning it with the credentials."""
    parts = urlsplit(url)
    userinfo, sep, host = parts.netloc.rpartition("@")
    if not sep or ":" not in userinfo:
        return url, None, None
    username, _, password = userinfo.partition(":")
    bare = urlunsplit(parts._replace(netloc=host))
    return bare, unquote(username), unquote(password)


def build_ffmpeg_cmd(
    camera: CameraRecord,
    config: GlobalConfig,
    start_number: int = 0,
    ffmpeg: str = "ffmpeg",
) -> List[str]:
    """Build the ffmpeg command that records ``camera`` into segment files."""
    cmd = [ffmpeg, "-y", "-nostdin", "-loglevel", "warning"]
    if camera.url.startswith("rtsp://"):
        cmd += ["-rtsp_transport", "tcp"]
    cmd += [
        "-i",
        with_credentials(camera.url, camera.username, camera.password),
        # Segmented recording, no re-encode
        "-map",
        "0",
        "-c",
        "copy",
        "-f",
        "segment",
        "-segment_time",
        str(config.segment_time),
        "-segment_start_number",
        str(start_number),
        "-reset_timestamps",
        "1",
        str(Path(camera.output_dir) / SEGMENT_PATTERN),
    ]
    if camera.restream:
        # Live restream
        fmt = "flv" if camera.restream.startswith("rtmp") else "rtsp"
        cmd += ["-map", "0", "-c", "copy", "-f", fmt, camera.restream]
    return cmd


def next_segment_number(output_dir: Path) -> int:
    """Return the number after the highest existing segment file."""
    highest = -1
    for entry in output_dir.glob("output_*.mp4"):
        match = _SEGMENT_RE.match(entry.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def backoff_delay(failures: int, retry_interval: float, max_backoff: float) -> float:
    """Delay before restart attempt number ``failures``.

    Doubles from ``retry_interval`` and is capped at ``max_backoff``, but
    never drops below ``retry_interval``.
    """
    retry_interval = max(float(retry_interval), 0.0)
    ceiling = max(float(max_backoff), retry_interval)
    exponent = min(max(failures, 1) - 1, 32)
    return min(retry_interval * 2**exponent, ceiling)


class WorkerState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class Recorder:
    """Supervise the ffmpeg process recording a single camera.

    The recorder spawns the capture process, restarts it with an increasing
    delay whenever it exits, and kills it once :meth:`kill` or :meth:`stop`
    is called. ``camera`` and ``config`` are snapshots; later edits only apply
    to a new recorder.
    """

    def __init__(
        self,
        camera: CameraRecord,
        config: GlobalConfig,
        spawn: SpawnFn | None = None,
        ffmpeg: str = "ffmpeg",
    ):
        self.camera = camera
        self.config = config
        self.ffmpeg = ffmpeg
        self._spawn_fn = spawn or asyncio.create_subprocess_exec
        self.process: Any = None
        self.state = WorkerState.STOPPED
        self.failures = 0
        self.backoff = 0.0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._launched: asyncio.Future | None = None

    def status(self) -> Dict[str, Any]:
        return {
            "id": self.camera.id,
            "name": self.camera.name,
            "state": self.state.value,
            "failures": self.failures,
            "backoff": self.backoff,
            "pid": getattr(self.process, "pid", None),
        }

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------
    def _prepare_output_dir(self) -> int:
        record_dir = Path(self.camera.output_dir)
        record_dir.mkdir(parents=True, exist_ok=True)
        return next_segment_number(record_dir)

    async def _spawn(self) -> None:
        self.state = WorkerState.STARTING
        start_number = await asyncio.to_thread(self._prepare_output_dir)
        cmd = build_ffmpeg_cmd(
            self.camera, self.config, start_number=start_number, ffmpeg=self.ffmpeg
        )
        self.process = await self._spawn_fn(
            *cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
        )
        logger.info(
            "Started recording %s (pid %s)", self.camera.name, self.process.pid
        )

    def _kill_process(self) -> None:
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _release(self) -> None:
        process = self.process
        self._kill_process()
        if process is not None:
            await process.wait()
        self.process = None

    async def _wait_exit(self) -> int | None:
        """Block until the process exits or a stop is requested.

        Returns the exit status, or ``None`` when stopped.
        """
        exit_task = asyncio.ensure_future(self.process.wait())
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait(
                {exit_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_task.cancel()
            if not exit_task.done():
                exit_task.cancel()
        if self._stop.is_set():
            return None
        return exit_task.result()

    async def _backoff(self, ran_for: float) -> bool:
        """Wait before the next restart; return False if stopped meanwhile."""
        if ran_for > self.config.retry_interval:
            self.failures = 0
        self.failures += 1
        self.backoff = backoff_delay(
            self.failures, self.config.retry_interval, self.config.max_backoff
        )
        self.state = WorkerState.BACKOFF
        logger.info(
            "Restarting %s in %.1fs (failure %d)",
            self.camera.name,
            self.backoff,
            self.failures,
        )
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.backoff)
        except asyncio.TimeoutError:
            return True
        return False

    async def _supervise(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while not self._stop.is_set():
                if self.process is None:
                    try:
                        await self._spawn()
                    except (OSError, ValueError) as exc:
                        if not self._launched.done():
                            self._launched.set_exception(exc)
                            return
                        logger.error(
                            "Could not start ffmpeg for %s: %s", self.camera.name, exc
                        )
                        if not await self._backoff(0.0):
                            break
                        continue
                    if self._stop.is_set():
                        break
                self.state = WorkerState.RUNNING
                if not self._launched.done():
                    self._launched.set_result(None)
                started = loop.time()
                status = await self._wait_exit()
                if status is None:
                    break
                self.process = None
                logger.warning(
                    "Recording for %s exited with status %s", self.camera.name, status
                )
                if not await self._backoff(loop.time() - started):
                    break
        finally:
            await self._release()
            self.state = WorkerState.STOPPED
            if not self._launched.done():
                self._launched.set_result(None)
            logger.info("Stopped recording %s", self.camera.name)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Begin supervising and wait for the first process to spawn.

        Raises ``OSError`` or ``ValueError`` if the first spawn fails; nothing
        keeps running in that case. The supervising task exists before the
        first spawn, so :meth:`wait` always covers an in-flight spawn.
        """
        if self._task is not None:
            raise RuntimeError(f"recorder for {self.camera.name} already started")
        self.state = WorkerState.STARTING
        self._launched = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(
            self._supervise(), name=f"recorder-{self.camera.id}"
        )
        await asyncio.shield(self._launched)

    def kill(self) -> None:
        """Request a stop and kill the live process without waiting."""
        self._stop.set()
        self._kill_process()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def stop(self) -> None:
        self.kill()
        if self._task is None:
            await self._release()
            self.state = WorkerState.STOPPED
            return
        await self.wait()
