from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .recorder import Recorder, SpawnFn, split_credentials
from .registry import WorkerRegistry
from .store import CameraRecord, ConfigStore, GlobalConfig

logger = logging.getLogger(__name__)

STARTED = "started"
ALREADY_RUNNING = "already running"


class CameraNotFound(LookupError):
    """No camera is stored under the requested id."""

    def __init__(self, camera_id: int):
        super().__init__(f"camera {camera_id} not found")
        self.camera_id = camera_id


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _reject_nul(value: Any) -> Any:
    if isinstance(value, str) and "\x00" in value:
        raise ValueError("must not contain NUL characters")
    return value


class CameraIn(BaseModel):
    """Payload for creating a camera."""

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    output_dir: str = Field(min_length=1)
    restream: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("restream", "username", "password", mode="before")
    @classmethod
    def blank_optionals(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator(
        "name", "url", "output_dir", "restream", "username", "password"
    )
    @classmethod
    def no_nul(cls, value: Any) -> Any:
        return _reject_nul(value)

    @model_validator(mode="after")
    def split_url_credentials(self) -> "CameraIn":
        if self.username is None:
            url, username, password = split_credentials(self.url)
            if username:
                self.url = url
                self.username = _reject_nul(username)
                self.password = _reject_nul(password)
        return self


class CameraUpdate(BaseModel):
    """Partial camera edit; omitted fields keep their stored value."""

    name: Optional[str] = Field(default=None, min_length=1)
    url: Optional[str] = Field(default=None, min_length=1)
    output_dir: Optional[str] = Field(default=None, min_length=1)
    restream: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("restream", "username", "password", mode="before")
    @classmethod
    def blank_optionals(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator(
        "name", "url", "output_dir", "restream", "username", "password"
    )
    @classmethod
    def no_nul(cls, value: Any) -> Any:
        return _reject_nul(value)

    def fields(self) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        for required in ("name", "url", "output_dir"):
            if changes.get(required, "") is None:
                del changes[required]
        return changes


class ConfigIn(BaseModel):
    segment_time: int = Field(gt=0)
    retry_interval: int = Field(ge=0)
    max_backoff: int = Field(ge=0)

    @model_validator(mode="after")
    def check_backoff(self) -> "ConfigIn":
        if self.max_backoff < self.retry_interval:
            raise ValueError("max_backoff must be at least retry_interval")
        return self

    def to_config(self) -> GlobalConfig:
        return GlobalConfig(**self.model_dump())


class CameraManager:
    """Manage camera records and their recording workers.

    Owns the store, the worker registry and the in-memory global config.
    Store calls run in a worker thread so the event loop never blocks on disk.
    """

    def __init__(
        self, store: ConfigStore, spawn: SpawnFn | None = None, ffmpeg: str = "ffmpeg"
    ):
        self.store = store
        self.registry = WorkerRegistry()
        self.ffmpeg = ffmpeg
        self._spawn = spawn
        self._config_lock = threading.Lock()
        self._config = store.get_config()

    # ------------------------------------------------------------------
    # Global config
    # ------------------------------------------------------------------
    def get_config(self) -> GlobalConfig:
        with self._config_lock:
            return self._config

    async def set_config(self, new: ConfigIn) -> GlobalConfig:
        """Persist and publish a new config; running workers keep theirs."""
        config = new.to_config()
        await asyncio.to_thread(self.store.set_config, config)
        with self._config_lock:
            self._config = config
        logger.info("Config updated: %s", config)
        return config

    # ------------------------------------------------------------------
    # Camera management
    # ------------------------------------------------------------------
    async def list_cameras(self) -> List[CameraRecord]:
        return await asyncio.to_thread(self.store.list_cameras)

    async def get_camera(self, camera_id: int) -> CameraRecord:
        camera = await asyncio.to_thread(self.store.get_camera, camera_id)
        if camera is None:
            raise CameraNotFound(camera_id)
        return camera

    async def add_camera(self, camera: CameraIn) -> int:
        """Store a new camera and return its id.

        Raises ``StoreConstraintError`` when name, url, output_dir or
        restream clash with an existing camera.
        """
        camera_id = await asyncio.to_thread(
            self.store.create_camera, camera.model_dump()
        )
        logger.info("Added camera %s (id %d)", camera.name, camera_id)
        return camera_id

    async def update_camera(self, camera_id: int, update: CameraUpdate) -> CameraRecord:
        """Edit a camera; a running worker is restarted with the new record."""
        found = await asyncio.to_thread(
            self.store.update_camera, camera_id, update.fields()
        )
        if not found:
            raise CameraNotFound(camera_id)
        if await self.stop_camera(camera_id):
            await self.start_camera(camera_id)
        return await self.get_camera(camera_id)

    async def remove_camera(self, camera_id: int) -> None:
        """Delete the camera and stop its recording."""
        if not await asyncio.to_thread(self.store.delete_camera, camera_id):
            raise CameraNotFound(camera_id)
        await self.stop_camera(camera_id)
        logger.info("Removed camera %d", camera_id)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    async def _start(self, camera: CameraRecord) -> str:
        recorder = Recorder(
            camera, self.get_config(), spawn=self._spawn, ffmpeg=self.ffmpeg
        )
        if not await self.registry.register(camera.id, recorder):
            logger.info("Worker for %s already running", camera.name)
            return ALREADY_RUNNING
        # The camera may have been removed since it was read.
        if await asyncio.to_thread(self.store.get_camera, camera.id) is None:
            await self.registry.unregister(camera.id, expected=recorder)
            raise CameraNotFound(camera.id)
        try:
            await recorder.start()
        except (OSError, ValueError):
            await self.registry.unregister(camera.id, expected=recorder)
            raise
        return STARTED

    async def start_camera(self, camera_id: int) -> str:
        """Start recording one camera.

        Returns ``STARTED`` or ``ALREADY_RUNNING``; raises ``OSError`` or
        ``ValueError`` if ffmpeg could not be spawned.
        """
        return await self._start(await self.get_camera(camera_id))

    async def _start_reporting(self, camera: CameraRecord) -> str:
        try:
            return await self._start(camera)
        except (OSError, ValueError, LookupError) as exc:
            logger.error("Could not start worker for %s: %s", camera.name, exc)
            return str(exc)

    async def start_all(self) -> Dict[int, str]:
        """Start a worker for every stored camera.

        Maps each camera id to ``STARTED``, ``ALREADY_RUNNING`` or the error
        that prevented its start.
        """
        cameras = await self.list_cameras()
        results = await asyncio.gather(*(self._start_reporting(c) for c in cameras))
        logger.info("Service started")
        return {camera.id: result for camera, result in zip(cameras, results)}

    async def stop_camera(self, camera_id: int) -> bool:
        """Stop a camera's worker; return False if none was running.

        Returns only once the worker's process has been killed and reaped.
        """
        recorder = await self.registry.unregister(camera_id)
        if recorder is None:
            return False
        await recorder.wait()
        return True

    async def stop_all(self) -> None:
        camera_ids = await self.registry.snapshot()
        await asyncio.gather(*(self.stop_camera(cid) for cid in camera_ids))
        logger.info("Service stopped")

    async def worker_status(self) -> List[Dict[str, Any]]:
        statuses = []
        for camera_id in sorted(await self.registry.snapshot()):
            recorder = await self.registry.lookup(camera_id)
            if recorder is not None:
                statuses.append(recorder.status())
        return statuses
