from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException

from .camera_manager import (
    ALREADY_RUNNING,
    CameraIn,
    CameraManager,
    CameraNotFound,
    CameraUpdate,
    ConfigIn,
)
from .store import StoreConstraintError


def create_app(manager: CameraManager) -> FastAPI:
    """Build the HTTP management API around ``manager``."""
    app = FastAPI(title="SimpleNVR API")
    app.state.manager = manager

    @app.get("/cameras")
    async def list_cameras() -> list[dict[str, Any]]:
        return [c.to_dict() for c in await manager.list_cameras()]

    @app.post("/cameras")
    async def add_camera(camera: CameraIn) -> dict[str, Any]:
        try:
            camera_id = await manager.add_camera(camera)
        except StoreConstraintError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"status": "success", "message": "Camera created successfully", "id": camera_id}

    @app.put("/cameras/{camera_id}")
    async def update_camera(camera_id: int, update: CameraUpdate) -> dict[str, Any]:
        try:
            camera = await manager.update_camera(camera_id, update)
        except CameraNotFound as exc:
            raise HTTPException(status_code=404, detail="Camera not found") from exc
        except StoreConstraintError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return camera.to_dict()

    @app.delete("/cameras/{camera_id}")
    async def delete_camera(camera_id: int) -> dict[str, str]:
        try:
            await manager.remove_camera(camera_id)
        except CameraNotFound as exc:
            raise HTTPException(status_code=404, detail="Camera not found") from exc
        return {"status": "removed"}

    @app.post("/cameras/{camera_id}/start")
    async def start_camera(camera_id: int) -> dict[str, str]:
        try:
            outcome = await manager.start_camera(camera_id)
        except CameraNotFound as exc:
            raise HTTPException(status_code=404, detail="Camera not found") from exc
        except (OSError, ValueError) as exc:
            raise HTTPException(status_code=502, detail=f"Could not start ffmpeg: {exc}") from exc
        if outcome == ALREADY_RUNNING:
            raise HTTPException(status_code=409, detail="Worker already running")
        return {"status": outcome}

    @app.post("/cameras/{camera_id}/stop")
    async def stop_camera(camera_id: int) -> dict[str, str]:
        stopped = await manager.stop_camera(camera_id)
        return {"status": "stopped" if stopped else "not running"}

    @app.get("/config")
    def get_config() -> dict[str, int]:
        return manager.get_config().to_dict()

    @app.put("/config")
    async def set_config(config: ConfigIn) -> dict[str, int]:
        return (await manager.set_config(config)).to_dict()

    @app.post("/service/start")
    async def start_service() -> dict[str, str]:
        results = await manager.start_all()
        return {str(camera_id): outcome for camera_id, outcome in results.items()}

    @app.post("/service/stop")
    async def stop_service() -> dict[str, str]:
        await manager.stop_all()
        return {"status": "stopped"}

    @app.get("/workers")
    async def workers() -> list[dict[str, Any]]:
        return await manager.worker_status()

    return app
