from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set

from pydantic import ValidationError

from .camera_manager import (
    ALREADY_RUNNING,
    STARTED,
    CameraIn,
    CameraManager,
    CameraNotFound,
    CameraUpdate,
    ConfigIn,
)
from .store import StoreConstraintError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000
UNKNOWN_COMMAND = "Unknown command"
LINE_TOO_LONG = "Command line too long"
DEFAULT_LINE_LIMIT = 2**16

Handler = Callable[[str], Awaitable[str]]


def result(status: str, message: str, camera_id: int | None = None) -> str:
    """Encode a mutating command's outcome as a one-line JSON object."""
    return json.dumps({"status": status, "message": message, "id": camera_id})


def success(message: str, camera_id: int | None = None) -> str:
    return result("success", message, camera_id)


def failure(message: str, camera_id: int | None = None) -> str:
    return result("failure", message, camera_id)


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error["loc"]) or "payload"
        parts.append(f"{loc}: {error['msg']}")
    return "; ".join(parts)


def parse_camera_id(payload: str) -> int:
    try:
        return int(payload.strip())
    except ValueError:
        raise ValueError(f"Invalid camera id: {payload!r}") from None


class ControlServer:
    """Line-oriented TCP control interface.

    Each request is one line, ``command`` or ``command|payload``, and gets
    exactly one response line before the next request is read.
    """

    def __init__(
        self,
        manager: CameraManager,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        limit: int = DEFAULT_LINE_LIMIT,
    ):
        self.manager = manager
        self.limit = limit
        self.host = host
        self.requested_port = port
        self._server: asyncio.base_events.Server | None = None
        self._connections: Set[asyncio.StreamWriter] = set()
        self._handlers: Dict[str, Handler] = {
            "list": self._list,
            "start": self._start,
            "stop": self._stop,
            "config": self._config,
            "addCamera": self._add_camera,
            "updateCamera": self._update_camera,
            "removeCamera": self._remove_camera,
            "setConfig": self._set_config,
            "startCamera": self._start_camera,
            "stopCamera": self._stop_camera,
            "status": self._status,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self.requested_port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.requested_port, limit=self.limit
        )
        logger.info("Control server listening on %s:%d", self.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._connections):
            writer.close()
        await self._server.wait_closed()
        self._server = None

    async def __aenter__(self) -> "ControlServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        logger.debug("Control connection from %s", peer)
        self._connections.add(writer)
        try:
            while True:
                line = await self._read_line(reader)
                if line is None:
                    logger.warning("Discarded an over-long command line from %s", peer)
                    response = failure(LINE_TOO_LONG)
                elif not line:
                    break
                else:
                    command = line.decode("utf-8", errors="replace").strip()
                    if not command:
                        continue
                    response = await self.dispatch(command)
                writer.write(response.replace("\n", " ").encode("utf-8") + b"\n")
                await writer.drain()
        except ConnectionError as exc:
            logger.debug("Control connection %s dropped: %s", peer, exc)
        finally:
            self._connections.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            logger.debug("Control connection from %s closed", peer)

    async def _read_line(self, reader: asyncio.StreamReader) -> bytes | None:
        """Read one line; b"" at EOF, None if it exceeded the line limit.

        An over-long line is discarded up to and including its newline.
        """
        try:
            return await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            return exc.partial
        except asyncio.LimitOverrunError as exc:
            consumed = exc.consumed
        while True:
            await reader.read(consumed)
            try:
                await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError:
                return None
            except asyncio.LimitOverrunError as exc:
                consumed = exc.consumed
            else:
                return None

    async def dispatch(self, line: str) -> str:
        """Run one command line and return its response line."""
        command, _, payload = line.partition("|")
        handler = self._handlers.get(command.strip())
        if handler is None:
            return UNKNOWN_COMMAND
        try:
            return await handler(payload)
        except Exception as exc:
            logger.exception("Control command %r failed", command)
            return failure(f"Error handling {command}: {exc}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def _list(self, payload: str) -> str:
        cameras = await self.manager.list_cameras()
        return json.dumps([camera.summary() for camera in cameras])

    async def _start(self, payload: str) -> str:
        results = await self.manager.start_all()
        errors = [
            f"{camera_id}: {outcome}"
            for camera_id, outcome in results.items()
            if outcome not in (STARTED, ALREADY_RUNNING)
        ]
        if errors:
            return "Service started with errors: " + "; ".join(errors)
        return "Service started."

    async def _stop(self, payload: str) -> str:
        await self.manager.stop_all()
        return "Service stopped."

    async def _config(self, payload: str) -> str:
        return json.dumps(self.manager.get_config().to_dict())

    async def _status(self, payload: str) -> str:
        return json.dumps(await self.manager.worker_status())

    async def _add_camera(self, payload: str) -> str:
        if not payload.strip():
            return failure("Invalid JSON: missing camera payload")
        try:
            camera = CameraIn.model_validate_json(payload)
        except ValidationError as exc:
            return failure(f"Invalid JSON: {describe_validation_error(exc)}")
        try:
            camera_id = await self.manager.add_camera(camera)
        except StoreConstraintError as exc:
            return failure(f"Error adding camera: {exc}")
        return success("Camera created successfully", camera_id)

    async def _update_camera(self, payload: str) -> str:
        raw_id, _, body = payload.partition("|")
        try:
            camera_id = parse_camera_id(raw_id)
            update = CameraUpdate.model_validate_json(body or "{}")
        except ValidationError as exc:
            return failure(f"Invalid JSON: {describe_validation_error(exc)}")
        except ValueError as exc:
            return failure(str(exc))
        try:
            await self.manager.update_camera(camera_id, update)
        except CameraNotFound as exc:
            return failure(str(exc), camera_id)
        except StoreConstraintError as exc:
            return failure(f"Error updating camera: {exc}", camera_id)
        return success("Camera updated successfully", camera_id)

    async def _remove_camera(self, payload: str) -> str:
        try:
            camera_id = parse_camera_id(payload)
        except ValueError as exc:
            return failure(str(exc))
        try:
            await self.manager.remove_camera(camera_id)
        except CameraNotFound as exc:
            return failure(str(exc), camera_id)
        return success("Camera removed successfully", camera_id)

    async def _set_config(self, payload: str) -> str:
        try:
            config = ConfigIn.model_validate_json(payload or "{}")
        except ValidationError as exc:
            return failure(f"Invalid config: {describe_validation_error(exc)}")
        await self.manager.set_config(config)
        return success("Config updated")

    async def _start_camera(self, payload: str) -> str:
        try:
            camera_id = parse_camera_id(payload)
        except ValueError as exc:
            return failure(str(exc))
        try:
            outcome = await self.manager.start_camera(camera_id)
        except CameraNotFound as exc:
            return failure(str(exc), camera_id)
        except (OSError, ValueError) as exc:
            return failure(f"Error starting camera: {exc}", camera_id)
        if outcome == ALREADY_RUNNING:
            return failure("Worker already running", camera_id)
        return success("Worker started", camera_id)

    async def _stop_camera(self, payload: str) -> str:
        try:
            camera_id = parse_camera_id(payload)
        except ValueError as exc:
            return failure(str(exc))
        if await self.manager.stop_camera(camera_id):
            return success("Worker stopped", camera_id)
        return success("Worker was not running", camera_id)
