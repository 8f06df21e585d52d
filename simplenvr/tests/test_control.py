import asyncio
import json

from simplenvr.backend.camera_manager import CameraManager
from simplenvr.backend.control import UNKNOWN_COMMAND, ControlServer
from simplenvr.client import build_line, send_command

CAMERA = {
    "name": "Camera1",
    "url": "rtsp://example.com/stream",
    "output_dir": "/tmp/output",
    "restream": None,
    "username": None,
    "password": None,
}


def test_add_camera_then_list(store, spawner):
    server = ControlServer(CameraManager(store, spawn=spawner))

    async def run():
        added = json.loads(await server.dispatch(build_line("addCamera", CAMERA)))
        listed = json.loads(await server.dispatch("list"))
        return added, listed

    added, listed = asyncio.run(run())
    assert added["status"] == "success"
    assert added["message"] == "Camera created successfully"
    assert isinstance(added["id"], int)
    assert listed == [{"id": added["id"], "name": "Camera1", "url": "rtsp://example.com/stream"}]


def test_add_camera_invalid_payload(store, spawner):
    server = ControlServer(CameraManager(store, spawn=spawner))

    for line in ("addCamera|invalid json", "addCamera|[]", 'addCamera|{"name": "x"}', "addCamera"):
        response = json.loads(asyncio.run(server.dispatch(line)))
        assert response["status"] == "failure"
        assert response["id"] is None
    assert store.count_cameras() == 0


def test_add_camera_duplicate(store, spawner):
    server = ControlServer(CameraManager(store, spawn=spawner))
    line = build_line("addCamera", CAMERA)

    asyncio.run(server.dispatch(line))
    response = json.loads(asyncio.run(server.dispatch(line)))

    assert response["status"] == "failure"
    assert "UNIQUE constraint failed" in response["message"]
    assert store.count_cameras() == 1


def test_unknown_and_config_commands(store, spawner):
    server = ControlServer(CameraManager(store, spawn=spawner))

    assert asyncio.run(server.dispatch("reboot")) == UNKNOWN_COMMAND
    assert json.loads(asyncio.run(server.dispatch("config"))) == {
        "segment_time": 300,
        "retry_interval": 10,
        "max_backoff": 60,
    }


def test_set_config(store, spawner):
    server = ControlServer(CameraManager(store, spawn=spawner))

    bad = json.loads(asyncio.run(server.dispatch(
        'setConfig|{"segment_time": 10, "retry_interval": 20, "max_backoff": 5}'
    )))
    assert bad["status"] == "failure"

    good = json.loads(asyncio.run(server.dispatch(
        'setConfig|{"segment_time": 10, "retry_interval": 2, "max_backoff": 8}'
    )))
    assert good["status"] == "success"
    assert json.loads(asyncio.run(server.dispatch("config")))["max_backoff"] == 8


def test_remove_and_update_camera(store, spawner, add_cameras):
    (camera_id,) = add_cameras(1)
    server = ControlServer(CameraManager(store, spawn=spawner))

    async def run():
        updated = await server.dispatch(f'updateCamera|{camera_id}|{{"name": "Garage"}}')
        removed = await server.dispatch(f"removeCamera|{camera_id}")
        missing = await server.dispatch(f"removeCamera|{camera_id}")
        garbage = await server.dispatch("removeCamera|abc")
        return [json.loads(r) for r in (updated, removed, missing, garbage)]

    updated, removed, missing, garbage = asyncio.run(run())
    assert updated == {"status": "success", "message": "Camera updated successfully", "id": camera_id}
    assert removed["status"] == "success"
    assert missing["status"] == "failure"
    assert garbage["status"] == "failure"


def test_start_and_stop_over_tcp(store, spawner, add_cameras):
    ids = add_cameras(3)
    manager = CameraManager(store, spawn=spawner)

    async def run():
        async with ControlServer(manager, port=0) as server:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
            writer.write(b"start\n\nstatus\nstop\n")
            await writer.drain()
            started = (await reader.readline()).decode().strip()
            status = json.loads(await reader.readline())
            stopped = (await reader.readline()).decode().strip()
            writer.close()
            await writer.wait_closed()
            return started, status, stopped

    started, status, stopped = asyncio.run(run())
    assert started == "Service started."
    assert [s["id"] for s in status] == ids
    assert {s["state"] for s in status} == {"running"}
    assert stopped == "Service stopped."
    assert len(manager.registry) == 0
    assert len(spawner.processes) == 3
    assert all(p.killed for p in spawner.processes)


def test_start_reports_spawn_errors(store, spawner, add_cameras):
    (camera_id,) = add_cameras(1)
    spawner.error = PermissionError("ffmpeg not executable")
    server = ControlServer(CameraManager(store, spawn=spawner))

    response = asyncio.run(server.dispatch("start"))

    assert response == f"Service started with errors: {camera_id}: ffmpeg not executable"


def test_concurrent_connections_keep_one_worker_per_camera(store, spawner, add_cameras):
    add_cameras(2)
    manager = CameraManager(store, spawn=spawner)

    async def run():
        async with ControlServer(manager, port=0) as server:
            replies = await asyncio.gather(
                *(send_command("start", port=server.port) for _ in range(4))
            )
            live = len(spawner.live())
            entries = len(manager.registry)
            await send_command("stop", port=server.port)
            return replies, live, entries

    replies, live, entries = asyncio.run(run())
    assert replies == ["Service started."] * 4
    assert live == 2
    assert entries == 2
    assert spawner.live() == []


def test_overlong_line_is_refused_and_connection_kept(store, spawner):
    manager = CameraManager(store, spawn=spawner)

    async def run():
        async with ControlServer(manager, port=0, limit=64) as server:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
            writer.write(b"addCamera|" + b"x" * 500 + b"\n")
            await writer.drain()
            too_long = await reader.readline()
            writer.write(b"config\n")
            await writer.drain()
            config = await reader.readline()
            writer.close()
            await writer.wait_closed()
            return json.loads(too_long), json.loads(config)

    too_long, config = asyncio.run(run())
    assert too_long["status"] == "failure"
    assert too_long["message"] == "Command line too long"
    assert config["segment_time"] == 300
    assert store.count_cameras() == 0


def test_start_camera_reports_value_error(store, spawner, add_cameras):
    (camera_id,) = add_cameras(1)
    spawner.error = ValueError("embedded null byte")
    manager = CameraManager(store, spawn=spawner)
    server = ControlServer(manager)

    response = json.loads(asyncio.run(server.dispatch(f"startCamera|{camera_id}")))

    assert response["status"] == "failure"
    assert response["message"] == "Error starting camera: embedded null byte"
    assert response["id"] == camera_id
    assert len(manager.registry) == 0
