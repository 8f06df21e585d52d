import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import uvicorn

from simplenvr.backend.camera_manager import CameraManager
from simplenvr.backend.control import ControlServer
from simplenvr.backend.main import create_app
from simplenvr.backend.settings import Settings
from simplenvr.backend.store import ConfigStore, StoreError
from simplenvr.client import build_line, send_command

logger = logging.getLogger("simplenvr")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


async def serve(settings: Settings) -> None:
    """Run the control server (and the HTTP API) until cancelled.

    Every recording worker is stopped before this returns.
    """
    store = ConfigStore(settings.db_path)
    manager = CameraManager(store, ffmpeg=settings.ffmpeg)
    control = ControlServer(manager, settings.control_host, settings.control_port)
    await control.start()

    tasks = [asyncio.create_task(control.serve_forever(), name="control")]
    if settings.http_enabled:
        http = uvicorn.Server(
            uvicorn.Config(
                create_app(manager),
                host=settings.http_host,
                port=settings.http_port,
                log_config=None,
            )
        )
        tasks.append(asyncio.create_task(http.serve(), name="http"))
    try:
        if settings.autostart:
            await manager.start_all()
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        await manager.stop_all()
        await control.close()
        store.close()
        logger.info("Shut down")


def _send(args: argparse.Namespace, line: str) -> int:
    try:
        response = asyncio.run(send_command(line, args.host, args.port))
    except (OSError, asyncio.TimeoutError) as exc:
        print(f"Cannot reach control server at {args.host}:{args.port}: {exc}", file=sys.stderr)
        return 2
    print(response)
    try:
        failed = json.loads(response).get("status") == "failure"
    except (ValueError, AttributeError):
        failed = False
    return 1 if failed else 0


def _add_client_options(parser: argparse.ArgumentParser, settings: Settings) -> None:
    parser.add_argument("--host", default=settings.control_host, help="Control server host")
    parser.add_argument("--port", type=int, default=settings.control_port, help="Control server port")


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="simplenvr", description="Segmented camera recorder")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_p = sub.add_parser("serve", help="Run the recording service")
    serve_p.add_argument("--db", type=Path, default=settings.db_path, help="SQLite database path")
    serve_p.add_argument("--host", default=settings.control_host, help="Control server host")
    serve_p.add_argument("--port", type=int, default=settings.control_port, help="Control server port")
    serve_p.add_argument("--http-host", default=settings.http_host)
    serve_p.add_argument("--http-port", type=int, default=settings.http_port)
    serve_p.add_argument("--no-http", action="store_true", help="Disable the HTTP API")
    serve_p.add_argument("--autostart", action="store_true", default=settings.autostart,
                         help="Start recording every camera on launch")
    serve_p.add_argument("--ffmpeg", default=settings.ffmpeg, help="ffmpeg executable")
    serve_p.add_argument("--log-level", default=settings.log_level)

    for name, help_text in (
        ("list", "List cameras"),
        ("start", "Start recording every camera"),
        ("stop", "Stop every recording"),
        ("config", "Show the global config"),
        ("status", "Show worker states"),
    ):
        _add_client_options(sub.add_parser(name, help=help_text), settings)

    add_p = sub.add_parser("add-camera", help="Add a camera")
    _add_client_options(add_p, settings)
    add_p.add_argument("--name", required=True)
    add_p.add_argument("--url", required=True, help="Stream URL, e.g. rtsp://host/stream")
    add_p.add_argument("--output-dir", required=True)
    add_p.add_argument("--restream", default=None, help="Optional restream target URL")
    add_p.add_argument("--username", default=None)
    add_p.add_argument("--password", default=None)

    remove_p = sub.add_parser("remove-camera", help="Stop and delete a camera")
    _add_client_options(remove_p, settings)
    remove_p.add_argument("camera_id", type=int)

    config_p = sub.add_parser("set-config", help="Replace the global config")
    _add_client_options(config_p, settings)
    config_p.add_argument("--segment-time", type=int, required=True)
    config_p.add_argument("--retry-interval", type=int, required=True)
    config_p.add_argument("--max-backoff", type=int, required=True)
    return parser


def main(argv=None) -> int:
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv)

    if args.command == "serve":
        settings.db_path = args.db
        settings.control_host = args.host
        settings.control_port = args.port
        settings.http_host = args.http_host
        settings.http_port = args.http_port
        settings.http_enabled = settings.http_enabled and not args.no_http
        settings.autostart = args.autostart
        settings.ffmpeg = args.ffmpeg
        settings.log_level = args.log_level
        configure_logging(settings.log_level)
        try:
            asyncio.run(serve(settings))
        except StoreError as exc:
            logger.error("%s", exc)
            return 1
        except KeyboardInterrupt:
            pass
        return 0

    configure_logging("WARNING")
    if args.command == "add-camera":
        payload = {
            "name": args.name,
            "url": args.url,
            "output_dir": args.output_dir,
            "restream": args.restream,
            "username": args.username,
            "password": args.password,
        }
        return _send(args, build_line("addCamera", payload))
    if args.command == "remove-camera":
        return _send(args, build_line("removeCamera", str(args.camera_id)))
    if args.command == "set-config":
        payload = {
            "segment_time": args.segment_time,
            "retry_interval": args.retry_interval,
            "max_backoff": args.max_backoff,
        }
        return _send(args, build_line("setConfig", payload))
    return _send(args, args.command)


if __name__ == "__main__":
    sys.exit(main())
