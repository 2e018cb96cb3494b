"""camrelay command line.

Usage:
    # List sources the directory reports as watchable
    camrelay list

    # Watch one source
    camrelay view 15550100001

    # Watch several sources side by side
    camrelay view 15550100001 15550100002 --multi

    # Serve the local camera as a source
    camrelay source 15550100001
"""

import argparse
import asyncio
import signal
import sys

from loguru import logger

from camrelay.app_config import get_app_environ_config
from camrelay.domain.relay.capture import CaptureManager
from camrelay.domain.relay.reconnect import ReconnectionSupervisor
from camrelay.domain.relay.registry import MultiSessionRegistry
from camrelay.domain.relay.session import SourceSession
from camrelay.schemas import RegistryMode, SessionRole
from camrelay.services.directory import HttpSourceDirectory
from camrelay.services.integrations.aiortc_peer import aiortc_peer_factory, camera_capture_factory
from camrelay.services.integrations.websocket_channel import websocket_connector
from camrelay.shared.utils import init_logger
from camrelay.utils.relay_errors import RelayError


def build_viewer_registry(mode: RegistryMode = RegistryMode.SINGLE) -> MultiSessionRegistry:
    cfg = get_app_environ_config()
    return MultiSessionRegistry(
        connector=websocket_connector(SessionRole.VIEWER, cfg),
        peer_factory=aiortc_peer_factory(cfg),
        mode=mode,
        config=cfg,
    )


def build_source_session(source_id: str) -> SourceSession:
    cfg = get_app_environ_config()
    return SourceSession(
        source_id,
        capture=CaptureManager(camera_capture_factory(cfg)),
        supervisor=ReconnectionSupervisor.from_config(websocket_connector(SessionRole.SOURCE, cfg), cfg),
        peer_factory=aiortc_peer_factory(cfg),
        config=cfg,
    )


def _shutdown_event() -> asyncio.Event:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)
    return stop


async def list_sources() -> int:
    directory = HttpSourceDirectory()
    for source in await directory.list_watchable():
        print(f"{source.source_id}\t{source.display_name}")
    return 0


async def view(source_ids: list[str], multi: bool) -> int:
    from aiortc.contrib.media import MediaBlackhole

    stop = _shutdown_event()
    sinks: dict[str, MediaBlackhole] = {}
    tasks: set[asyncio.Task] = set()

    async def attach(source_id: str, track) -> None:
        sink = sinks.setdefault(source_id, MediaBlackhole())
        sink.addTrack(track)
        await sink.start()

    async def detach(source_id: str) -> None:
        sink = sinks.pop(source_id, None)
        if sink is not None:
            await sink.stop()

    def spawn(coro) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    mode = RegistryMode.MULTIPLE if multi else RegistryMode.SINGLE
    async with build_viewer_registry(mode) as registry:

        @registry.on("track_ready")
        def _on_track(source_id, track):
            logger.info(f"Receiving {track.kind} from {source_id}")
            spawn(attach(source_id, track))

        @registry.on("reconnecting")
        def _on_reconnecting(source_id, reconnecting):
            if reconnecting:
                logger.warning(f"Reconnecting to {source_id}...")

        @registry.on("session_evicted")
        def _on_evicted(source_id, reason):
            logger.info(f"Session for {source_id} closed: {reason}")
            spawn(detach(source_id))
            if not len(registry):
                stop.set()

        try:
            await registry.watch_many(source_ids)
        except RelayError as exc:
            logger.error(f"{exc.errcode}: {exc.errmesg}")
            if not len(registry):
                return 1

        await stop.wait()

    for source_id in list(sinks):
        await detach(source_id)
    return 0


async def serve(source_id: str) -> int:
    stop = _shutdown_event()
    session = build_source_session(source_id)
    session.start()

    closed = asyncio.create_task(session.wait_closed())
    interrupted = asyncio.create_task(stop.wait())
    await asyncio.wait({closed, interrupted}, return_when=asyncio.FIRST_COMPLETED)
    interrupted.cancel()
    if not closed.done():
        await session.end_stream("stopped by user")

    if session.last_error:
        logger.error(f"{session.last_error.errcode}: {session.last_error.errmesg}")
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="camrelay", description="Peer-to-peer live camera relay")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list", help="List watchable sources")

    view_parser = commands.add_parser("view", help="Watch one or more sources")
    view_parser.add_argument("source_ids", nargs="+", metavar="SOURCE", help="Source id")
    view_parser.add_argument(
        "--multi", action="store_true", help="Allow several concurrent sessions"
    )

    source_parser = commands.add_parser("source", help="Serve the local camera")
    source_parser.add_argument("source_id", metavar="SOURCE", help="Id this device answers to")

    args = parser.parse_args(argv)
    init_logger()

    try:
        if args.command == "list":
            return asyncio.run(list_sources())
        if args.command == "view":
            return asyncio.run(view(args.source_ids, args.multi))
        return asyncio.run(serve(args.source_id))
    except RelayError as exc:
        logger.error(f"{exc.errcode}: {exc.errmesg} (erresid={exc.erresid})")
        return 1


if __name__ == "__main__":
    sys.exit(main())
