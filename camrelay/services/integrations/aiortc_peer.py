"""aiortc-backed peer connections and camera capture.

aiortc gathers ICE candidates before it returns a local description, so
locally gathered candidates travel inside the SDP and "icecandidate" never
fires here. Remote trickled candidates are still applied one by one.

aiortc announces remote tracks while the remote description is being applied,
long before ICE connects. "track" handlers here are only called once the first
frame has been received, and get a MediaRelay proxy of the track.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp
from av.error import FFmpegError
from loguru import logger

from camrelay.app_config import AppEnvironConfig, get_app_environ_config
from camrelay.utils.relay_errors import RelayError, RelayErrorCode


class AiortcPeerConnection:
    def __init__(self, ice_servers: list[str]) -> None:
        self._pc = RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        )
        self._relay = MediaRelay()
        self._pending: set[asyncio.Task] = set()

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event == "track":

            @self._pc.on("track")
            def _on_track(track) -> None:
                task = asyncio.ensure_future(self._surface_when_flowing(track, handler))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

        elif event == "connectionstatechange":

            @self._pc.on("connectionstatechange")
            def _on_state_change() -> None:
                handler(self._pc.connectionState)

        elif event == "icecandidate":
            return
        else:
            raise ValueError(f"Unsupported peer connection event: {event}")

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def create_offer(self) -> dict[str, Any]:
        await self._pc.setLocalDescription(await self._pc.createOffer())
        return self._local_description()

    async def create_answer(self) -> dict[str, Any]:
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        return self._local_description()

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        sdp = (candidate.get("candidate") or "").strip()
        if not sdp:
            # End-of-candidates marker
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]

        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await self._pc.close()

    async def _surface_when_flowing(self, track: Any, handler: Callable[..., Any]) -> None:
        first = self._relay.subscribe(track, buffered=False)
        try:
            await first.recv()
        except MediaStreamError:
            logger.debug(f"Remote {track.kind} track ended before its first frame")
            return
        # Subscribe before dropping the first proxy so the relay keeps reading
        consumer = self._relay.subscribe(track)
        first.stop()
        logger.debug(f"First {track.kind} frame received")
        handler(consumer)

    def _local_description(self) -> dict[str, Any]:
        description = self._pc.localDescription
        return {"type": description.type, "sdp": description.sdp}


def aiortc_peer_factory(config: AppEnvironConfig | None = None) -> Callable[[], AiortcPeerConnection]:
    cfg = config or get_app_environ_config()
    ice_servers = list(cfg.ICE_SERVERS)
    return lambda: AiortcPeerConnection(ice_servers)


class CameraCapture:
    """Local camera (and optional microphone) opened through MediaPlayer.

    Peer links get MediaRelay subscriptions rather than the player tracks, so
    replacing a link does not stop the device.
    """

    def __init__(self, video: MediaPlayer, audio: MediaPlayer | None = None) -> None:
        self._players = [player for player in (video, audio) if player is not None]
        self._relay = MediaRelay()

    @property
    def tracks(self) -> list[Any]:
        tracks = []
        for player in self._players:
            tracks.extend(track for track in (player.video, player.audio) if track is not None)
        return tracks

    def subscribe(self) -> list[Any]:
        return [self._relay.subscribe(track) for track in self.tracks]

    async def stop(self) -> None:
        for track in self.tracks:
            track.stop()


def camera_capture_factory(config: AppEnvironConfig | None = None):
    """Async factory for CaptureManager that opens the configured devices."""
    cfg = config or get_app_environ_config()

    async def open_camera() -> CameraCapture:
        options = {
            "video_size": f"{cfg.CAPTURE_WIDTH}x{cfg.CAPTURE_HEIGHT}",
            "framerate": str(cfg.CAPTURE_FRAMERATE),
        }
        try:
            video = MediaPlayer(cfg.CAPTURE_DEVICE, format=cfg.CAPTURE_FORMAT, options=options)
            audio = (
                MediaPlayer(cfg.CAPTURE_AUDIO_DEVICE, format=cfg.CAPTURE_AUDIO_FORMAT)
                if cfg.CAPTURE_AUDIO_DEVICE
                else None
            )
        except (FFmpegError, OSError) as exc:
            raise RelayError(
                errcode=RelayErrorCode.E_PERMISSION_DENIED,
                errmesg=f"Cannot open capture device {cfg.CAPTURE_DEVICE}: {exc}",
            ) from exc

        logger.info(f"Opened capture device {cfg.CAPTURE_DEVICE} ({options['video_size']}@{options['framerate']})")
        return CameraCapture(video, audio)

    return open_camera
