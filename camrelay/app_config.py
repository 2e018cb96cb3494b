from pydantic import BaseModel

from camrelay.shared.config import config

_DEFAULT_ICE_SERVERS = "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302"


def _split_csv(raw: str | None) -> list[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


class AppEnvironConfig(BaseModel):
    DEBUG: bool = config.get_bool("DEBUG", False)
    # Public demo switch: when enabled, the directory client returns stubs and avoids network calls.
    DEMO_MODE: bool = config.get_bool("DEMO_MODE", True)

    # Identity used in request_stream messages sent by this console
    VIEWER_ID: str = config.get("VIEWER_ID", "viewer").strip()  # type: ignore

    # Signaling channel
    SIGNALING_BASE_URL: str = config.get("SIGNALING_BASE_URL", "ws://localhost:8765").strip()  # type: ignore
    SIGNALING_VIEWER_PATH: str = config.get("SIGNALING_VIEWER_PATH", "admin").strip()  # type: ignore
    SIGNALING_SOURCE_PATH: str = config.get("SIGNALING_SOURCE_PATH", "user").strip()  # type: ignore
    SIGNALING_OPEN_TIMEOUT_SECONDS: float = float(
        (config.get("SIGNALING_OPEN_TIMEOUT_SECONDS") or "").strip() or 10
    )

    # Negotiation and reconnection
    NEGOTIATION_TIMEOUT_SECONDS: float = float(
        (config.get("NEGOTIATION_TIMEOUT_SECONDS") or "").strip() or 15
    )
    RECONNECT_BASE_DELAY_SECONDS: float = float(
        (config.get("RECONNECT_BASE_DELAY_SECONDS") or "").strip() or 1
    )
    RECONNECT_FACTOR: float = float((config.get("RECONNECT_FACTOR") or "").strip() or 2)
    RECONNECT_MAX_DELAY_SECONDS: float = float(
        (config.get("RECONNECT_MAX_DELAY_SECONDS") or "").strip() or 30
    )
    # Requests older than this are ignored by sources
    REQUEST_STALE_SECONDS: float = float((config.get("REQUEST_STALE_SECONDS") or "").strip() or 30)

    # Registry
    MAX_CONCURRENT_SESSIONS: int = int((config.get("MAX_CONCURRENT_SESSIONS") or "").strip() or 4)

    # Peer connection
    ICE_SERVERS: list[str] = _split_csv(config.get("ICE_SERVERS", _DEFAULT_ICE_SERVERS))

    # Source-side capture
    CAPTURE_DEVICE: str = config.get("CAPTURE_DEVICE", "/dev/video0").strip()  # type: ignore
    CAPTURE_FORMAT: str | None = (config.get("CAPTURE_FORMAT") or "v4l2").strip() or None
    CAPTURE_AUDIO_DEVICE: str | None = (config.get("CAPTURE_AUDIO_DEVICE") or "").strip() or None
    CAPTURE_AUDIO_FORMAT: str | None = (config.get("CAPTURE_AUDIO_FORMAT") or "").strip() or None
    CAPTURE_WIDTH: int = int((config.get("CAPTURE_WIDTH") or "").strip() or 1280)
    CAPTURE_HEIGHT: int = int((config.get("CAPTURE_HEIGHT") or "").strip() or 720)
    CAPTURE_FRAMERATE: int = int((config.get("CAPTURE_FRAMERATE") or "").strip() or 30)

    # Source directory
    DIRECTORY_URL: str | None = (config.get("DIRECTORY_URL") or "").strip() or None
    DIRECTORY_API_KEY: str | None = (config.get("DIRECTORY_API_KEY") or "").strip() or None


_app_environ_config = AppEnvironConfig()


def get_app_environ_config() -> AppEnvironConfig:
    return _app_environ_config
