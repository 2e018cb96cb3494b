from ._base import BaseSession
from ._source import SourceSession
from ._viewer import ViewerSession
from .session_models import (
    ChannelConnector,
    PeerConnection,
    PeerConnectionFactory,
    SessionHandle,
    SessionSnapshot,
    SignalingChannel,
)
from .session_state_machine import SessionStateMachine

__all__ = [
    "BaseSession",
    "ChannelConnector",
    "PeerConnection",
    "PeerConnectionFactory",
    "SessionHandle",
    "SessionSnapshot",
    "SessionStateMachine",
    "SignalingChannel",
    "SourceSession",
    "ViewerSession",
]
