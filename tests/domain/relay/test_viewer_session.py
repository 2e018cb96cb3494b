"""Tests for ViewerSession protocol handling."""

import pytest
from pyee.base import EventEmitter

from camrelay.app_config import AppEnvironConfig
from camrelay.domain.relay.session import ViewerSession
from camrelay.schemas import SessionState
from camrelay.utils.relay_errors import RelayErrorCode
from tests.fakes import EventRecorder, FakeTrack, eventually

OFFER = {"type": "stream_offer", "offer": {"type": "offer", "sdp": "v=0 offer"}, "sourceId": "cam1"}


def ice(n: int) -> dict:
    return {"type": "ice_candidate", "candidate": {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 9 typ host"}}


@pytest.fixture
async def make_viewer(supervisor, peer_factory, relay_config):
    sessions = []

    def make(config=None):
        emitter = EventEmitter()
        session = ViewerSession(
            "cam1",
            supervisor=supervisor,
            peer_factory=peer_factory,
            emitter=emitter,
            config=config or relay_config,
        )
        sessions.append(session)
        return session, EventRecorder(emitter)

    yield make

    for session in sessions:
        await session.stop()


async def start_and_offer(session, connector, peer_factory):
    session.start()
    await eventually(lambda: session.state == SessionState.AWAITING_OFFER)
    channel = connector.latest("cam1")
    channel.push(OFFER)
    await eventually(lambda: session.state == SessionState.NEGOTIATING)
    return channel, peer_factory.latest


class TestHandshake:
    """Tests for the request/offer/answer/media sequence."""

    async def test_start_requests_stream(self, make_viewer, connector):
        """Test opening the channel sends request_stream with the viewer id."""
        # Arrange
        session, events = make_viewer()

        # Act
        session.start()
        await eventually(lambda: connector.channels["cam1"] and connector.latest("cam1").sent)

        # Assert
        sent = connector.latest("cam1").sent
        assert sent[0]["type"] == "request_stream"
        assert sent[0]["viewerId"] == "console-1"
        assert events.states("cam1") == [SessionState.CONNECTING, SessionState.AWAITING_OFFER]

    async def test_offer_is_answered(self, make_viewer, connector, peer_factory):
        """Test a stream_offer is applied and answered."""
        session, events = make_viewer()

        channel, connection = await start_and_offer(session, connector, peer_factory)
        await eventually(lambda: "stream_answer" in channel.sent_types())

        answer = channel.sent[-1]
        assert answer["answer"] == {"type": "answer", "sdp": "v=0 fake-answer"}
        assert connection.calls[:2] == [("remote_description", "offer"), ("create_answer",)]

    async def test_first_track_activates(self, make_viewer, connector, peer_factory):
        """Test the session goes ACTIVE and surfaces the track."""
        # Arrange
        session, events = make_viewer()
        _, connection = await start_and_offer(session, connector, peer_factory)
        track = FakeTrack("video")

        # Act
        connection.fire("track", track)
        await eventually(lambda: session.state == SessionState.ACTIVE)

        # Assert
        assert events.of("track_ready") == [("track_ready", "cam1", track)]
        assert session.track is track
        assert events.states("cam1")[-2:] == [SessionState.NEGOTIATING, SessionState.ACTIVE]

    async def test_every_track_is_surfaced(self, make_viewer, connector, peer_factory):
        """Test audio following video is surfaced too, without another state change."""
        session, events = make_viewer()
        _, connection = await start_and_offer(session, connector, peer_factory)
        video, audio = FakeTrack("video"), FakeTrack("audio")

        connection.fire("track", video)
        connection.fire("track", audio)
        await eventually(lambda: len(events.of("track_ready")) == 2)

        assert [event[2] for event in events.of("track_ready")] == [video, audio]
        assert session.track is video
        assert events.states("cam1").count(SessionState.ACTIVE) == 1

    async def test_stream_started_is_informational(self, make_viewer, connector, peer_factory):
        """Test stream_started is reported without changing state."""
        session, events = make_viewer()
        channel, _ = await start_and_offer(session, connector, peer_factory)

        channel.push({"type": "stream_started", "sourceId": "cam1"})
        await eventually(lambda: events.of("stream_started"))

        assert session.state == SessionState.NEGOTIATING
        assert session.stream_started is True

    async def test_offer_for_other_source_ignored(self, make_viewer, connector):
        """Test offers addressed to another source are dropped."""
        session, _ = make_viewer()
        session.start()
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)
        channel = connector.latest("cam1")

        channel.push({**OFFER, "sourceId": "cam2"})
        channel.push({"type": "stream_started", "sourceId": "cam1"})
        await eventually(lambda: session.stream_started)

        assert session.state == SessionState.AWAITING_OFFER
        assert "stream_answer" not in channel.sent_types()


class TestOrdering:
    """Tests for strict in-order processing of channel messages."""

    async def test_candidates_around_offer_applied_after_description(
        self, make_viewer, connector, peer_factory
    ):
        """Test early candidates are buffered and everything lands in arrival order."""
        # Arrange
        session, _ = make_viewer()
        session.start()
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)
        channel = connector.latest("cam1")

        # Act
        channel.push(ice(1))
        channel.push(ice(2))
        channel.push(OFFER)
        channel.push(ice(3))
        await eventually(lambda: len(peer_factory.latest.applied_candidates) == 3)

        # Assert
        connection = peer_factory.latest
        assert connection.calls[0] == ("remote_description", "offer")
        assert connection.applied_candidates == [
            ice(n)["candidate"]["candidate"] for n in (1, 2, 3)
        ]

    async def test_malformed_message_dropped(self, make_viewer, connector, peer_factory):
        """Test garbage on the channel is ignored and the session carries on."""
        session, events = make_viewer()
        session.start()
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)
        channel = connector.latest("cam1")

        channel.push("{not json")
        channel.push(b"\x00\x01")
        channel.push({"type": "request_stream", "viewerId": "someone"})
        channel.push(OFFER)
        await eventually(lambda: session.state == SessionState.NEGOTIATING)

        assert events.of("session_error") == []


class TestTermination:
    """Tests for the ways a viewer session ends."""

    async def test_negotiation_timeout_errors_once(self, make_viewer, connector, relay_config):
        """Test no offer within the timeout ends the session exactly once."""
        # Arrange
        config = relay_config.model_copy(update={"NEGOTIATION_TIMEOUT_SECONDS": 0.05})
        session, events = make_viewer(config)

        # Act
        session.start()
        await eventually(lambda: session.state == SessionState.ENDED)

        # Assert
        assert events.states("cam1") == [
            SessionState.CONNECTING,
            SessionState.AWAITING_OFFER,
            SessionState.ERRORED,
            SessionState.ENDED,
        ]
        errors = events.of("session_error")
        assert len(errors) == 1
        assert errors[0][2].is_code(RelayErrorCode.E_NEGOTIATION_TIMEOUT)
        assert session.last_error is errors[0][2]
        assert connector.latest("cam1").closed is True

    async def test_progress_clears_timeout(self, make_viewer, connector, peer_factory, relay_config):
        """Test media arriving in time keeps the session alive past the timeout."""
        config = relay_config.model_copy(update={"NEGOTIATION_TIMEOUT_SECONDS": 0.1})
        session, events = make_viewer(config)
        _, connection = await start_and_offer(session, connector, peer_factory)

        connection.fire("track", FakeTrack())
        await eventually(lambda: session.state == SessionState.ACTIVE)
        # Outlive the timeout budget
        with pytest.raises(AssertionError):
            await eventually(lambda: session.state != SessionState.ACTIVE, timeout=0.2)

        assert events.of("session_error") == []

    async def test_stream_ended_ends_session(self, make_viewer, connector, peer_factory):
        """Test stream_ended tears down the link and channel."""
        session, events = make_viewer()
        channel, connection = await start_and_offer(session, connector, peer_factory)

        channel.push({"type": "stream_ended", "sourceId": "cam1"})
        await eventually(lambda: session.state == SessionState.ENDED)

        assert connection.closed is True
        assert channel.closed is True
        assert SessionState.ERRORED not in events.states("cam1")

    async def test_error_message_surfaces_permission_denied(self, make_viewer, connector):
        """Test a source-side refusal reaches the viewer as E_PERMISSION_DENIED."""
        session, events = make_viewer()
        session.start()
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)

        connector.latest("cam1").push({"type": "error", "message": "Camera permission denied"})
        await eventually(lambda: session.state == SessionState.ENDED)

        error = session.last_error
        assert error.is_code(RelayErrorCode.E_PERMISSION_DENIED)
        assert error.errmesg == "Camera permission denied"
        assert events.states("cam1")[-2:] == [SessionState.ERRORED, SessionState.ENDED]

    async def test_peer_failure_errors_session(self, make_viewer, connector, peer_factory):
        """Test ICE failure ends the session with E_PEER_FAILED."""
        session, _ = make_viewer()
        _, connection = await start_and_offer(session, connector, peer_factory)

        connection.fire("connectionstatechange", "failed")
        await eventually(lambda: session.state == SessionState.ENDED)

        assert session.last_error.is_code(RelayErrorCode.E_PEER_FAILED)


class TestStop:
    """Tests for ViewerSession.stop."""

    async def test_stop_closes_everything_and_silences(self, make_viewer, connector, peer_factory):
        """Test no events reach observers after stop() returns."""
        # Arrange
        session, events = make_viewer()
        channel, connection = await start_and_offer(session, connector, peer_factory)

        # Act
        await session.stop()
        recorded = len(events.events)
        connection.fire("track", FakeTrack())
        channel.push({"type": "stream_ended", "sourceId": "cam1"})

        # Assert
        assert session.state == SessionState.ENDED
        assert events.events[-1] == ("state_changed", "cam1", SessionState.ENDED)
        assert connection.closed is True
        assert channel.closed is True
        assert len(events.events) == recorded

    async def test_stop_is_idempotent(self, make_viewer, connector):
        """Test calling stop() twice is harmless."""
        session, events = make_viewer()
        session.start()
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)

        await session.stop()
        await session.stop()

        assert events.states("cam1").count(SessionState.ENDED) == 1
        assert connector.latest("cam1").close_calls == 1

    async def test_stop_before_start(self, make_viewer):
        """Test an idle session can be stopped."""
        session, events = make_viewer()

        await session.stop()

        assert session.state == SessionState.ENDED


class TestReconnection:
    """Tests for channel loss while a session is live."""

    async def test_abrupt_disconnect_reconnects_with_backoff(
        self, make_viewer, connector, peer_factory, sleeps
    ):
        """Test a dropped channel is retried at 1s, 2s, 4s and the stream re-requested."""
        # Arrange
        session, events = make_viewer()
        channel, connection = await start_and_offer(session, connector, peer_factory)
        channel.push({"type": "stream_started", "sourceId": "cam1"})
        connection.fire("track", FakeTrack())
        await eventually(lambda: session.state == SessionState.ACTIVE)
        connector.failures = 3

        # Act
        channel.drop()
        await eventually(lambda: len(connector.channels["cam1"]) == 2)
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)

        # Assert
        assert sleeps.delays == [1.0, 2.0, 4.0]
        assert events.of("reconnecting") == [
            ("reconnecting", "cam1", True),
            ("reconnecting", "cam1", False),
        ]
        # ACTIVE is held through the outage; no error surfaced
        states = events.states("cam1")
        assert states[-2:] == [SessionState.ACTIVE, SessionState.AWAITING_OFFER]
        assert events.of("session_error") == []
        # Old link discarded, fresh request on the new channel
        assert connection.closed is True
        new_channel = connector.latest("cam1")
        await eventually(lambda: new_channel.sent_types() == ["request_stream"])

    async def test_renegotiates_after_restore(self, make_viewer, connector, peer_factory):
        """Test the session can reach ACTIVE again on the restored channel."""
        session, _ = make_viewer()
        channel, _ = await start_and_offer(session, connector, peer_factory)

        channel.drop()
        await eventually(lambda: len(connector.channels["cam1"]) == 2)
        await eventually(lambda: session.state == SessionState.AWAITING_OFFER)
        connector.latest("cam1").push(OFFER)
        await eventually(lambda: session.state == SessionState.NEGOTIATING)
        peer_factory.latest.fire("track", FakeTrack())

        await eventually(lambda: session.state == SessionState.ACTIVE)
        assert len(peer_factory.created) == 2

    async def test_stop_during_reconnect(self, make_viewer, connector, peer_factory, relay_config):
        """Test stop() interrupts an outage without waiting for the channel."""
        session, events = make_viewer()
        channel, _ = await start_and_offer(session, connector, peer_factory)
        connector.failures = 10_000

        channel.drop()
        await eventually(lambda: session.reconnecting)
        await session.stop()

        assert session.state == SessionState.ENDED
        assert events.of("session_error") == []


class TestConfig:
    """Tests for configuration defaults."""

    def test_viewer_id_falls_back_to_config(self, supervisor, peer_factory):
        """Test the configured VIEWER_ID is used when none is passed."""
        session = ViewerSession(
            "cam1",
            supervisor=supervisor,
            peer_factory=peer_factory,
            config=AppEnvironConfig(VIEWER_ID="wall-display"),
        )

        assert session.viewer_id == "wall-display"
