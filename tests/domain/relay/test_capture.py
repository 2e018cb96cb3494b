"""Tests for CaptureManager reference counting."""

import pytest

from camrelay.domain.relay.capture import CaptureManager
from camrelay.utils.relay_errors import RelayError, RelayErrorCode


class TestAcquireRelease:
    """Tests for sharing one capture between consumers."""

    async def test_second_acquire_reuses_open_capture(self, capture, capture_factory):
        """Test two consumers share one device."""
        first = await capture.acquire()
        second = await capture.acquire()

        assert first is second
        assert capture_factory.opens == 1
        assert capture.refs == 2

    async def test_device_stops_on_last_release(self, capture, capture_factory):
        """Test the device keeps running until the last reference is dropped."""
        # Arrange
        first = await capture.acquire()
        second = await capture.acquire()
        device = capture_factory.devices[0]

        # Act & Assert
        await capture.release(first)
        assert device.stop_calls == 0
        assert capture.active is True

        await capture.release(second)
        assert device.stop_calls == 1
        assert capture.active is False

    async def test_reacquire_after_release_opens_again(self, capture, capture_factory):
        """Test a fully released capture is reopened on demand."""
        handle = await capture.acquire()
        await capture.release(handle)

        await capture.acquire()

        assert capture_factory.opens == 2

    async def test_stale_release_ignored(self, capture, capture_factory):
        """Test releasing an old handle does not touch the current one."""
        old = await capture.acquire()
        await capture.release(old)
        current = await capture.acquire()

        await capture.release(old)

        assert capture.refs == 1
        assert current.ended is False


class TestFailures:
    """Tests for refused and ended captures."""

    async def test_permission_error_maps_to_permission_denied(self, capture, capture_factory):
        """Test OS refusals surface as E_PERMISSION_DENIED."""
        capture_factory.error = PermissionError("camera blocked")

        with pytest.raises(RelayError) as exc_info:
            await capture.acquire()

        assert exc_info.value.is_code(RelayErrorCode.E_PERMISSION_DENIED)
        assert capture.active is False

    async def test_relay_error_from_factory_passes_through(self, capture_factory):
        """Test factories may raise RelayError directly."""
        capture_factory.error = RelayError(errcode=RelayErrorCode.E_PERMISSION_DENIED, errmesg="no")
        manager = CaptureManager(capture_factory)

        with pytest.raises(RelayError, match="no"):
            await manager.acquire()

    async def test_track_ending_notifies_listeners_once(self, capture, capture_factory):
        """Test an unexpected end fires listeners once and frees the slot."""
        # Arrange
        ended = []
        capture.on_ended(lambda: ended.append(True))
        handle = await capture.acquire()

        # Act
        capture_factory.devices[0].tracks[0].stop()
        capture_factory.devices[0].tracks[1].stop()

        # Assert
        assert ended == [True]
        assert handle.ended is True
        assert capture.active is False

    async def test_release_does_not_notify(self, capture):
        """Test a deliberate stop is not reported as an unexpected end."""
        ended = []
        capture.on_ended(lambda: ended.append(True))
        handle = await capture.acquire()

        await capture.release(handle)

        assert ended == []

    async def test_subscribe_on_ended_handle_raises(self, capture, capture_factory):
        """Test an ended capture cannot feed new peer links."""
        handle = await capture.acquire()
        capture_factory.devices[0].tracks[0].stop()

        with pytest.raises(RelayError):
            handle.subscribe()
