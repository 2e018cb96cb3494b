"""Tests for backoff schedule and ReconnectionSupervisor."""

from itertools import islice

import pytest

from camrelay.domain.relay.reconnect import ReconnectionSupervisor, backoff_delays
from camrelay.utils.relay_errors import RelayError, RelayErrorCode


class TestBackoffDelays:
    """Tests for the exponential backoff generator."""

    def test_doubles_from_one_second(self):
        """Test default schedule is 1, 2, 4, 8, 16."""
        assert list(islice(backoff_delays(), 5)) == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_caps_at_thirty_seconds(self):
        """Test delays never exceed the cap."""
        delays = list(islice(backoff_delays(1.0, 2.0, 30.0), 8))
        assert delays[5:] == [30.0, 30.0, 30.0]
        assert max(delays) == 30.0

    def test_custom_factor(self):
        """Test a non-default factor."""
        assert list(islice(backoff_delays(0.5, 3.0, 10.0), 4)) == [0.5, 1.5, 4.5, 10.0]


class TestReconnectionSupervisor:
    """Tests for ReconnectionSupervisor.connect."""

    async def test_first_attempt_success_does_not_sleep(self, supervisor, connector, sleeps):
        """Test a healthy connector returns straight away."""
        channel = await supervisor.connect("cam1")

        assert channel is connector.latest("cam1")
        assert sleeps.delays == []

    async def test_retries_with_backoff(self, supervisor, connector, sleeps):
        """Test three failures produce 1s, 2s, 4s waits before success."""
        # Arrange
        connector.failures = 3
        retries = []

        # Act
        channel = await supervisor.connect("cam1", on_retry=lambda *args: retries.append(args))

        # Assert
        assert channel is connector.latest("cam1")
        assert connector.calls == 4
        assert sleeps.delays == [1.0, 2.0, 4.0]
        assert [attempt for attempt, _, _ in retries] == [1, 2, 3]
        assert all(isinstance(error, RelayError) for _, _, error in retries)

    async def test_unlimited_retries_capped_delay(self, supervisor, connector, sleeps):
        """Test the supervisor keeps going past the cap."""
        connector.failures = 10

        await supervisor.connect("cam1")

        assert len(sleeps.delays) == 10
        assert sleeps.delays[-4:] == [30.0, 30.0, 30.0, 30.0]

    async def test_non_retryable_error_propagates(self, supervisor, connector, sleeps):
        """Test errors other than channel loss are not retried."""
        connector.failures = 1
        connector.error_code = RelayErrorCode.E_INVALID_SOURCE

        with pytest.raises(RelayError) as exc_info:
            await supervisor.connect("cam1")

        assert exc_info.value.is_code(RelayErrorCode.E_INVALID_SOURCE)
        assert sleeps.delays == []

    async def test_os_error_is_retried(self, sleeps):
        """Test raw OSError from a connector counts as channel loss."""
        attempts = []

        async def flaky(source_id):
            attempts.append(source_id)
            if len(attempts) == 1:
                raise ConnectionRefusedError("refused")
            return "channel"

        supervisor = ReconnectionSupervisor(flaky, sleep=sleeps)

        assert await supervisor.connect("cam1") == "channel"
        assert sleeps.delays == [1.0]
