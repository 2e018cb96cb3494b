from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from typing import TYPE_CHECKING

from loguru import logger

from camrelay.app_config import AppEnvironConfig, get_app_environ_config
from camrelay.utils.relay_errors import RelayError, RelayErrorCode

if TYPE_CHECKING:
    from camrelay.domain.relay.session.session_models import ChannelConnector, SignalingChannel

RetryCallback = Callable[[int, float, RelayError], None]


def backoff_delays(
    base_delay: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 30.0,
) -> Iterator[float]:
    """Endless exponential backoff: base, base*factor, ... capped at max_delay."""
    delay = base_delay
    while True:
        yield min(delay, max_delay)
        delay = min(delay * factor, max_delay)


class ReconnectionSupervisor:
    """Re-opens a signaling channel after transport loss.

    Retries are unbounded; the owning session decides when to give up by
    cancelling the task that awaits `connect()`. The sleep function is
    injectable so tests can observe the schedule without waiting it out.
    """

    def __init__(
        self,
        connector: ChannelConnector,
        *,
        base_delay: float = 1.0,
        factor: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._connector = connector
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        connector: ChannelConnector,
        config: AppEnvironConfig | None = None,
        **kwargs,
    ) -> ReconnectionSupervisor:
        cfg = config or get_app_environ_config()
        return cls(
            connector,
            base_delay=cfg.RECONNECT_BASE_DELAY_SECONDS,
            factor=cfg.RECONNECT_FACTOR,
            max_delay=cfg.RECONNECT_MAX_DELAY_SECONDS,
            **kwargs,
        )

    async def connect(
        self,
        source_id: str,
        *,
        on_retry: RetryCallback | None = None,
    ) -> SignalingChannel:
        """Open a channel for `source_id`, retrying until it succeeds.

        Raises:
            RelayError: any non-retryable error from the connector.
        """
        delays = backoff_delays(self.base_delay, self.factor, self.max_delay)
        attempt = 0

        while True:
            attempt += 1
            try:
                channel = await self._connector(source_id)
            except RelayError as exc:
                if not exc.retryable:
                    raise
                error = exc
            except OSError as exc:
                error = RelayError(
                    errcode=RelayErrorCode.E_CHANNEL_UNAVAILABLE,
                    errmesg=f"{type(exc).__name__}: {exc}",
                )
            else:
                if attempt > 1:
                    logger.info(
                        "Signaling channel for {} restored (attempt {})",
                        source_id,
                        attempt,
                    )
                return channel

            delay = next(delays)
            logger.warning(
                "Signaling channel for {} unavailable, retrying in {} seconds (attempt {}): {}",
                source_id,
                delay,
                attempt,
                error.errmesg,
            )
            if on_retry:
                on_retry(attempt, delay, error)
            await self._sleep(delay)
