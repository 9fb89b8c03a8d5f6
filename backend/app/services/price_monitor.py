from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Set

from app.errors import QuoteUnavailableError
from app.schemas import AlertEvent, CycleSummary, Instrument, InstrumentRef, Quote
from app.services.crossing import compose_alert_message, has_crossed
from app.services.instrument_repository import InstrumentRepository
from app.services.notification_hub import NotificationHub
from app.services.quotes import fetch_quote

logger = logging.getLogger(__name__)

QuoteFetcher = Callable[[str], Quote]


class MonitorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PriceMonitor:
    """Periodically re-prices every tracked instrument and raises crossing alerts.

    One timer task fires a cycle immediately and then every ``interval_seconds``.
    Each cycle runs as its own task so ``stop()`` only cancels the timer;
    cycles already in flight finish and keep their side effects. Within a
    cycle every instrument is refreshed concurrently and a failure for one
    instrument is logged without touching the others.

    The quote fetcher and the repository are blocking, so every call into
    them goes through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        repository: InstrumentRepository,
        hub: NotificationHub,
        quote_fetcher: QuoteFetcher = fetch_quote,
        *,
        skip_overlapping_cycles: bool = False,
    ) -> None:
        self.repository = repository
        self.hub = hub
        self.quote_fetcher = quote_fetcher
        self.skip_overlapping_cycles = skip_overlapping_cycles
        self.interval_seconds: float | None = None
        self.last_cycle: CycleSummary | None = None
        self._timer: asyncio.Task | None = None
        self._cycles: Set[asyncio.Task] = set()

    @property
    def state(self) -> MonitorState:
        if self._timer is not None and not self._timer.done():
            return MonitorState.RUNNING
        return MonitorState.STOPPED

    @property
    def running(self) -> bool:
        return self.state is MonitorState.RUNNING

    @property
    def cycles_in_flight(self) -> int:
        return len(self._cycles)

    async def start(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        # Restarting always tears the previous timer down first.
        await self.stop()
        self.interval_seconds = float(interval_seconds)
        self._timer = asyncio.create_task(self._tick_forever(self.interval_seconds), name="price-monitor-timer")
        logger.info("Price monitor started with a %.1fs interval", self.interval_seconds)

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        if not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        logger.info("Price monitor stopped")

    async def wait_idle(self) -> None:
        """Wait until every cycle started so far has settled."""
        while self._cycles:
            await asyncio.gather(*list(self._cycles), return_exceptions=True)

    async def _tick_forever(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        next_fire = loop.time()
        while True:
            self._launch_cycle()
            next_fire += interval
            now = loop.time()
            if next_fire < now:
                # Missed ticks are dropped, never replayed back to back.
                missed = int((now - next_fire) // interval) + 1
                logger.warning("Price monitor fell behind; dropping %d missed tick(s)", missed)
                next_fire = now + interval
            await asyncio.sleep(next_fire - now)

    def _launch_cycle(self) -> None:
        if self.skip_overlapping_cycles and self._cycles:
            logger.warning("Skipping price cycle; %d previous cycle(s) still running", len(self._cycles))
            return
        task = asyncio.create_task(self.run_cycle(), name="price-monitor-cycle")
        self._cycles.add(task)
        task.add_done_callback(self._on_cycle_done)

    def _on_cycle_done(self, task: asyncio.Task) -> None:
        self._cycles.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Price cycle crashed", exc_info=exc)

    async def run_cycle(self) -> CycleSummary:
        started_at = _now()
        try:
            instruments = await asyncio.to_thread(self.repository.list_instruments)
        except Exception as exc:
            logger.exception("Price cycle aborted: could not load tracked instruments")
            summary = CycleSummary(started_at=started_at, finished_at=_now(), error=str(exc))
            self.last_cycle = summary
            return summary

        logger.debug("Price cycle refreshing %d instrument(s)", len(instruments))
        results = await asyncio.gather(
            *(self._refresh_instrument(instrument) for instrument in instruments),
            return_exceptions=True,
        )

        alerts: List[AlertEvent] = []
        failed = 0
        for instrument, result in zip(instruments, results):
            if isinstance(result, BaseException):
                failed += 1
                self._log_refresh_failure(instrument, result)
            elif result is not None:
                alerts.append(result)

        summary = CycleSummary(
            started_at=started_at,
            finished_at=_now(),
            instruments=len(instruments),
            refreshed=len(instruments) - failed,
            failed=failed,
            alerts=alerts,
        )
        self.last_cycle = summary
        logger.info(
            "Price cycle finished: %d instrument(s), %d refreshed, %d failed, %d alert(s)",
            summary.instruments,
            summary.refreshed,
            summary.failed,
            len(alerts),
        )
        return summary

    def _log_refresh_failure(self, instrument: Instrument, exc: BaseException) -> None:
        if isinstance(exc, QuoteUnavailableError):
            logger.warning("Skipping %s this cycle: %s", instrument.symbol, exc)
            return
        logger.error("Failed to refresh %s", instrument.symbol, exc_info=exc)

    async def _refresh_instrument(self, instrument: Instrument) -> AlertEvent | None:
        quote = await asyncio.to_thread(self.quote_fetcher, instrument.symbol)
        price = quote.price

        await asyncio.to_thread(self.repository.update_last_price, instrument.id, price)
        current = await asyncio.to_thread(self.repository.get_instrument, instrument.id)
        if current is None:
            logger.info("%s was removed during the cycle; dropping its refresh", instrument.symbol)
            return None
        await self.hub.instrument_updated(current)

        # The snapshot still holds the price from before this refresh.
        if not has_crossed(instrument.last_price, price, instrument.alarm_price, instrument.alarm_direction):
            return None

        message = compose_alert_message(instrument.symbol, instrument.alarm_direction, instrument.alarm_price, price)
        record = await asyncio.to_thread(self.repository.append_alert, instrument.id, message, price)
        try:
            await asyncio.to_thread(self.repository.mark_alerted, instrument.id)
        except Exception:
            # The alert row is already stored; it is still broadcast and counted.
            logger.exception(
                "Alert %d for %s was recorded but last_alert_at could not be stamped",
                record.id,
                instrument.symbol,
            )

        event = AlertEvent(
            **record.model_dump(),
            instrument=InstrumentRef(symbol=instrument.symbol, display_name=instrument.display_name),
        )
        logger.info("Alert triggered: %s", message)
        await self.hub.alert_triggered(event)
        return event
