"""
Rebase Engine — Data Feeds

Three DataFeed implementations:

    StaticFeed        test double: value and validity injected directly
    MedianOracleFeed  median of provider reports, with report delay/expiry
    TickerStreamFeed  WebSocket ticker stream, last price with staleness check

All values cross into the engine as Fixed at ingress.  No floats.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import websockets

from rebase_fixed import Fixed, FixedError, SemanticType, div_truncate
from rebase_types import FeedReading

_log = logging.getLogger(__name__)


def _unix_now() -> int:
    return int(time.time())


# ---------------------------------------------------------------------------
# StaticFeed
# ---------------------------------------------------------------------------

class StaticFeed:
    """Feed whose value and validity are set directly.  Counts fetch() calls."""

    def __init__(
        self,
        name: str,
        sem: SemanticType,
        value: int = 0,
        valid: bool = True,
    ) -> None:
        self.name = name
        self.sem = sem
        self._value = value
        self._valid = valid
        self.fetch_count = 0

    def store_data(self, value: int) -> None:
        """Scaled integer value (18 decimals)."""
        self._value = int(value)

    def store_validity(self, valid: bool) -> None:
        self._valid = bool(valid)

    def fetch(self) -> FeedReading:
        self.fetch_count += 1
        return FeedReading(value=Fixed(self._value, self.sem), valid=self._valid)

    def __repr__(self) -> str:
        return f"StaticFeed({self.name!r}, value={self._value}, valid={self._valid})"


# ---------------------------------------------------------------------------
# MedianOracleFeed
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderReport:
    value: int              # scaled int
    timestamp_sec: int


class MedianOracleFeed:
    """
    Aggregates provider reports into one median value.

    Each provider keeps its two most recent reports.  A report is usable when
        report_delay_sec <= now - timestamp <= report_expiration_time_sec
    and the newest usable report per provider enters the median.  The reading
    is valid only with at least minimum_providers usable reports.
    """

    def __init__(
        self,
        name: str,
        sem: SemanticType,
        *,
        report_expiration_time_sec: int,
        report_delay_sec: int = 0,
        minimum_providers: int = 1,
        clock: Callable[[], int] = _unix_now,
    ) -> None:
        if report_expiration_time_sec <= 0:
            raise ValueError("report_expiration_time_sec must be > 0")
        if not 0 <= report_delay_sec <= report_expiration_time_sec:
            raise ValueError("report_delay_sec must be in [0, report_expiration_time_sec]")
        if minimum_providers < 1:
            raise ValueError("minimum_providers must be >= 1")

        self.name = name
        self.sem = sem
        self.report_expiration_time_sec = report_expiration_time_sec
        self.report_delay_sec = report_delay_sec
        self.minimum_providers = minimum_providers
        self._clock = clock
        self._lock = threading.Lock()
        self._reports: Dict[str, List[ProviderReport]] = {}

    @property
    def providers(self) -> List[str]:
        return sorted(self._reports)

    def add_provider(self, provider: str) -> None:
        with self._lock:
            if provider in self._reports:
                raise ValueError(f"provider {provider!r} already registered")
            self._reports[provider] = []
        _log.info("%s: added provider %s", self.name, provider)

    def remove_provider(self, provider: str) -> None:
        with self._lock:
            self._reports.pop(provider)
        _log.info("%s: removed provider %s", self.name, provider)

    def push_report(self, provider: str, value: int, timestamp_sec: Optional[int] = None) -> None:
        """Record a report (scaled int).  Unknown providers are rejected."""
        ts = self._clock() if timestamp_sec is None else timestamp_sec
        with self._lock:
            if provider not in self._reports:
                raise KeyError(f"unknown provider {provider!r}")
            slots = self._reports[provider]
            slots.append(ProviderReport(value=int(value), timestamp_sec=ts))
            del slots[:-2]

    def purge_reports(self, provider: str) -> None:
        with self._lock:
            self._reports[provider] = []

    def _usable(self, slots: List[ProviderReport], now: int) -> Optional[ProviderReport]:
        for report in reversed(slots):
            age = now - report.timestamp_sec
            if self.report_delay_sec <= age <= self.report_expiration_time_sec:
                return report
        return None

    def usable_reports(self, now: Optional[int] = None) -> List[Tuple[str, int]]:
        now = self._clock() if now is None else now
        with self._lock:
            snapshot = {p: list(s) for p, s in self._reports.items()}
        out = []
        for provider, slots in sorted(snapshot.items()):
            report = self._usable(slots, now)
            if report is not None:
                out.append((provider, report.value))
        return out

    def fetch(self, now: Optional[int] = None) -> FeedReading:
        values = [v for _, v in self.usable_reports(now)]
        if len(values) < self.minimum_providers:
            _log.debug(
                "%s: %d usable reports < minimum %d",
                self.name, len(values), self.minimum_providers,
            )
            return FeedReading(value=Fixed.zero(self.sem), valid=False)
        return FeedReading(value=Fixed(median(values), self.sem), valid=True)


def median(values: List[int]) -> int:
    """Integer median; even counts average the middle pair, truncated toward zero."""
    if not values:
        raise ValueError("median of empty list")
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return div_truncate(ordered[mid - 1] + ordered[mid], 2)


# ---------------------------------------------------------------------------
# TickerStreamFeed
# ---------------------------------------------------------------------------

class TickerStreamFeed:
    """
    Market-rate feed backed by a WebSocket ticker stream.

    run() connects, subscribes to `tickers.<symbol>` and keeps the last price.
    fetch() may be called from any thread; the reading is valid only if a
    price has arrived within max_staleness_sec.
    """

    def __init__(
        self,
        url: str,
        symbol: str,
        *,
        max_staleness_sec: int = 300,
        price_field: str = "lastPrice",
        reconnect_delay_sec: float = 5.0,
        clock: Callable[[], int] = _unix_now,
    ) -> None:
        self.url = url
        self.symbol = symbol
        self.max_staleness_sec = max_staleness_sec
        self.price_field = price_field
        self.reconnect_delay_sec = reconnect_delay_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._last_price: Optional[Fixed] = None
        self._last_ts: Optional[int] = None
        self._running = False
        self._ws = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.reconnects = 0
        self.name = f"ticker:{symbol}"

    @property
    def topic(self) -> str:
        return f"tickers.{self.symbol}"

    def subscription_message(self) -> str:
        return json.dumps({"op": "subscribe", "args": [self.topic]})

    def handle_message(self, raw: str) -> bool:
        """Parse one stream message.  Returns True if a price was taken."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            _log.warning("%s: dropping non-JSON message", self.name)
            return False
        if not isinstance(data, dict) or data.get("topic") != self.topic:
            return False

        payload = data.get("data")
        if not isinstance(payload, dict) or self.price_field not in payload:
            return False
        try:
            price = Fixed.from_str(str(payload[self.price_field]), SemanticType.RATE)
        except FixedError as e:
            _log.warning("%s: bad price %r: %s", self.name, payload[self.price_field], e)
            return False
        if price.is_negative():
            _log.warning("%s: negative price %s ignored", self.name, price)
            return False

        ts_ms = data.get("ts")
        ts = int(ts_ms) // 1000 if isinstance(ts_ms, int) else self._clock()
        with self._lock:
            self._last_price = price
            self._last_ts = ts
        return True

    def fetch(self) -> FeedReading:
        with self._lock:
            price, ts = self._last_price, self._last_ts
        if price is None or ts is None:
            return FeedReading(value=Fixed.zero(SemanticType.RATE), valid=False)
        age = self._clock() - ts
        return FeedReading(value=price, valid=0 <= age <= self.max_staleness_sec)

    async def run(self) -> None:
        """Stream until stop().  Reconnects after any disconnect, clean or not."""
        self._running = True
        self._loop = asyncio.get_running_loop()
        while self._running:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    if not self._running:
                        break
                    await ws.send(self.subscription_message())
                    _log.info("%s: subscribed to %s", self.name, self.url)
                    async for msg in ws:
                        self.handle_message(msg)
                reason = "connection closed"
            except (OSError, websockets.WebSocketException) as e:
                reason = str(e) or type(e).__name__
            finally:
                self._ws = None
            if not self._running:
                break
            self.reconnects += 1
            _log.warning(
                "%s: disconnected: %s, reconnecting in %.2fs...",
                self.name, reason, self.reconnect_delay_sec,
            )
            await asyncio.sleep(self.reconnect_delay_sec)
        _log.info("%s: stopped", self.name)

    def stop(self) -> None:
        """Stop run().  Safe to call from any thread; closes the live connection."""
        self._running = False
        ws, loop = self._ws, self._loop
        if ws is not None and loop is not None and not loop.is_closed():
            asyncio.run_coroutine_threadsafe(ws.close(), loop)
