# dumphedge/alerts.py
import asyncio
import html
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Set

import aiohttp

from .config import BotConfig
from .models import Alert, AlertSeverity, DumpSignal, Events, OrderResult, Side, TradeCycle

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"

ICONS = {
    AlertSeverity.INFO: "ℹ️",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.CRITICAL: "🚨",
}

DISCORD_COLORS = {
    AlertSeverity.INFO: 0x3498DB,
    AlertSeverity.WARNING: 0xF1C40F,
    AlertSeverity.CRITICAL: 0xE74C3C,
}


class AlertManager:
    """
    Fire-and-forget notifications to the console, Telegram and Discord.

    notify() never raises and never awaits delivery: channel sends run as
    background tasks and their failures are only logged.
    """
    def __init__(self, config: BotConfig, logger, bus=None,
                 session: Optional[aiohttp.ClientSession] = None, clock: Callable[[], float] = time.time):
        self.cfg = config.alerts
        self.telegram_token = config.secrets.telegram_bot_token
        self.telegram_chat_id = config.secrets.telegram_chat_id
        self.discord_url = config.secrets.discord_webhook_url
        self.timeout = config.network.request_timeout
        self.logger = logger
        self.bus = bus
        self._clock = clock
        self._session = session
        self._owns_session = False

        self.min_severity = AlertSeverity(self.cfg.min_severity)
        self.history: Deque[Alert] = deque(maxlen=self.cfg.history_size)
        self._sent_times: Deque[float] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self.suppressed = 0
        self.failures = 0

    @property
    def channels(self) -> List[str]:
        out = ["console"] if self.cfg.console else []
        if self.telegram_token and self.telegram_chat_id:
            out.append("telegram")
        if self.discord_url:
            out.append("discord")
        return out

    # --- Core ---

    def _throttled(self, now: float) -> bool:
        while self._sent_times and now - self._sent_times[0] >= self.cfg.throttle_window:
            self._sent_times.popleft()
        return len(self._sent_times) >= self.cfg.max_per_window

    def notify(self, alert: Alert) -> bool:
        """
        Returns True if the alert passed the severity filter and throttle.
        """
        try:
            if alert.severity.rank < self.min_severity.rank:
                return False
            now = self._clock()
            # Critical alerts bypass the throttle
            if alert.severity is not AlertSeverity.CRITICAL and self._throttled(now):
                self.suppressed += 1
                self.logger.debug(f"Alert throttled: {alert.title}")
                return False
            self._sent_times.append(now)
            self.history.append(alert)

            if self.cfg.console:
                log = {
                    AlertSeverity.INFO: self.logger.info,
                    AlertSeverity.WARNING: self.logger.warning,
                    AlertSeverity.CRITICAL: self.logger.critical,
                }[alert.severity]
                log(f"{ICONS[alert.severity]} {alert.title}: {alert.message}")

            if self.telegram_token and self.telegram_chat_id:
                self._spawn(self._send_telegram(alert))
            if self.discord_url:
                self._spawn(self._send_discord(alert))

            if self.bus is not None:
                self.bus.publish(Events.ALERT_SENT, alert)
            return True
        except Exception as e:
            self.failures += 1
            self.logger.error(f"Alert dispatch failed: {e}")
            return False

    def _spawn(self, coro):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            self.logger.debug("No running loop, remote alert skipped")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- Channels ---

    async def _session_get(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post(self, channel: str, url: str, payload: dict):
        try:
            session = await self._session_get()
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with session.post(url, json=payload, timeout=timeout) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self.failures += 1
                    self.logger.warning(f"{channel} alert HTTP {resp.status}: {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failures += 1
            self.logger.warning(f"{channel} alert failed: {e}")

    async def _send_telegram(self, alert: Alert):
        text = (
            f"{ICONS[alert.severity]} <b>{html.escape(alert.title)}</b>\n"
            f"{html.escape(alert.message)}"
        )
        payload = {"chat_id": self.telegram_chat_id, "text": text, "parse_mode": "HTML",
                   "disable_web_page_preview": True}
        await self._post("telegram", TELEGRAM_API.format(token=self.telegram_token), payload)

    async def _send_discord(self, alert: Alert):
        payload = {"embeds": [{
            "title": alert.title,
            "description": alert.message,
            "color": DISCORD_COLORS[alert.severity],
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp)),
        }]}
        await self._post("discord", self.discord_url, payload)

    async def close(self):
        """Waits for in-flight deliveries, then releases the HTTP session."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # --- Domain alerts ---

    def dump_detected(self, signal: DumpSignal) -> bool:
        return self.notify(Alert(
            severity=AlertSeverity.INFO,
            title="Dump detected",
            message=(f"{signal.side.value} fell {signal.drop_pct * 100:.1f}% "
                     f"({signal.previous_price:.4f} -> {signal.price:.4f}) in {signal.round_slug}"),
            data={"side": signal.side.value, "drop_pct": signal.drop_pct, "round": signal.round_slug},
        ))

    def order_failed(self, leg: str, side: Side, error: str) -> bool:
        return self.notify(Alert(
            severity=AlertSeverity.WARNING,
            title="Order failed",
            message=f"{leg} {side.value} buy rejected: {error}",
            data={"leg": leg, "side": side.value},
        ))

    def round_expired_loss(self, round_slug: str, loss: float) -> bool:
        return self.notify(Alert(
            severity=AlertSeverity.CRITICAL,
            title="Round expired unhedged",
            message=f"{round_slug} ended with leg 1 only. Realized loss ${loss:.2f}",
            data={"round": round_slug, "loss": loss},
        ))

    def orphan_fill(self, leg: str, result: OrderResult, round_slug: str) -> bool:
        return self.notify(Alert(
            severity=AlertSeverity.CRITICAL,
            title="Unmatched fill",
            message=(f"{leg} {result.side.value} filled {result.shares} @ {result.avg_price:.4f} "
                     f"after cycle for {round_slug} closed. Position is open"),
            data={"round": round_slug, "order_id": result.order_id, "cost": result.total_cost},
        ))

    def trade_completed(self, cycle: TradeCycle) -> bool:
        profit = cycle.profit or 0.0
        legs = ""
        if cycle.leg1 and cycle.leg2:
            legs = (f"{cycle.leg1.side.value} @ {cycle.leg1.entry_price:.4f} + "
                    f"{cycle.leg2.side.value} @ {cycle.leg2.entry_price:.4f} | ")
        return self.notify(Alert(
            severity=AlertSeverity.INFO,
            title="Trade completed",
            message=f"{legs}profit ${profit:.4f} ({cycle.round_slug})",
            data={"cycle_id": cycle.id, "profit": profit},
        ))

    def system_error(self, error) -> bool:
        return self.notify(Alert(
            severity=AlertSeverity.CRITICAL,
            title="System error",
            message=str(error),
        ))

    def ws_disconnected(self) -> bool:
        return self.notify(Alert(
            severity=AlertSeverity.WARNING,
            title="Market feed disconnected",
            message="Detection paused. Auto mode must be re-enabled after reconnect.",
        ))

    def recent(self, limit: int = 10) -> List[Alert]:
        return list(self.history)[-limit:]
