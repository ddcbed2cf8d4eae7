import asyncio
import html
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp


logger = logging.getLogger(__name__)

GREEN = 0x00FF00
RED = 0xFF0000
BLUE = 0x0099FF
ORANGE = 0xFFA500


class NotificationError(Exception):
    pass


@dataclass
class Notification:
    kind: str
    title: str
    message: str = ''
    fields: List[Tuple[str, str]] = field(default_factory=list)
    severity: str = 'info'
    color: int = BLUE
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def as_text(self) -> str:
        lines = [self.title]
        if self.message:
            lines.append(self.message)
        lines.extend(f"{name}: {value}" for name, value in self.fields)
        return '\n'.join(lines)


def _fmt_price(value: Optional[float]) -> str:
    if value is None:
        return 'N/A'
    return f"{float(value):.6g}"


def signal_notification(signal) -> Notification:
    is_long = signal.direction.value == 'Long'
    return Notification(
        kind='signal',
        title=f"New signal: {signal.symbol} {'LONG' if is_long else 'SHORT'}",
        message=signal.reason,
        fields=[
            ('Price', _fmt_price(signal.price)),
            ('Regime', signal.regime.value),
            ('Strength', f"{signal.strength}%"),
            ('Take profit', f"{_fmt_price(signal.take_profit)} (+{signal.tp_roi:.2f}%)"),
            ('Stop loss', f"{_fmt_price(signal.stop_loss)} ({signal.sl_roi:.2f}%)"),
        ],
        color=GREEN if is_long else RED,
        payload=signal.to_dict(),
    )


def order_notification(result) -> Notification:
    fields = [
        ('Side', result.direction or 'N/A'),
        ('Entry', _fmt_price(result.entry_price)),
        ('Quantity', format(result.quantity, 'f') if result.quantity is not None else 'N/A'),
        ('Leverage', f"{result.leverage}x"),
        ('Take profit', _fmt_price(result.take_profit)),
        ('Stop loss', _fmt_price(result.stop_loss)),
    ]
    severity = 'info'
    message = ''
    if result.unprotected:
        severity = 'warning'
        message = 'Bracket incomplete: position is open without full TP/SL protection'
    return Notification(
        kind='order',
        title=f"Order placed: {result.symbol}",
        message=message,
        fields=fields,
        severity=severity,
        color=ORANGE if result.unprotected else GREEN,
        payload=result.as_dict(),
    )


def order_failed_notification(symbol: str, reason: str, direction: Optional[str] = None) -> Notification:
    return Notification(
        kind='order_failed',
        title=f"Order failed: {symbol}",
        message=reason,
        fields=[('Side', direction)] if direction else [],
        severity='error',
        color=RED,
        payload={'symbol': symbol, 'reason': reason, 'direction': direction},
    )


def position_closed_notification(position, pnl: Optional[float] = None) -> Notification:
    pnl = position.unrealized_pnl if pnl is None else pnl
    pnl = pnl or 0.0
    profit = pnl > 0
    return Notification(
        kind='position_closed',
        title=f"Position closed: {position.symbol} ({'profit' if profit else 'loss'})",
        fields=[
            ('Side', position.side),
            ('Entry', _fmt_price(position.entry_price)),
            ('PnL', f"{'+' if profit else ''}{pnl:.2f} USDT"),
        ],
        color=GREEN if profit else RED,
        payload={**position.to_dict(), 'pnl': pnl},
    )


def error_notification(message: str, context: Optional[Dict[str, Any]] = None) -> Notification:
    return Notification(
        kind='error',
        title='System error',
        message=message,
        severity='error',
        color=RED,
        payload=dict(context or {}),
    )


def scan_summary_notification(summary) -> Notification:
    return Notification(
        kind='scan_summary',
        title='Scan summary',
        fields=[
            ('Symbols', str(summary.symbols)),
            ('Signals', str(summary.signals)),
            ('Errors', str(summary.errors)),
            ('Duration', f"{summary.duration_s:.1f}s"),
        ],
        payload=summary.as_dict(),
    )


def message_notification(text: str, severity: str = 'info') -> Notification:
    return Notification(kind='message', title=text, severity=severity, color=BLUE)


class NotificationChannel(ABC):
    """One delivery target. ``deliver`` raises on failure; formatting is shared."""

    name = 'channel'

    @abstractmethod
    async def deliver(self, notification: Notification) -> Any:
        ...

    async def send_signal(self, signal):
        return await self.deliver(signal_notification(signal))

    async def send_order(self, result):
        return await self.deliver(order_notification(result))

    async def send_order_failed(self, symbol: str, reason: str, direction: Optional[str] = None):
        return await self.deliver(order_failed_notification(symbol, reason, direction))

    async def send_position_closed(self, position, pnl: Optional[float] = None):
        return await self.deliver(position_closed_notification(position, pnl))

    async def send_error(self, message: str, context: Optional[Dict[str, Any]] = None):
        return await self.deliver(error_notification(message, context))

    async def send_scan_summary(self, summary):
        return await self.deliver(scan_summary_notification(summary))

    async def send_message(self, text: str, severity: str = 'info'):
        return await self.deliver(message_notification(text, severity))


class _HTTPChannel(NotificationChannel):
    def __init__(self, timeout_s: float = 10.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Any:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(url, json=payload) as response:
                if response.status >= 300:
                    body = await response.text()
                    raise NotificationError(f"{self.name} returned {response.status}: {body[:200]}")
                if response.content_type == 'application/json':
                    return await response.json()
                return None


class DiscordChannel(_HTTPChannel):
    name = 'discord'

    def __init__(self, webhook_url: str, username: Optional[str] = None, timeout_s: float = 10.0):
        super().__init__(timeout_s)
        self.webhook_url = webhook_url
        self.username = username

    def build_payload(self, notification: Notification) -> Dict[str, Any]:
        embed = {
            'title': notification.title,
            'color': notification.color,
            'fields': [{'name': name, 'value': value, 'inline': True} for name, value in notification.fields],
            'timestamp': time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(notification.timestamp)),
        }
        if notification.message:
            embed['description'] = notification.message
        payload: Dict[str, Any] = {'embeds': [embed]}
        if self.username:
            payload['username'] = self.username
        return payload

    async def deliver(self, notification: Notification) -> None:
        await self._post(self.webhook_url, self.build_payload(notification))


class TelegramChannel(_HTTPChannel):
    name = 'telegram'
    api_url = 'https://api.telegram.org'

    def __init__(self, bot_token: str, chat_id: str, timeout_s: float = 10.0):
        super().__init__(timeout_s)
        self.bot_token = bot_token
        self.chat_id = chat_id

    def build_payload(self, notification: Notification) -> Dict[str, Any]:
        lines = [f"<b>{html.escape(notification.title)}</b>"]
        if notification.message:
            lines.append(html.escape(notification.message))
        lines.extend(f"{html.escape(name)}: {html.escape(value)}" for name, value in notification.fields)
        return {'chat_id': self.chat_id, 'text': '\n'.join(lines), 'parse_mode': 'HTML'}

    async def deliver(self, notification: Notification) -> None:
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        data = await self._post(url, self.build_payload(notification))
        if isinstance(data, dict) and not data.get('ok', True):
            raise NotificationError(f"telegram rejected message: {data.get('description')}")


class WebhookChannel(_HTTPChannel):
    name = 'webhook'

    def __init__(self, url: str, timeout_s: float = 10.0):
        super().__init__(timeout_s)
        self.url = url

    async def deliver(self, notification: Notification) -> None:
        await self._post(
            self.url,
            {
                'type': notification.kind,
                'message': notification.as_text(),
                'severity': notification.severity,
                'timestamp': notification.timestamp,
                'metadata': notification.payload,
            },
        )


class LogChannel(NotificationChannel):
    name = 'log'

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def deliver(self, notification: Notification) -> None:
        level = logging.WARNING if notification.severity in ('warning', 'error') else logging.INFO
        self.log.log(level, "[Alert] %s", notification.as_text().replace('\n', ' | '))


@dataclass
class DeliveryReport:
    success: bool
    results: Dict[str, bool] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


class NotificationManager(NotificationChannel):
    """Fans each notification out to every channel; never raises to callers."""

    name = 'manager'

    def __init__(
        self,
        channels: Optional[List[NotificationChannel]] = None,
        retry_attempts: int = 3,
        retry_delay_s: float = 2.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.channels: List[NotificationChannel] = list(channels or [])
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep or asyncio.sleep
        self._status: Dict[str, Dict[str, Any]] = {}

    async def deliver(self, notification: Notification) -> DeliveryReport:
        report = DeliveryReport(success=False)
        if not self.channels:
            return report
        outcomes = await asyncio.gather(
            *(self._deliver_with_retry(channel, notification) for channel in self.channels)
        )
        for channel, error in zip(self.channels, outcomes):
            report.results[channel.name] = error is None
            if error is not None:
                report.errors[channel.name] = error
        report.success = any(report.results.values())
        if not report.success:
            logger.warning("Notification %s not delivered to any channel: %s", notification.kind, report.errors)
        return report

    async def _deliver_with_retry(self, channel: NotificationChannel, notification: Notification) -> Optional[str]:
        error = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                await channel.deliver(notification)
                self._record(channel, None)
                return None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.warning(
                    "%s delivery of %s failed (%s/%s): %s",
                    channel.name,
                    notification.kind,
                    attempt,
                    self.retry_attempts,
                    error,
                )
                if attempt < self.retry_attempts:
                    await self._sleep(self.retry_delay_s * attempt)
        self._record(channel, error)
        return error

    async def test_connections(self) -> Dict[str, Dict[str, Any]]:
        """Send one test message per channel, without retries."""
        notification = message_notification("Connection test from Regime Scanner")

        async def _check_channel(channel: NotificationChannel) -> Optional[str]:
            try:
                await channel.deliver(notification)
                error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.warning("%s connection test failed: %s", channel.name, error)
            self._record(channel, error)
            return error

        outcomes = await asyncio.gather(*(_check_channel(channel) for channel in self.channels))
        return {
            channel.name: {'success': error is None, 'error': error}
            for channel, error in zip(self.channels, outcomes)
        }

    def connection_status(self) -> Dict[str, Dict[str, Any]]:
        """Last known delivery state per channel; `connected` is None until something was sent."""
        status = {}
        for channel in self.channels:
            last = self._status.get(channel.name, {})
            status[channel.name] = {
                'type': channel.__class__.__name__,
                'connected': last.get('connected'),
                'last_error': last.get('last_error'),
                'checked_at': last.get('checked_at'),
            }
        return status

    def _record(self, channel: NotificationChannel, error: Optional[str]) -> None:
        self._status[channel.name] = {
            'connected': error is None,
            'last_error': error,
            'checked_at': time.time(),
        }


def build_notifier(settings, include_log: bool = True) -> NotificationManager:
    """Build the manager from ``NotificationSettings``; channels missing credentials are skipped."""
    channels: List[NotificationChannel] = []
    if settings.discord_enabled:
        if settings.discord_webhook_url:
            channels.append(DiscordChannel(settings.discord_webhook_url, settings.discord_username, settings.timeout_s))
        else:
            logger.warning("Discord notifications enabled but no webhook URL configured")
    if settings.telegram_enabled:
        if settings.telegram_bot_token and settings.telegram_chat_id:
            channels.append(TelegramChannel(settings.telegram_bot_token, settings.telegram_chat_id, settings.timeout_s))
        else:
            logger.warning("Telegram notifications enabled but bot token or chat id missing")
    if settings.webhook_url:
        channels.append(WebhookChannel(settings.webhook_url, settings.timeout_s))
    if include_log:
        channels.append(LogChannel())
    logger.info("Notification channels: %s", ', '.join(c.name for c in channels) or 'none')
    return NotificationManager(
        channels,
        retry_attempts=settings.retry_attempts,
        retry_delay_s=settings.retry_delay_s,
    )
