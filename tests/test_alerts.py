import asyncio
import sys
from decimal import Decimal

sys.path.insert(0, '.')

from analytics.regime import Regime
from api.alerts import (
    DiscordChannel,
    LogChannel,
    NotificationManager,
    TelegramChannel,
    WebhookChannel,
    build_notifier,
    order_notification,
    signal_notification,
)
from config.settings import NotificationSettings
from strategy.execution_types import ExecutionResult, OrderTicket
from strategy.signal_manager import Direction, Signal
from tests.fakes import RecordingNotifier


def _signal():
    return Signal('BTCUSDT', Direction.SHORT, 100.0, 75, 9.0, -4.5, 'Range Top: RSI 78.0 + Volume Spike',
                  Regime.SIDEWAY, take_profit=91.0, stop_loss=104.5)


def test_manager_fans_out_to_every_channel():
    a, b = RecordingNotifier(), RecordingNotifier()
    a.name, b.name = 'a', 'b'
    manager = NotificationManager([a, b])

    report = asyncio.run(manager.send_signal(_signal()))

    assert report.success
    assert report.results == {'a': True, 'b': True}
    assert a.kinds() == b.kinds() == ['signal']


def test_manager_retries_with_linear_backoff():
    delays = []

    async def sleep(delay):
        delays.append(delay)

    flaky = RecordingNotifier(fail_times=2)
    manager = NotificationManager([flaky], retry_attempts=3, retry_delay_s=2, sleep=sleep)

    report = asyncio.run(manager.send_message('hello'))

    assert report.success
    assert flaky.attempts == 3
    assert delays == [2, 4]


def test_manager_never_raises_when_every_channel_fails():
    async def sleep(delay):
        return None

    broken = RecordingNotifier(fail_times=99)
    healthy = RecordingNotifier()
    healthy.name = 'healthy'
    manager = NotificationManager([broken, healthy], retry_attempts=2, sleep=sleep)

    report = asyncio.run(manager.send_error('boom'))
    assert report.success
    assert report.results == {'recording': False, 'healthy': True}
    assert 'channel down' in report.errors['recording']

    alone = NotificationManager([RecordingNotifier(fail_times=99)], retry_attempts=2, sleep=sleep)
    assert not asyncio.run(alone.send_error('boom')).success
    assert not asyncio.run(NotificationManager([]).send_message('nobody listening')).success


def test_signal_notification_fields():
    note = signal_notification(_signal())
    assert note.title == 'New signal: BTCUSDT SHORT'
    assert dict(note.fields)['Take profit'] == '91 (+9.00%)'
    assert dict(note.fields)['Stop loss'] == '104.5 (-4.50%)'
    assert note.payload['symbol'] == 'BTCUSDT'


def test_order_notification_flags_missing_bracket():
    result = ExecutionResult(
        symbol='BTCUSDT',
        success=True,
        direction='Long',
        quantity=Decimal('2.000'),
        entry_price=100.0,
        take_profit=100.2,
        stop_loss=99.9,
        leverage=20,
        entry_order=OrderTicket('BTCUSDT', 'BUY', 'MARKET', 2.0),
        take_profit_order=OrderTicket('BTCUSDT', 'SELL', 'TAKE_PROFIT_MARKET', 0.0),
    )
    note = order_notification(result)
    assert note.severity == 'warning'
    assert 'without full TP/SL' in note.message
    assert dict(note.fields)['Quantity'] == '2.000'


def test_channel_payload_formats():
    note = signal_notification(_signal())

    discord = DiscordChannel('https://discord.invalid/hook', username='scanner').build_payload(note)
    embed = discord['embeds'][0]
    assert discord['username'] == 'scanner'
    assert embed['title'] == note.title
    assert embed['description'] == note.message
    assert {'name': 'Regime', 'value': 'SIDEWAY', 'inline': True} in embed['fields']

    telegram = TelegramChannel('token', '42').build_payload(note)
    assert telegram['chat_id'] == '42'
    assert telegram['parse_mode'] == 'HTML'
    assert telegram['text'].startswith('<b>New signal: BTCUSDT SHORT</b>')


def test_build_notifier_skips_incomplete_channels():
    settings = NotificationSettings(
        discord_enabled=True,
        telegram_enabled=True,
        telegram_bot_token='token',
        webhook_url='https://hooks.invalid/scanner',
        retry_attempts=2,
    )
    manager = build_notifier(settings)
    kinds = [type(c) for c in manager.channels]
    assert kinds == [WebhookChannel, LogChannel]
    assert manager.retry_attempts == 2

    assert [type(c) for c in build_notifier(NotificationSettings(), include_log=False).channels] == []


def test_connection_status_follows_deliveries_and_tests():
    async def sleep(delay):
        return None

    healthy = RecordingNotifier()
    flaky = RecordingNotifier(fail_times=1)
    flaky.name = 'flaky'
    manager = NotificationManager([healthy, flaky], retry_attempts=1, sleep=sleep)
    assert manager.connection_status()['flaky']['connected'] is None

    asyncio.run(manager.send_message('hello'))
    status = manager.connection_status()
    assert status['recording']['connected'] is True
    assert status['flaky']['connected'] is False
    assert status['flaky']['last_error'] == 'channel down'

    results = asyncio.run(manager.test_connections())
    assert results == {'recording': {'success': True, 'error': None}, 'flaky': {'success': True, 'error': None}}
    assert manager.connection_status()['flaky']['connected'] is True
    assert healthy.sent[-1].title == 'Connection test from Regime Scanner'
