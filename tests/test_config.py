import sys

sys.path.insert(0, '.')

import pytest

from config import Config, ConfigurationError, Settings, load_config


def test_bundled_config_loads_with_defaults(monkeypatch):
    monkeypatch.delenv('BINANCE_API_KEY', raising=False)
    monkeypatch.delenv('BINANCE_API_SECRET', raising=False)
    monkeypatch.delenv('SCANNER_CONFIG', raising=False)

    settings = Settings.from_config(load_config())

    assert settings.strategy.interval == '1h'
    assert settings.orders.leverage == 20
    assert settings.orders.max_orders_per_day == 10
    assert settings.filters.min_trade_volume == 1_000_000.0
    assert settings.regime.adx_threshold == 25.0
    assert settings.exchange.api_key is None
    assert not settings.exchange.has_credentials
    with pytest.raises(ConfigurationError):
        settings.require_credentials()


def test_env_placeholders_resolve(monkeypatch):
    monkeypatch.setenv('TEST_KEY', 'abc')
    config = Config(data={
        'exchange': {'api_key': '${TEST_KEY}', 'api_secret': 'xyz', 'testnet': '${TEST_TESTNET:-true}'},
        'orders': {'leverage': '10', 'capital_per_order': '25.5'},
    })
    settings = Settings.from_config(config)
    assert settings.exchange.api_key == 'abc'
    assert settings.exchange.testnet is True
    assert settings.exchange.has_credentials
    assert settings.orders.leverage == 10
    assert settings.orders.capital_per_order == 25.5


def test_unknown_keys_are_ignored():
    settings = Settings.from_config({'scan': {'interval_s': 60, 'cron': '* * * * *'}})
    assert settings.scan.interval_s == 60.0


def test_cors_origins_from_comma_string():
    settings = Settings.from_config({'api': {'cors_origins': 'http://a.test, http://b.test'}})
    assert settings.api.cors_origins == ('http://a.test', 'http://b.test')


@pytest.mark.parametrize('section, values', [
    ('orders', {'leverage': 0}),
    ('orders', {'leverage': 200}),
    ('orders', {'capital_per_order': 0}),
    ('orders', {'rank_by': 'volume'}),
    ('strategy', {'concurrency_limit': 0}),
    ('strategy', {'batch_delay_min_s': 1.0, 'batch_delay_max_s': 0.5}),
    ('indicators', {'ema_short': 50, 'ema_long': 20}),
    ('scan', {'interval_s': 0}),
])
def test_invalid_settings_rejected(section, values):
    with pytest.raises(ConfigurationError):
        Settings.from_config({section: values})


def test_bad_numeric_value_rejected():
    with pytest.raises(ConfigurationError):
        Settings.from_config({'orders': {'leverage': 'lots'}})
