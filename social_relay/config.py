##########################################################################################
#
# Script name: config.py
#
# Description: Runtime settings for the relay, read from YAML and the environment.
#
##########################################################################################

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlparse

import yaml

from .errors import ConfigError


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = 'config/relay.yaml'
DEFAULT_CRON_EXPRESSION = '*/10 9-20 * * 1-5'
DEFAULT_DATABASE_PATH = 'relay.db'
DEFAULT_LOG_FILE = 'social_relay.log'
DEFAULT_POST_HEADING = 'New Post'
DEFAULT_BOT_NAME = 'Social Relay Bot'

# (section, key) -> environment variable
ENV_OVERRIDES = {
    ('feed', 'base_url'): 'NITTER_BASE_URL',
    ('feed', 'username'): 'NITTER_USERNAME',
    ('database', 'url'): 'DATABASE_URL',
    ('database', 'path'): 'DATABASE_PATH',
    ('telegram', 'bot_token'): 'TELEGRAM_BOT_TOKEN',
    ('telegram', 'channel_id'): 'TELEGRAM_CHANNEL_ID',
    ('discord', 'bot_token'): 'DISCORD_BOT_TOKEN',
    ('discord', 'channel_id'): 'DISCORD_CHANNEL_ID',
    ('discord', 'alert_channel_id'): 'DISCORD_ALERT_CHANNEL_ID',
    ('polling', 'cron_expression'): 'POLL_CRON_EXPRESSION',
    ('retry', 'max_retries'): 'MAX_RETRIES',
    ('retry', 'retry_delay_ms'): 'RETRY_DELAY_MS',
    ('relay', 'failure_alert_threshold'): 'FAILURE_ALERT_THRESHOLD',
    ('relay', 'post_delay_seconds'): 'POST_DELAY_SECONDS',
    ('relay', 'post_heading'): 'POST_HEADING',
    ('relay', 'bot_name'): 'BOT_NAME',
    ('log', 'level'): 'LOG_LEVEL',
    ('log', 'file'): 'LOG_FILE',
}


@dataclass(frozen=True)
class FeedSettings:
    base_url: str
    username: str


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = ''
    path: str = DEFAULT_DATABASE_PATH


@dataclass(frozen=True)
class TelegramSettings:
    bot_token: str
    channel_id: str


@dataclass(frozen=True)
class DiscordSettings:
    bot_token: str
    channel_id: str
    alert_channel_id: str = ''


@dataclass(frozen=True)
class PollingSettings:
    cron_expression: str = DEFAULT_CRON_EXPRESSION


@dataclass(frozen=True)
class RetrySettings:
    max_retries: int = 3
    retry_delay_ms: int = 1000


@dataclass(frozen=True)
class RelaySettings:
    failure_alert_threshold: int = 3
    post_delay_seconds: float = 1.0
    post_heading: str = DEFAULT_POST_HEADING
    bot_name: str = DEFAULT_BOT_NAME


@dataclass(frozen=True)
class LogSettings:
    level: str = 'INFO'
    file: str = DEFAULT_LOG_FILE


@dataclass(frozen=True)
class AppConfig:
    feed: FeedSettings
    database: DatabaseSettings
    telegram: TelegramSettings
    discord: DiscordSettings
    polling: PollingSettings
    retry: RetrySettings
    relay: RelaySettings
    log: LogSettings


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _load_yaml(path: str | None) -> dict:
    if not path:
        return {}
    if not os.path.exists(path):
        if path != DEFAULT_CONFIG_FILE:
            raise ConfigError(f'Config file not found: {path}')
        return {}
    with open(path, 'r', encoding='utf-8') as handle:
        try:
            payload = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f'Invalid YAML in {path}: {exc}') from exc
    if not isinstance(payload, dict):
        raise ConfigError(f'Config file {path} must contain a mapping at the top level')
    for section, values in payload.items():
        if values is not None and not isinstance(values, dict):
            raise ConfigError(f'config.{section} must be a mapping')
    return payload


def _merge_env(payload: dict, env: Mapping[str, str]) -> dict:
    merged = {section: dict(values or {}) for section, values in payload.items()}
    for (section, key), env_name in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None or value == '':
            continue
        merged.setdefault(section, {})[key] = value
    return merged


def _require(values: dict, section: str, key: str) -> str:
    value = values.get(key)
    if value is None or str(value).strip() == '':
        env_name = ENV_OVERRIDES.get((section, key), f'{section}.{key}')
        raise ConfigError(f'Missing required setting: {env_name}')
    return str(value).strip()


def _optional(values: dict, key: str, default: str) -> str:
    value = values.get(key)
    if value is None or str(value).strip() == '':
        return default
    return str(value).strip()


def _parse_int(values: dict, section: str, key: str, default: int) -> int:
    value = values.get(key)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f'Invalid integer for {section}.{key}: {value}') from None


def _parse_float(values: dict, section: str, key: str, default: float) -> float:
    value = values.get(key)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f'Invalid number for {section}.{key}: {value}') from None


def _validate_url(url: str, name: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in {'http', 'https'} or not parsed.netloc:
        raise ConfigError(f'Invalid URL for {name}: {url}')
    return url.rstrip('/')


def load_config(path: str | None = DEFAULT_CONFIG_FILE, env: Mapping[str, str] | None = None) -> AppConfig:
    '''
    Build the application settings.

    Input:
        path: optional YAML file with sections feed, database, telegram, discord,
              polling, retry, relay and log.
        env: environment mapping; defaults to os.environ. Non-empty variables
             override the YAML values.

    Output:
        AppConfig with every required value present and validated.
    '''
    env = os.environ if env is None else env
    values = _merge_env(_load_yaml(path), env)

    feed = values.get('feed', {})
    database = values.get('database', {})
    telegram = values.get('telegram', {})
    discord = values.get('discord', {})
    polling = values.get('polling', {})
    retry = values.get('retry', {})
    relay = values.get('relay', {})
    log_values = values.get('log', {})

    config = AppConfig(
        feed=FeedSettings(
            base_url=_validate_url(_require(feed, 'feed', 'base_url'), 'NITTER_BASE_URL'),
            username=_require(feed, 'feed', 'username').lstrip('@'),
        ),
        database=DatabaseSettings(
            url=_optional(database, 'url', ''),
            path=_optional(database, 'path', DEFAULT_DATABASE_PATH),
        ),
        telegram=TelegramSettings(
            bot_token=_require(telegram, 'telegram', 'bot_token'),
            channel_id=_require(telegram, 'telegram', 'channel_id'),
        ),
        discord=DiscordSettings(
            bot_token=_require(discord, 'discord', 'bot_token'),
            channel_id=_require(discord, 'discord', 'channel_id'),
            alert_channel_id=_optional(discord, 'alert_channel_id', ''),
        ),
        polling=PollingSettings(
            cron_expression=_optional(polling, 'cron_expression', DEFAULT_CRON_EXPRESSION),
        ),
        retry=RetrySettings(
            max_retries=max(1, _parse_int(retry, 'retry', 'max_retries', 3)),
            retry_delay_ms=max(0, _parse_int(retry, 'retry', 'retry_delay_ms', 1000)),
        ),
        relay=RelaySettings(
            failure_alert_threshold=max(1, _parse_int(relay, 'relay', 'failure_alert_threshold', 3)),
            post_delay_seconds=max(0.0, _parse_float(relay, 'relay', 'post_delay_seconds', 1.0)),
            post_heading=_optional(relay, 'post_heading', DEFAULT_POST_HEADING),
            bot_name=_optional(relay, 'bot_name', DEFAULT_BOT_NAME),
        ),
        log=LogSettings(
            level=_optional(log_values, 'level', 'INFO').upper(),
            file=_optional(log_values, 'file', DEFAULT_LOG_FILE),
        ),
    )
    log.debug('Loaded configuration for feed %s/%s', config.feed.base_url, config.feed.username)
    return config
