##########################################################################################
#
# Script name: sinks.py
#
# Description: Chat destinations for relayed posts: Telegram Bot API and Discord REST API.
#
##########################################################################################

import logging
import re

import requests

from .config import DEFAULT_BOT_NAME, DEFAULT_POST_HEADING, DiscordSettings, TelegramSettings
from .models import CandidatePost
from .utils import escape_html, truncate, utc_now_iso


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)
USER_AGENT = 'social-relay-bot/1.0'
REQUEST_TIMEOUT = 20
TELEGRAM_API = 'https://api.telegram.org'
TELEGRAM_MAX_CHARS = 4096
DISCORD_API = 'https://discord.com/api/v10'
DISCORD_MAX_CHARS = 2000
LINK_LABEL = '𝕏 : '
PARTIAL_ENTITY = re.compile(r'&[a-z]*$')


# ****************************************************************************************
# Functions
# ****************************************************************************************


def fit_escaped(text: str, max_chars: int) -> str:
    '''
    HTML-escape text and cut it so the escaped form fits in max_chars, never
    splitting an entity.
    '''
    escaped = escape_html(text)
    if len(escaped) <= max_chars:
        return escaped
    cut = PARTIAL_ENTITY.sub('', escaped[: max(max_chars - 3, 0)])
    return cut.rstrip() + '...'


# ****************************************************************************************
# Sinks
# ****************************************************************************************


class ChatSink:
    '''
    A destination that accepts relayed posts.

    send() never raises: every transport or API error is logged and reported as
    a False return so the caller only has to branch on the result.
    '''

    name = 'Sink'

    def __init__(self, session: requests.Session | None = None, heading: str = DEFAULT_POST_HEADING):
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        self.heading = heading

    def format_message(self, post: CandidatePost) -> str:
        raise NotImplementedError

    def _deliver(self, message: str) -> None:
        raise NotImplementedError

    def send(self, post: CandidatePost) -> bool:
        try:
            self._deliver(self.format_message(post))
        except (requests.RequestException, ValueError) as exc:
            log.error('Failed to send post %s to %s: %s', post.id, self.name, exc)
            return False
        log.info('Post %s sent to %s', post.id, self.name)
        return True

    def health_check(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        self.session.close()


class TelegramSink(ChatSink):
    name = 'Telegram'

    def __init__(
        self,
        settings: TelegramSettings,
        session: requests.Session | None = None,
        heading: str = DEFAULT_POST_HEADING,
    ):
        super().__init__(session=session, heading=heading)
        self.settings = settings

    def _url(self, method: str) -> str:
        return f'{TELEGRAM_API}/bot{self.settings.bot_token}/{method}'

    def _call(self, method: str, payload: dict | None = None) -> dict:
        if payload is None:
            response = self.session.get(self._url(method), timeout=REQUEST_TIMEOUT)
        else:
            response = self.session.post(self._url(method), json=payload, timeout=REQUEST_TIMEOUT)
        body = response.json() if response.content else {}
        if response.status_code >= 400 or not body.get('ok'):
            description = body.get('description') or response.text[:240]
            raise requests.HTTPError(
                f'Telegram {method} failed ({response.status_code}): {description}',
                response=response,
            )
        return body.get('result') or {}

    def format_message(self, post: CandidatePost) -> str:
        heading = f'<b>{escape_html(self.heading)}</b>'
        link = f'{LINK_LABEL}{escape_html(post.link)}'
        budget = TELEGRAM_MAX_CHARS - len(heading) - len(link) - 4
        return '\n'.join([heading, '', fit_escaped(post.text, budget), '', link])

    def _deliver(self, message: str) -> None:
        self._call(
            'sendMessage',
            {
                'chat_id': self.settings.channel_id,
                'text': message,
                'parse_mode': 'HTML',
                'link_preview_options': {'is_disabled': False},
            },
        )

    def health_check(self) -> bool:
        try:
            me = self._call('getMe')
        except (requests.RequestException, ValueError) as exc:
            log.error('Telegram bot health check failed: %s', exc)
            return False
        log.debug('Telegram bot health check passed for @%s', me.get('username'))
        return True


class DiscordSink(ChatSink):
    name = 'Discord'

    def __init__(
        self,
        settings: DiscordSettings,
        session: requests.Session | None = None,
        heading: str = DEFAULT_POST_HEADING,
        bot_name: str = DEFAULT_BOT_NAME,
    ):
        super().__init__(session=session, heading=heading)
        self.settings = settings
        self.bot_name = bot_name
        self.session.headers.update({'Authorization': f'Bot {settings.bot_token}'})

    def _post_message(self, channel_id: str, content: str) -> None:
        response = self.session.post(
            f'{DISCORD_API}/channels/{channel_id}/messages',
            json={'content': truncate(content, DISCORD_MAX_CHARS)},
            timeout=REQUEST_TIMEOUT,
        )
        if response.status_code == 429:
            log.warning('Discord rate limit hit: %s', response.text[:240])
        response.raise_for_status()

    def format_message(self, post: CandidatePost) -> str:
        return '\n'.join([
            f'**{self.heading}**',
            '',
            post.text,
            '',
            f'{LINK_LABEL}{post.link}',
        ])

    def _deliver(self, message: str) -> None:
        self._post_message(self.settings.channel_id, message)

    def send_alert(self, title: str, body: str) -> bool:
        alert_channel_id = self.settings.alert_channel_id
        if not alert_channel_id:
            log.debug('No alert channel configured, skipping alert')
            return False
        message = '\n'.join([
            f'⚠️ **ALERT: {self.bot_name}**',
            '',
            f'**{title}**',
            '',
            body,
            '',
            f'🕐 {utc_now_iso()}',
        ])
        try:
            self._post_message(alert_channel_id, message)
        except requests.RequestException as exc:
            log.error('Failed to send alert to Discord channel %s: %s', alert_channel_id, exc)
            return False
        log.info('Alert sent to Discord: %s', title)
        return True

    def health_check(self) -> bool:
        try:
            response = self.session.get(f'{DISCORD_API}/users/@me', timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            log.error('Discord health check failed: %s', exc)
            return False
        return response.status_code == 200
