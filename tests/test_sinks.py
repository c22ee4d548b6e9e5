##########################################################################################
#
# Script name: test_sinks.py
#
# Description: Telegram and Discord message formatting and failure reporting.
#
##########################################################################################

from datetime import datetime, timezone

import requests

from social_relay.config import DiscordSettings, TelegramSettings
from social_relay.models import CandidatePost
from social_relay.sinks import DISCORD_MAX_CHARS, TELEGRAM_MAX_CHARS, DiscordSink, TelegramSink


POST = CandidatePost(
    id='42',
    text='Rates <up> & yields down',
    link='https://x.com/example/status/42',
    published_at=datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: dict | None = None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {'ok': True, 'result': {}}
        self.content = b'{}'
        self.text = str(self.payload)

    def json(self) -> dict:
        return self.payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error', response=self)


class FakeSession:
    def __init__(self, response=None):
        self.response = response or FakeResponse()
        self.headers: dict[str, str] = {}
        self.posts: list[tuple[str, dict]] = []

    def post(self, url: str, json: dict, timeout: float):
        self.posts.append((url, json))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def get(self, url: str, timeout: float):
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def close(self) -> None:
        pass


def _telegram(session: FakeSession) -> TelegramSink:
    return TelegramSink(TelegramSettings(bot_token='token', channel_id='@channel'), session=session, heading='New Post')


def _discord(session: FakeSession, alert_channel_id: str = '') -> DiscordSink:
    settings = DiscordSettings(bot_token='token', channel_id='111', alert_channel_id=alert_channel_id)
    return DiscordSink(settings, session=session, heading='New Post', bot_name='Relay')


def test_telegram_message_escapes_html() -> None:
    message = _telegram(FakeSession()).format_message(POST)
    assert message.splitlines() == [
        '<b>New Post</b>',
        '',
        'Rates &lt;up&gt; &amp; yields down',
        '',
        '𝕏 : https://x.com/example/status/42',
    ]


def test_telegram_message_fits_limit_after_escaping() -> None:
    noisy = CandidatePost(id='7', text='&' * 5000, link=POST.link, published_at=POST.published_at)
    message = _telegram(FakeSession()).format_message(noisy)
    body = message.splitlines()[2]

    assert len(message) <= TELEGRAM_MAX_CHARS
    assert body.endswith('&amp;...')
    assert body.startswith('&amp;&amp;')


def test_telegram_send_posts_html_message() -> None:
    session = FakeSession()
    assert _telegram(session).send(POST) is True
    url, payload = session.posts[0]
    assert url.endswith('/bottoken/sendMessage')
    assert payload['chat_id'] == '@channel'
    assert payload['parse_mode'] == 'HTML'


def test_telegram_api_rejection_returns_false() -> None:
    session = FakeSession(FakeResponse(status_code=400, payload={'ok': False, 'description': 'chat not found'}))
    assert _telegram(session).send(POST) is False


def test_discord_send_network_error_returns_false() -> None:
    session = FakeSession(requests.ConnectionError('reset'))
    assert _discord(session).send(POST) is False


def test_discord_message_is_truncated_to_limit() -> None:
    session = FakeSession()
    long_post = CandidatePost(id='1', text='x' * 5000, link=POST.link, published_at=POST.published_at)
    assert _discord(session).send(long_post) is True
    url, payload = session.posts[0]
    assert url.endswith('/channels/111/messages')
    assert len(payload['content']) == DISCORD_MAX_CHARS
    assert session.headers['Authorization'] == 'Bot token'


def test_discord_alert_requires_alert_channel() -> None:
    session = FakeSession()
    assert _discord(session).send_alert('Title', 'Body') is False
    assert session.posts == []


def test_discord_alert_posts_to_alert_channel() -> None:
    session = FakeSession()
    assert _discord(session, alert_channel_id='999').send_alert('Feed down', 'Details') is True
    url, payload = session.posts[0]
    assert url.endswith('/channels/999/messages')
    assert payload['content'].startswith('⚠️ **ALERT: Relay**')
    assert '**Feed down**' in payload['content']
