from datetime import datetime
from dotted_dict import DottedDict
import pytest
import random
from slack_sdk.errors import SlackApiError
from zoneinfo import ZoneInfo

import coffeebot

TZ = ZoneInfo('America/New_York')


class FakeClient:
    '''Stands in for slack_sdk.WebClient, recording what the bot sends.'''

    def __init__(self):
        self.members = {}
        self.bots = set()
        self.workspace_admins = set()
        self.profiles = {}
        # method name -> Slack error code to raise
        self.errors = {}
        # (method, channel) -> Slack error code to raise
        self.channel_errors = {}
        # method name -> exceptions to raise on successive calls; None lets
        # that call through
        self.exceptions = {}
        self.opened = []
        self.posts = []

    def _check(self, method, channel=None):
        pending = self.exceptions.get(method)
        if pending:
            exc = pending.pop(0)
            if exc is not None:
                raise exc
        error = self.channel_errors.get((method, channel),
                self.errors.get(method))
        if error is not None:
            raise SlackApiError(f'{method} failed',
                    {'ok': False, 'error': error})

    def conversations_members(self, channel, limit=None):
        self._check('conversations_members', channel)
        if channel not in self.members:
            raise SlackApiError('not found',
                    {'ok': False, 'error': 'channel_not_found'})
        return [{'ok': True, 'members': list(self.members[channel])}]

    def conversations_info(self, channel):
        self._check('conversations_info', channel)
        return {'ok': True, 'channel': {
            'id': channel,
            'name': f'coffee-{channel.lower()}',
            'is_channel': True,
            'is_group': False,
            'is_archived': False,
        }}

    def users_info(self, user):
        self._check('users_info')
        return {'ok': True, 'user': {
            'id': user,
            'is_bot': user in self.bots,
            'is_admin': user in self.workspace_admins,
        }}

    def users_profile_get(self, user):
        self._check('users_profile_get')
        return {'ok': True, 'profile': {'fields': self.profiles.get(user)}}

    def conversations_open(self, users):
        self._check('conversations_open')
        self.opened.append(list(users))
        return {'ok': True, 'channel': {'id': f'G{len(self.opened)}'}}

    def chat_postMessage(self, channel, text, blocks=None):
        self._check('chat_postMessage', channel)
        self.posts.append({'channel': channel, 'text': text,
                'blocks': blocks or []})
        return {'ok': True}

    def posts_to(self, channel):
        return [p for p in self.posts if p['channel'] == channel]


def message_text(post):
    '''Flatten the mrkdwn text of a posted message.'''
    parts = [post['text']]
    for block in post['blocks']:
        if 'text' in block:
            parts.append(block['text']['text'])
        for field in block.get('fields', []) + block.get('elements', []):
            if isinstance(field.get('text'), str):
                parts.append(field['text'])
    return '\n'.join(parts)


@pytest.fixture
def config(tmp_path):
    return DottedDict({
        'database': str(tmp_path / 'coffeebot.db'),
        'timezone': 'America/New_York',
        'token': 'xoxb-test',
        'bot_id': 'UBOT',
        'admins': [],
    })


@pytest.fixture
def db(config):
    db = coffeebot.Database(config)
    yield db
    db.close()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def now():
    # a Monday morning
    return datetime(2026, 3, 2, 9, 0, tzinfo=TZ)


@pytest.fixture
def make_channel(config, client, db, now):
    '''Register a channel with the given members and return it.'''
    def make(id='C1', members=('U1', 'U2', 'U3', 'U4'), frequency_days=14,
            active=True, next_pairing=None, seed=1):
        client.members[id] = list(members)
        channel = coffeebot.Channel(config, client, db, id,
                rand=random.Random(seed))
        with db:
            channel.register(f'coffee-{id.lower()}', frequency_days)
            if active:
                db.set_channel_active(id, True)
                db.set_channel_schedule(id, None, next_pairing or now)
        channel.settings = db.get_channel_config(id)
        return channel
    return make


@pytest.fixture
def text_of():
    return message_text
