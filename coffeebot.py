#!/usr/bin/python3
#
# Apache 2.0 license

import argparse
from collections import OrderedDict, namedtuple
from croniter import croniter
from datetime import datetime, timedelta
from dotted_dict import DottedDict
from functools import wraps
from heapq import heappop, heappush
import itertools
import logging
import math
import os
import random
import re
import requests
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode import SocketModeClient
from slack_sdk.socket_mode.response import SocketModeResponse
import sqlite3
import time
import threading
import traceback
import yaml
from zoneinfo import ZoneInfo

logger = logging.getLogger('coffeebot')

HELP = '''
coffeebot periodically pairs up channel members for coffee chats, checks in
halfway through each round, and reports how many pairs actually met.
%commands%
Bot administrators are %admins%.
'''

DEFAULT_TIMEZONE = 'America/New_York'
DEFAULT_FREQUENCY_DAYS = 14
DEFAULT_RECENT_PAIRING_WEEKS = 6
MAX_FREQUENCY_DAYS = 365

ACTION_CONFIRM = 'coffee_chat_confirm_meetup'
ACTION_SKIP = 'coffee_chat_skip_next'
ACTION_OPT_OUT = 'coffee_chat_opt_out'
ACTION_OPT_IN = 'coffee_chat_opt_in'

ACTIVITIES = [
    'Grab coffee at a local café ☕',
    'Get lunch together 🍽️',
    'Take a walk around campus 🚶',
    'Play a board game 🎲',
    'Work together at a coffee shop 💻',
    'Grab bubble tea 🧋',
    'Check out a new restaurant 🍴',
    'Visit a local museum or gallery 🖼️',
    'Play video games together 🎮',
    'Go for a quick hike 🥾',
    'Grab ice cream 🍦',
    'Cook a meal together 👨‍🍳',
    'Attend a campus event 🎪',
    'Play pool or ping pong 🎱',
    'Do a workout or go to the gym together 💪',
    'Visit a bookstore 📚',
    'Try a new food spot 🍕',
    'Have a video call chat 📹',
    'Get breakfast or brunch 🥞',
    'Go rock climbing 🧗',
    'Visit a farmers market 🥕',
    'Watch a movie together 🎬',
    'Go bowling 🎳',
    'Visit a cat café 🐱',
    'Try an escape room 🔐',
    'Take a photography walk 📸',
    'Visit an arcade 🕹️',
    'Go thrifting or vintage shopping 👗',
    'Attend a concert or live music event 🎵',
    'Play frisbee or catch 🥏',
    'Visit a botanical garden 🌺',
    'Go for a bike ride 🚴',
    'Attend a trivia night 🧠',
    'Visit a local bakery 🥐',
    'Play cards or a deck game 🃏',
    'Go to a sports game 🏀',
    'Visit a rooftop or scenic viewpoint 🌆',
    'Explore local street art or murals 🎨',
]

# hosted booking pages people tend to put in their profile fields
SCHEDULING_PATTERNS = [
    re.compile(r'calendly\.com/[\w-]+', re.I),
    re.compile(r'cal\.com/[\w-]+', re.I),
    re.compile(r'savvycal\.com/[\w-]+', re.I),
    re.compile(r'tidycal\.com/[\w-]+', re.I),
    re.compile(r'zcal\.co/[\w-]+', re.I),
    re.compile(r'schedule\.(?:once|now)/[\w-]+', re.I),
]


def format_uids(uids):
    uidlist = [f'<@{uid}>' for uid in uids]
    if len(uids) == 2:
        return ' and '.join(uidlist)
    if len(uids) > 2:
        uidlist[-1] = 'and ' + uidlist[-1]
    return ', '.join(uidlist)


def plural(count, word, suffix='s'):
    return f'{count} {word}{"" if count == 1 else suffix}'


def ordinal(n):
    if 10 <= n % 100 <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
    return f'{n}{suffix}'


def format_day(dt):
    '''Return e.g. "Monday, March 2nd".'''
    return f'{dt:%A, %B} {ordinal(dt.day)}'


def format_short_day(dt):
    '''Return e.g. "Monday (Mar 2nd)".'''
    return f'{dt:%A (%b} {ordinal(dt.day)})'


def frequency_str(days):
    '''Return a string describing a pairing cadence.'''
    return {
        7: 'weekly',
        14: 'biweekly',
        30: 'monthly',
    }.get(days, f'every {days} days')


def get_timezone(config):
    return ZoneInfo(config.get('timezone', DEFAULT_TIMEZONE))


def current_time(config):
    return datetime.now(get_timezone(config))


def start_of_day(dt):
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(dt):
    # whole seconds, since the database stores integer timestamps
    return dt.replace(hour=23, minute=59, second=59, microsecond=0)


def pair_key(uids):
    '''Return the canonical key identifying a group of users.'''
    return '-'.join(sorted(uids))


ChannelConfig = namedtuple('ChannelConfig',
        ['id', 'name', 'active', 'frequency_days', 'last_pairing',
        'next_pairing'],
        defaults=[False, DEFAULT_FREQUENCY_DAYS, None, None])


class Pairing(namedtuple('Pairing',
        ['id', 'channel', 'users', 'created', 'due', 'conversation',
        'reminder_sent', 'confirmed'],
        defaults=[None, False, False])):
    __slots__ = ()

    def is_active(self, now):
        '''A pairing stays active through the end of its due date.'''
        return now <= self.due


class UserPreference(namedtuple('UserPreference',
        ['channel', 'user', 'opted_in', 'skip_next'],
        defaults=[True, False])):
    __slots__ = ()

    @property
    def excluded(self):
        '''True if the user should be left out of the next round.'''
        return not self.opted_in or self.skip_next


Stats = namedtuple('Stats',
        ['period_start', 'period_end', 'pairings', 'confirmed',
        'participants', 'members'])


def participation_rate(stats):
    '''Return the percentage of members who met someone, as a string.'''
    if stats.members == 0:
        return '0.0'
    return f'{len(stats.participants) / stats.members * 100:.2f}'


class MembershipFetchError(Exception):
    '''Channel membership could not be retrieved from Slack.'''
    pass


class Database:
    def __init__(self, config):
        self._tz = get_timezone(config)
        # we pass Database objects between threads
        self._db = sqlite3.connect(config.database, check_same_thread=False)
        with self:
            self._db.execute('pragma foreign_keys = on')
            ver = self._db.execute('pragma user_version').fetchone()[0]
            if ver < 1:
                self._db.execute('create table events '
                        '(added integer not null, '
                        'channel text not null, '
                        'ident text not null)')
                self._db.execute('create unique index events_unique '
                        'on events (channel, ident)')

                self._db.execute('create table channels '
                        '(channel text unique not null, '
                        'name text not null, '
                        'active integer not null, '
                        'frequency_days integer not null, '
                        'last_pairing integer, '
                        'next_pairing integer)')

                self._db.execute('create table pairings '
                        '(id integer primary key, '
                        'channel text not null references channels(channel), '
                        'created integer not null, '
                        'due integer not null, '
                        'conversation text, '
                        'reminder_sent integer not null default 0, '
                        'confirmed integer not null default 0)')
                self._db.execute('create index pairings_channel '
                        'on pairings (channel, created)')

                self._db.execute('create table pairing_members '
                        '(pairing integer not null '
                        'references pairings(id) on delete cascade, '
                        'position integer not null, '
                        'user text not null)')
                self._db.execute('create unique index pairing_members_unique '
                        'on pairing_members (pairing, position)')
                self._db.execute('create index pairing_members_user '
                        'on pairing_members (user)')

                self._db.execute('create table preferences '
                        '(channel text not null, '
                        'user text not null, '
                        'opted_in integer not null default 1, '
                        'skip_next integer not null default 0)')
                self._db.execute('create unique index preferences_unique '
                        'on preferences (channel, user)')

                self._db.execute('pragma user_version = 1')

    def __enter__(self):
        '''Start a database transaction.'''
        self._db.__enter__()
        return self

    def __exit__(self, exc_type, exc_value, tb):
        '''Commit or abort a database transaction.'''
        return self._db.__exit__(exc_type, exc_value, tb)

    def close(self):
        self._db.close()

    def _time(self, timestamp):
        if timestamp is None:
            return None
        return datetime.fromtimestamp(timestamp, self._tz)

    @staticmethod
    def _timestamp(dt):
        if dt is None:
            return None
        return int(dt.timestamp())

    def add_event(self, channel, ident):
        '''Return False if the event is already present.'''
        try:
            self._db.execute('insert into events (added, channel, ident) '
                    'values (?, ?, ?)', (int(time.time()), channel, ident))
            return True
        except sqlite3.IntegrityError:
            return False

    def prune_events(self, max_age=3600):
        self._db.execute('delete from events where added < ?',
                (int(time.time() - max_age),))

    # Channels

    _CHANNEL_COLUMNS = ('channel, name, active, frequency_days, '
            'last_pairing, next_pairing')

    def _channel_config(self, row):
        return ChannelConfig(id=row[0], name=row[1], active=bool(row[2]),
                frequency_days=row[3], last_pairing=self._time(row[4]),
                next_pairing=self._time(row[5]))

    def add_channel(self, channel, name, frequency_days):
        '''Return False if the channel is already registered.'''
        try:
            self._db.execute('insert into channels '
                    '(channel, name, active, frequency_days) '
                    'values (?, ?, 0, ?)', (channel, name, frequency_days))
            return True
        except sqlite3.IntegrityError:
            return False

    def get_channel_config(self, channel):
        res = self._db.execute(f'select {self._CHANNEL_COLUMNS} '
                'from channels where channel == ?', (channel,)).fetchone()
        if res is None:
            return None
        return self._channel_config(res)

    def get_channel_configs(self, active=None, due_by=None):
        '''Return registered channels, optionally only active ones and/or
        those whose next pairing is at or before due_by.'''
        clauses = []
        params = []
        if active is not None:
            clauses.append('active == ?')
            params.append(int(active))
        if due_by is not None:
            clauses.append('next_pairing <= ?')
            params.append(self._timestamp(due_by))
        where = f' where {" and ".join(clauses)}' if clauses else ''
        res = self._db.execute(f'select {self._CHANNEL_COLUMNS} '
                f'from channels{where} order by name', params).fetchall()
        return [self._channel_config(r) for r in res]

    def set_channel_active(self, channel, active):
        self._db.execute('update channels set active = ? where channel == ?',
                (int(active), channel))

    def set_channel_schedule(self, channel, last_pairing, next_pairing):
        self._db.execute('update channels set last_pairing = ?, '
                'next_pairing = ? where channel == ?',
                (self._timestamp(last_pairing),
                self._timestamp(next_pairing), channel))

    def reset_channel(self, channel):
        '''Delete pairings and preferences for the channel and clear its
        schedule.  Return (pairings deleted, preferences deleted).'''
        pairings = self._db.execute('delete from pairings where channel == ?',
                (channel,)).rowcount
        preferences = self._db.execute('delete from preferences '
                'where channel == ?', (channel,)).rowcount
        self.set_channel_schedule(channel, None, None)
        return pairings, preferences

    # Pairings

    _PAIRING_COLUMNS = ('id, channel, created, due, conversation, '
            'reminder_sent, confirmed')

    def _pairings(self, rows):
        pairings = []
        for row in rows:
            users = [r[0] for r in self._db.execute('select user '
                    'from pairing_members where pairing == ? '
                    'order by position', (row[0],)).fetchall()]
            pairings.append(Pairing(id=row[0], channel=row[1], users=users,
                    created=self._time(row[2]), due=self._time(row[3]),
                    conversation=row[4], reminder_sent=bool(row[5]),
                    confirmed=bool(row[6])))
        return pairings

    def add_pairing(self, channel, users, created, due):
        cur = self._db.execute('insert into pairings (channel, created, due) '
                'values (?, ?, ?)',
                (channel, self._timestamp(created), self._timestamp(due)))
        id = cur.lastrowid
        self._db.executemany('insert into pairing_members '
                '(pairing, position, user) values (?, ?, ?)',
                [(id, i, user) for i, user in enumerate(users)])
        return Pairing(id=id, channel=channel, users=list(users),
                created=self._time(self._timestamp(created)),
                due=self._time(self._timestamp(due)))

    def get_pairing(self, id):
        res = self._db.execute(f'select {self._PAIRING_COLUMNS} '
                'from pairings where id == ?', (id,)).fetchall()
        pairings = self._pairings(res)
        return pairings[0] if pairings else None

    def get_pairings(self, channel, created_since=None, created_until=None,
            due_since=None, due_until=None, reminder_sent=None,
            confirmed=None, has_conversation=None):
        '''Return pairings for a channel matching every supplied filter.
        Time bounds are inclusive.'''
        clauses = ['channel == ?']
        params = [channel]
        for column, op, value in (
                ('created', '>=', created_since),
                ('created', '<=', created_until),
                ('due', '>=', due_since),
                ('due', '<=', due_until)):
            if value is not None:
                clauses.append(f'{column} {op} ?')
                params.append(self._timestamp(value))
        for column, value in (
                ('reminder_sent', reminder_sent),
                ('confirmed', confirmed)):
            if value is not None:
                clauses.append(f'{column} == ?')
                params.append(int(value))
        if has_conversation is not None:
            clauses.append('conversation is '
                    f'{"not " if has_conversation else ""}null')
        res = self._db.execute(f'select {self._PAIRING_COLUMNS} '
                f'from pairings where {" and ".join(clauses)} '
                'order by created, id', params).fetchall()
        return self._pairings(res)

    def get_user_pairings(self, user, channel=None):
        '''Return the user's pairings, newest first.'''
        query = ('select p.id, p.channel, p.created, p.due, '
                'p.conversation, p.reminder_sent, p.confirmed '
                'from pairings p join pairing_members m on m.pairing == p.id '
                'where m.user == ?')
        params = [user]
        if channel is not None:
            query += ' and p.channel == ?'
            params.append(channel)
        query += ' order by p.created desc, p.id desc'
        return self._pairings(self._db.execute(query, params).fetchall())

    def set_pairing_conversation(self, id, conversation):
        self._db.execute('update pairings set conversation = ? '
                'where id == ?', (conversation, id))

    def set_pairing_reminder_sent(self, id):
        self._db.execute('update pairings set reminder_sent = 1 '
                'where id == ?', (id,))

    def confirm_pairing(self, id):
        self._db.execute('update pairings set confirmed = 1 where id == ?',
                (id,))

    # Preferences

    def get_preference(self, channel, user):
        res = self._db.execute('select opted_in, skip_next '
                'from preferences where channel == ? and user == ?',
                (channel, user)).fetchone()
        if res is None:
            return UserPreference(channel=channel, user=user)
        return UserPreference(channel=channel, user=user,
                opted_in=bool(res[0]), skip_next=bool(res[1]))

    def get_preferences(self, channel):
        res = self._db.execute('select user, opted_in, skip_next '
                'from preferences where channel == ?', (channel,)).fetchall()
        return [UserPreference(channel=channel, user=r[0],
                opted_in=bool(r[1]), skip_next=bool(r[2])) for r in res]

    def set_preference(self, channel, user, **changes):
        '''Upsert the user's preference row, changing only the supplied
        fields.'''
        pref = self.get_preference(channel, user)._replace(**changes)
        self._db.execute('insert into preferences '
                '(channel, user, opted_in, skip_next) values (?, ?, ?, ?) '
                'on conflict (channel, user) do update set '
                'opted_in = excluded.opted_in, '
                'skip_next = excluded.skip_next',
                (channel, user, int(pref.opted_in), int(pref.skip_next)))
        return pref

    def clear_skip_flags(self, channel):
        '''Return the number of flags cleared.'''
        res = self._db.execute('update preferences set skip_next = 0 '
                'where channel == ? and skip_next != 0', (channel,))
        return res.rowcount


class Grouping:
    '''One round of coffee chat groups for one channel.'''

    def __init__(self, uids, recent_keys=frozenset(), rand=random):
        uids = list(uids)
        rand.shuffle(uids)
        self.groups = []
        # keys of pairs we had to repeat because nobody else was left
        self.repeats = []
        while len(uids) >= 2:
            uid = uids.pop(0)
            for i, partner in enumerate(uids):
                if pair_key((uid, partner)) not in recent_keys:
                    break
            else:
                i = 0
                self.repeats.append(pair_key((uid, uids[0])))
            self.groups.append([uid, uids.pop(i)])
        # Don't leave anyone out; the last pair becomes a trio.
        if uids and self.groups:
            self.groups[-1].extend(uids)

    @classmethod
    def selftest(cls):
        def t(total, lengths, recent=()):
            uids = [f'U{i}' for i in range(1, total + 1)]
            grouping = cls(uids, set(recent))
            actual_lengths = [len(g) for g in grouping.groups]
            if lengths != actual_lengths:
                raise Exception(f'Self-test failed: expected lengths {lengths}, found {actual_lengths}')
            found = sorted(itertools.chain.from_iterable(grouping.groups))
            if found != sorted(uids if total >= 2 else []):
                raise Exception(f'Self-test failed: grouped {found} from {uids}')
        t(0, [])
        t(1, [])
        t(2, [2])
        t(2, [2], recent=['U1-U2'])
        t(3, [3])
        t(4, [2, 2])
        t(4, [2, 2], recent=['U1-U2', 'U3-U4'])
        t(5, [2, 3])
        t(6, [2, 2, 2])
        t(7, [2, 2, 3])


def _section(text):
    return {
        'type': 'section',
        'text': {'type': 'mrkdwn', 'text': text},
    }


def _button(text, action_id, value, style=None):
    button = {
        'type': 'button',
        'text': {'type': 'plain_text', 'text': text},
        'action_id': action_id,
        'value': str(value),
    }
    if style is not None:
        button['style'] = style
    return button


def pairing_buttons(pairing):
    return {
        'type': 'actions',
        'elements': [
            _button('✅ We Met!', ACTION_CONFIRM, pairing.id, 'primary'),
            _button('⏭️ Skip Next Time', ACTION_SKIP, pairing.channel),
            _button('⏸️ Pause Future Pairings', ACTION_OPT_OUT,
                    pairing.channel, 'danger'),
        ],
    }


def scheduling_links_section(links):
    lines = [f'• <@{uid}>: {link}' for uid, link in links]
    return _section(':link: *Scheduling Links:*\n' + '\n'.join(lines))


class Channel:
    # Database transactions must be supplied by the caller.

    def __init__(self, config, client, db, id, rand=random):
        self._config = config
        self._client = client
        self._db = db
        self._rand = rand
        self.id = id
        self.settings = db.get_channel_config(id)

    @classmethod
    def get_channels(cls, config, client, db, active=None, due_by=None,
            rand=random):
        '''Get registered channels, optionally filtered.'''
        return [cls(config, client, db, settings.id, rand=rand)
                for settings in db.get_channel_configs(active=active,
                due_by=due_by)]

    @staticmethod
    def have_access(client, id):
        '''Return True if we have Slack API access to the specified channel.'''
        try:
            info = DottedDict(client.conversations_info(channel=id)['channel'])
            return ((info.is_channel or info.is_group) and not info.is_archived)
        except SlackApiError as e:
            # might get missing_scope for IM/MPIM conversations
            if e.response['error'] in ('channel_not_found', 'missing_scope'):
                return False
            else:
                raise

    @property
    def registered(self):
        return self.settings is not None

    @property
    def name(self):
        if self.settings is None:
            return self.id
        return self.settings.name

    def _now(self, now):
        if now is None:
            return current_time(self._config)
        return now

    def register(self, name, frequency_days=None):
        '''Register the channel, initially paused.  Return False if it was
        already registered.'''
        if frequency_days is None:
            frequency_days = self._config.get('default_frequency_days',
                    DEFAULT_FREQUENCY_DAYS)
        if not self._db.add_channel(self.id, name, frequency_days):
            logger.info(f'Channel {self.name} already registered for coffee chats')
            return False
        self.settings = self._db.get_channel_config(self.id)
        logger.info(f'Registered {name} for {frequency_str(frequency_days)} coffee chats')
        return True

    def members(self):
        '''Return the channel's human members.  Raise MembershipFetchError
        if Slack won't tell us.'''
        try:
            uids = []
            for resp in self._client.conversations_members(channel=self.id,
                    limit=200):
                uids.extend(resp['members'])
            return [uid for uid in uids if not self._is_bot(uid)]
        except SlackApiError as e:
            raise MembershipFetchError(f'Failed to get members for channel {self.id}: {e.response["error"]}') from e

    def _is_bot(self, uid):
        user = self._client.users_info(user=uid)['user']
        return bool(user.get('is_bot', False))

    def eligible_members(self):
        '''Return members who haven't opted out or asked to skip the next
        round.'''
        members = self.members()
        excluded = {pref.user for pref in self._db.get_preferences(self.id)
                if pref.excluded}
        return [uid for uid in members if uid not in excluded]

    def recent_pair_keys(self, now=None):
        '''Return keys for every pair of users grouped together within the
        lookback window.'''
        now = self._now(now)
        weeks = self._config.get('recent_pairing_weeks',
                DEFAULT_RECENT_PAIRING_WEEKS)
        keys = set()
        for pairing in self._db.get_pairings(self.id,
                created_since=now - timedelta(weeks=weeks)):
            for pair in itertools.combinations(pairing.users, 2):
                keys.add(pair_key(pair))
        return keys

    def scheduling_link(self, uid):
        '''Return a booking link from the user's profile fields, or None.'''
        try:
            profile = self._client.users_profile_get(user=uid)['profile']
        except SlackApiError as e:
            logger.warning(f'Error fetching scheduling link for user {uid}: {e.response["error"]}')
            return None
        except Exception:
            logger.exception(f'Error fetching scheduling link for user {uid}')
            return None
        for field in (profile.get('fields') or {}).values():
            value = (field or {}).get('value')
            if not isinstance(value, str):
                continue
            for pattern in SCHEDULING_PATTERNS:
                match = pattern.search(value)
                if match:
                    return 'https://' + match.group(0)
        return None

    def scheduling_links(self, uids):
        links = [(uid, self.scheduling_link(uid)) for uid in uids]
        return [(uid, link) for uid, link in links if link is not None]

    def create_round(self, now=None):
        '''Pair up eligible members, notify each group, and schedule the
        next round.  Return the new pairings, or None if no round was
        created.'''
        now = self._now(now)
        active = self._db.get_pairings(self.id, due_since=now)
        if active:
            logger.info(f'Channel {self.name} already has {plural(len(active), "active pairing")}; not creating another round')
            return None

        logger.info(f'Creating coffee chats for channel {self.name}')
        try:
            members = self.eligible_members()
        except MembershipFetchError as e:
            logger.warning(f'{e}; skipping round')
            return None
        if len(members) < 2:
            logger.info(f'Not enough members in {self.name} for coffee chats (need at least 2)')
            return None

        grouping = Grouping(members, self.recent_pair_keys(now),
                rand=self._rand)
        if grouping.repeats:
            logger.info(f'Repeated {plural(len(grouping.repeats), "recent pair")} in {self.name}: {", ".join(grouping.repeats)}')

        frequency = self.settings.frequency_days
        due = end_of_day(now + timedelta(days=frequency - 1))
        pairings = []
        for uids in grouping.groups:
            pairing = self._db.add_pairing(self.id, uids, now, due)
            conversation = self._announce(pairing)
            if conversation is not None:
                self._db.set_pairing_conversation(pairing.id, conversation)
                pairing = pairing._replace(conversation=conversation)
            pairings.append(pairing)
        logger.info(f'Created {plural(len(pairings), "pairing")} for {self.name}')

        next_pairing = start_of_day(now + timedelta(days=frequency))
        self._db.set_channel_schedule(self.id, now, next_pairing)
        self.settings = self.settings._replace(last_pairing=now,
                next_pairing=next_pairing)

        cleared = self._db.clear_skip_flags(self.id)
        if cleared:
            logger.info(f'Cleared skip flags for {plural(cleared, "user")} in {self.name}')

        self._post_round_summary(len(pairings), next_pairing)
        return pairings

    def _announce(self, pairing):
        '''Open a group DM for the pairing and introduce everyone.  Return
        the conversation ID, or None on failure.'''
        mentions = format_uids(pairing.users)
        blocks = [
            _section(f":tada: Hey {mentions}!  You've been paired for a coffee chat. ☕"),
            _section(f':bulb: *Suggested activity:* {self._rand.choice(ACTIVITIES)}\n\n'
                    'Take some time over the next few days to connect and get to know each other better!'),
            _section(f':calendar: *Meet by:* {format_day(pairing.due)}'),
            _section("📸 *Don't forget to snap some photos!*  Share them in "
                    f'<#{self.id}> to celebrate your meetup!'),
        ]
        links = self.scheduling_links(pairing.users)
        if links:
            blocks.append(scheduling_links_section(links))
        blocks.append(pairing_buttons(pairing))
        try:
            cid = self._client.conversations_open(
                    users=pairing.users)['channel']['id']
            self._client.chat_postMessage(channel=cid,
                    text=f"Hey {mentions}!  You've been paired for a coffee chat. ☕",
                    blocks=blocks)
        except SlackApiError as e:
            logger.warning(f'Failed to notify pairing {pairing.id} ({", ".join(pairing.users)}): {e.response["error"]}')
            return None
        except Exception:
            logger.exception(f'Failed to notify pairing {pairing.id} ({", ".join(pairing.users)})')
            return None
        return cid

    def _post_round_summary(self, count, next_pairing):
        blocks = [
            _section(f':tada: Hooray!  I just created {plural(count, "coffee chat pairing")} a few moments ago.'),
            _section(f':coffee: Have fun meeting with your coffee chat partner{"s" if count > 1 else ""} :slightly_smiling_face:'),
            _section(f':calendar: Your next scheduled pairing is on {format_short_day(next_pairing)}.'),
        ]
        try:
            self._client.chat_postMessage(channel=self.id,
                    text='Coffee chat pairings have been created!',
                    blocks=blocks)
        except SlackApiError as e:
            logger.warning(f'Failed to announce round in {self.name}: {e.response["error"]}')
        except Exception:
            logger.exception(f'Failed to announce round in {self.name}')

    def start(self, now=None):
        '''Activate the channel and create its first round.  Return the
        new pairings, or None if no round was created.'''
        now = self._now(now)
        if not self.registered:
            logger.info(f'Channel {self.id} is not registered for coffee chats')
            return None
        if not self.settings.active:
            self._db.set_channel_active(self.id, True)
            logger.info(f'Activated coffee chats for channel {self.name}')
        next_pairing = start_of_day(now + timedelta(
                days=self.settings.frequency_days))
        self._db.set_channel_schedule(self.id, now, next_pairing)
        self.settings = self.settings._replace(active=True,
                last_pairing=now, next_pairing=next_pairing)
        return self.create_round(now)

    def pause(self):
        '''Stop scheduling rounds.  Existing pairings are left alone.'''
        if not self.registered:
            return False
        self._db.set_channel_active(self.id, False)
        self.settings = self.settings._replace(active=False)
        logger.info(f'Paused coffee chats for channel {self.name}')
        return True

    def reset(self):
        '''Delete all pairings and preferences and clear the schedule.
        Return (pairings deleted, preferences deleted).'''
        pairings, preferences = self._db.reset_channel(self.id)
        if self.registered:
            self.settings = self.settings._replace(last_pairing=None,
                    next_pairing=None)
        logger.info(f'Reset coffee chats for channel {self.name}: deleted {plural(pairings, "pairing")} and {plural(preferences, "preference")}')
        return pairings, preferences

    def opt_out(self, user):
        self._db.set_preference(self.id, user, opted_in=False,
                skip_next=False)
        logger.info(f'User {user} opted out of coffee chats in {self.name}')

    def opt_in(self, user):
        self._db.set_preference(self.id, user, opted_in=True,
                skip_next=False)
        logger.info(f'User {user} opted into coffee chats in {self.name}')

    def skip_next(self, user):
        self._db.set_preference(self.id, user, skip_next=True)
        logger.info(f'User {user} will skip the next pairing in {self.name}')

    def is_opted_in(self, user):
        return self._db.get_preference(self.id, user).opted_in

    def send_reminders(self, now=None):
        '''Nudge groups that are halfway through their round and haven't
        met yet.  Return the number of reminders sent.'''
        now = self._now(now)
        midway = now - timedelta(days=self.settings.frequency_days // 2)
        pairings = self._db.get_pairings(self.id,
                created_since=midway - timedelta(hours=24),
                created_until=midway + timedelta(hours=24),
                reminder_sent=False, confirmed=False, has_conversation=True)
        logger.info(f'Found {plural(len(pairings), "pairing")} needing a midway reminder in {self.name}')
        sent = 0
        for pairing in pairings:
            try:
                self._remind(pairing, now)
            except Exception:
                logger.exception(f'Error sending reminder to pairing {pairing.id}')
                continue
            sent += 1
        return sent

    def _remind(self, pairing, now):
        mentions = format_uids(pairing.users)
        hours = int((pairing.due - now).total_seconds() / 3600)
        days = math.ceil(hours / 24)
        blocks = [
            _section(f'Hey {mentions}! 👋'),
            _section('Just a friendly reminder about your coffee chat!  '
                    f'You have about {plural(days, "day")} left to connect. ☕\n\n'
                    f"Don't forget to share any photos you take together in <#{pairing.channel}>!"),
        ]
        links = self.scheduling_links(pairing.users)
        if links:
            blocks.append(scheduling_links_section(links))
        blocks.append(pairing_buttons(pairing))
        self._client.chat_postMessage(channel=pairing.conversation,
                text=f'Hey {mentions}!  Just a friendly reminder about your coffee chat. ☕',
                blocks=blocks)
        self._db.set_pairing_reminder_sent(pairing.id)
        logger.info(f'Sent midway reminder to pairing {pairing.id} ({", ".join(pairing.users)})')

    def get_stats(self, now=None):
        '''Summarize the most recently completed round, or return None if
        no round finished during the last cycle.'''
        today = start_of_day(self._now(now))
        period_start = today - timedelta(days=self.settings.frequency_days)
        pairings = self._db.get_pairings(self.id, due_since=period_start,
                due_until=today)
        if not pairings:
            return None
        confirmed = [p for p in pairings if p.confirmed]
        participants = set(itertools.chain.from_iterable(
                p.users for p in confirmed))
        return Stats(period_start=period_start, period_end=today,
                pairings=len(pairings), confirmed=len(confirmed),
                participants=participants, members=len(self.members()))

    def report_stats(self, now=None):
        '''Post stats for the most recent round to the channel.  Return the
        Stats, or None if there was nothing to report.'''
        now = self._now(now)
        try:
            stats = self.get_stats(now)
        except MembershipFetchError as e:
            logger.warning(f'{e}; not reporting stats')
            return None
        if stats is None:
            return None
        days = self.settings.frequency_days
        blocks = [
            {
                'type': 'header',
                'text': {
                    'type': 'plain_text',
                    'text': '☕ Coffee Chat Stats',
                    'emoji': True,
                },
            },
            {
                'type': 'section',
                'fields': [
                    {'type': 'mrkdwn', 'text': f'*Pairings Created:*\n{stats.pairings}'},
                    {'type': 'mrkdwn', 'text': f'*Unique Participants:*\n{len(stats.participants)} of {stats.members}'},
                    {'type': 'mrkdwn', 'text': f'*Participation Rate:*\n{participation_rate(stats)}%'},
                    {'type': 'mrkdwn', 'text': f'*Completed Pairings:*\n{stats.confirmed} of {stats.pairings}'},
                ],
            },
            {
                'type': 'context',
                'elements': [
                    {'type': 'mrkdwn', 'text': f'Stats from the past {plural(days, "day")} • {now:%B} {now.day}, {now.year}'},
                ],
            },
        ]
        try:
            self._client.chat_postMessage(channel=self.id,
                    text='Coffee Chat Stats', blocks=blocks)
        except SlackApiError as e:
            logger.warning(f'Failed to post stats to {self.name}: {e.response["error"]}')
            return None
        logger.info(f'Posted stats for channel {self.name}')
        return stats


def confirm_meetup(db, pairing_id):
    '''Record that a group met.  Return False if there is no such
    pairing.'''
    pairing = db.get_pairing(pairing_id)
    if pairing is None:
        return False
    if not pairing.confirmed:
        db.confirm_pairing(pairing_id)
        logger.info(f'Meetup confirmed for pairing {pairing_id} ({", ".join(pairing.users)})')
    return True


class HandledError(Exception):
    '''An exception which should just be swallowed.'''
    pass


class Fail(Exception):
    '''An exception with a message that should be displayed to the user.'''
    pass


def report_errors(f):
    '''Decorator that logs exceptions, sends them to administrators via
    Slack DM, and then swallows them.  The first argument of the function
    must be the config.'''
    import socket, urllib.error
    @wraps(f)
    def wrapper(config, *args, **kwargs):
        def send(message):
            if not config.get('admins'):
                return
            try:
                client = WebClient(token=config.token)
                channel = client.conversations_open(users=config.admins)['channel']['id']
                client.chat_postMessage(channel=channel, text=message)
            except Exception:
                logger.exception('Failed to report error to admins')
        try:
            return f(config, *args, **kwargs)
        except Fail as e:
            # Nothing else caught this; just report the error string.
            logger.warning(str(e))
            send(str(e))
        except HandledError:
            pass
        except (requests.ConnectionError, requests.HTTPError, requests.ReadTimeout) as e:
            # Assume transient network problem; don't send message.
            logger.warning(f'Network error: {e}')
        except (socket.timeout, urllib.error.URLError) as e:
            # Exception type leaked from the slack_sdk API.  Assume transient
            # network problem; don't send message.
            logger.warning(f'Network error: {e}')
        except Exception:
            logger.exception(f'Caught exception in {f.__name__}')
            send(f'Caught exception:\n```\n{traceback.format_exc()}```')
    return wrapper


def _for_each_channel(config, db, channels, fn):
    '''Run fn on each channel in its own transaction, so that one channel's
    failure doesn't affect the others.'''
    @report_errors
    def handle_one(_config, channel):
        with db:
            fn(channel)
    for channel in channels:
        handle_one(config, channel)


def create_due_rounds(config, client, db, now=None, rand=random):
    '''Create rounds for every active channel whose next pairing is due.
    Return the number of channels processed.'''
    if now is None:
        now = current_time(config)
    with db:
        channels = Channel.get_channels(config, client, db, active=True,
                due_by=now, rand=rand)
    if not channels:
        logger.info('No coffee chat channels are due for pairing')
        return 0
    logger.info(f'Processing {plural(len(channels), "channel")} due for pairing')
    _for_each_channel(config, db, channels,
            lambda channel: channel.create_round(now))
    return len(channels)


def send_midway_reminders(config, client, db, now=None):
    '''Send midpoint reminders in every active channel.'''
    if now is None:
        now = current_time(config)
    with db:
        channels = Channel.get_channels(config, client, db, active=True)
    _for_each_channel(config, db, channels,
            lambda channel: channel.send_reminders(now))
    logger.info('Completed midway reminders')


def report_stats(config, client, db, now=None, due_only=False):
    '''Post stats for the latest completed round in every active
    channel.  With due_only, only report for channels about to start a
    new round.'''
    if now is None:
        now = current_time(config)
    with db:
        channels = Channel.get_channels(config, client, db, active=True,
                due_by=now if due_only else None)
    if not channels:
        logger.info('No active coffee chat channels to report stats for')
        return
    logger.info(f'Reporting stats for {plural(len(channels), "channel")}')
    _for_each_channel(config, db, channels,
            lambda channel: channel.report_stats(now))


class Registry(type):
    '''Metaclass that creates a dict of functions registered with the
    register decorator.'''

    def __new__(cls, name, bases, attrs):
        cls = super().__new__(cls, name, bases, attrs)
        registry = []
        for f in attrs.values():
            command = getattr(f, 'command', None)
            if command is not None:
                registry.append((command, f))
        registry.sort(key=lambda t: t[1].doc_order)
        cls._registry = OrderedDict(registry)
        return cls


_doc_order = itertools.count()


def register(command, args=(), optargs=(), group=None, doc=None,
        affects_channel=True, admin=False):
    '''Decorator that registers the subcommand or action handled by a
    function.'''
    def decorator(f):
        f.command = command
        f.args = args
        f.optargs = optargs
        f.group = group
        f.doc = doc
        f.doc_order = next(_doc_order)
        f.affects_channel = affects_channel
        f.admin = admin
        return f
    return decorator


class Handler(metaclass=Registry):
    '''Wrapper class to handle a single Slack request in an OS thread, with
    exception handling.'''

    def __init__(self, config, payload, client=None, db=None):
        self._config = config
        self._payload = payload
        self._client = client or WebClient(token=config.token)
        self._db = db or Database(config)
        self._called = False

    def __call__(self):
        assert not self._called
        self._called = True

        @report_errors
        def wrapper(_config):
            self.handle()
        # report_errors() requires the config to be the first argument
        threading.Thread(target=wrapper, args=(self._config,)).start()

    def handle(self):
        raise NotImplementedError

    def _channel(self, id, registered=False):
        channel = Channel(self._config, self._client, self._db, id)
        if registered and not channel.registered:
            raise Fail(f'<#{id}> is not registered for coffee chats.  An admin can register it with `/coffee register`.')
        return channel


class CommandHandler(Handler):
    '''Handler for the /coffee slash command.'''

    GROUP_DEFAULT = 'User commands'
    GROUP_ADMIN = 'Admin commands'

    def handle(self):
        '''Run the command.  Raise HandledError if the user has already been
        told about a failure.'''
        try:
            with self._db:
                args = self._payload.text.strip().split()
                try:
                    f = self._registry[args.pop(0)]
                except (KeyError, IndexError):
                    raise Fail(f"I didn't understand that.  Try `{self._payload.command} help`.")
                if not len(f.args) <= len(args) <= len(f.args) + len(f.optargs):
                    if f.args or f.optargs:
                        raise Fail(f'Bad arguments; expect `{self._argdesc(f)}`.')
                    else:
                        raise Fail('This command takes no arguments.')
                if f.admin and not self._is_admin():
                    raise Fail('This command is limited to coffeebot administrators.')
                if f.affects_channel:
                    if not Channel.have_access(self._client,
                            self._payload.channel_id):
                        raise Fail(f"I don't have access to this channel.  Try typing `/invite <@{self._config.bot_id}>`.")
                f(self, *args)
        except Fail as e:
            self._result(str(e))
            # convert to HandledError to indicate that we've displayed this
            # message
            raise HandledError()
        except Exception:
            self._result('Internal error.  Admins have been notified.')
            raise

    @staticmethod
    def _argdesc(f):
        return ' '.join([f'<{a}>' for a in f.args] +
                [f'[{a}]' for a in f.optargs])

    def _is_admin(self):
        user = self._payload.user_id
        if user in self._config.get('admins', []):
            return True
        try:
            info = self._client.users_info(user=user)['user']
        except SlackApiError:
            return False
        return bool(info.get('is_admin') or info.get('is_owner') or
                info.get('is_primary_owner'))

    def _result(self, message, in_channel=False):
        '''Send the result message for a command.'''
        if in_channel:
            # many channel members may not have heard of us
            message += f'\n\nFor more information on coffeebot, type `{self._payload.command} help`.'
        requests.post(self._payload.response_url, json={
            'response_type': 'in_channel' if in_channel else 'ephemeral',
            'text': message,
        })

    @register('join', doc='join coffee chats in this channel')
    def _join(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        channel.opt_in(self._payload.user_id)
        self._result(f"You're now participating in coffee chats in <#{channel.id}>.  You'll be included in the next round.")

    @register('leave', doc='stop being paired in this channel')
    def _leave(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        channel.opt_out(self._payload.user_id)
        self._result(f"You're no longer participating in coffee chats in <#{channel.id}>.  Use `{self._payload.command} join` to come back.")

    @register('skip', doc='sit out the next round in this channel')
    def _skip(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        channel.skip_next(self._payload.user_id)
        self._result("Got it!  You'll skip the next coffee chat pairing.  You'll automatically be included in the round after that.")

    @register('status', affects_channel=False,
            doc='show whether you are participating in each channel')
    def _status(self):
        channels = Channel.get_channels(self._config, self._client,
                self._db, active=True)
        if not channels:
            raise Fail('No coffee chat channels are currently active.')
        lines = []
        for channel in channels:
            if channel.is_opted_in(self._payload.user_id):
                lines.append(f'✅ <#{channel.id}>: Opted in')
            else:
                lines.append(f'⏸️ <#{channel.id}>: Opted out')
        self._result('*☕ Your Coffee Chat Status:*\n' + '\n'.join(lines))

    @register('history', affects_channel=False,
            doc='list the people you have been paired with')
    def _history(self):
        user = self._payload.user_id
        pairings = self._db.get_user_pairings(user)
        if not pairings:
            self._result("☕ You haven't been paired with anyone yet.  Stay tuned for your first coffee chat!")
            return
        now = current_time(self._config)
        by_channel = OrderedDict()
        for pairing in pairings:
            by_channel.setdefault(pairing.channel, []).append(pairing)
        lines = [f"You've been paired *{plural(len(pairings), 'time')}* across all channels:"]
        for channel, channel_pairings in by_channel.items():
            lines.append(f'\n*<#{channel}>* ({plural(len(channel_pairings), "pairing")}):')
            for pairing in channel_pairings:
                partners = format_uids([u for u in pairing.users if u != user])
                if pairing.is_active(now):
                    status = '🟢 Active'
                elif pairing.confirmed:
                    status = '✅ Met'
                else:
                    status = '❌ Did not meet'
                lines.append(f'  • {pairing.created:%b} {pairing.created.day}, {pairing.created.year} - {partners} {status}')
        self._result('\n'.join(lines))

    @register('ping', affects_channel=False,
            doc='check whether the bot is running')
    def _ping(self):
        self._result(':wave:')

    @register('help', affects_channel=False, doc='print this message')
    def _help(self):
        groups = OrderedDict()
        is_admin = self._is_admin()
        for f in self._registry.values():
            if f.doc is None:
                continue
            if f.admin:
                if not is_admin:
                    continue
                group = self.GROUP_ADMIN
            elif f.group is None:
                group = self.GROUP_DEFAULT
            else:
                group = f.group
            groups.setdefault(group, []).append(f)
        lines = []
        for group, funcs in groups.items():
            lines.append(f'*{group}:*')
            for f in funcs:
                argdesc = self._argdesc(f)
                lines.append('`{}{}{}` - {}'.format(
                    f.command,
                    ' ' if argdesc else '',
                    argdesc,
                    f.doc,
                ))
        self._result(HELP
            .replace('%commands%', '\n'.join(lines))
            .replace('%admins%', format_uids(self._config.get('admins', []))
                or 'the workspace admins'))

    @register('register', optargs=('days',), admin=True,
            doc='register this channel for coffee chats every <days> days')
    def _register(self, days=None):
        if days is not None:
            try:
                days = int(days, 10)
                if not 1 <= days <= MAX_FREQUENCY_DAYS:
                    raise ValueError
            except ValueError:
                raise Fail(f'Invalid frequency.  Please provide a number between 1 and {MAX_FREQUENCY_DAYS} days.')
        channel = self._channel(self._payload.channel_id)
        if channel.registered:
            raise Fail(f'<#{channel.id}> is already registered for {frequency_str(channel.settings.frequency_days)} coffee chats.')
        info = self._client.conversations_info(channel=channel.id)['channel']
        channel.register(info.get('name', channel.id), days)
        self._result(f'This channel has been registered for {frequency_str(channel.settings.frequency_days)} coffee chat pairings!  Use `{self._payload.command} start` to begin the pairing cycle.',
                in_channel=True)

    @register('start', admin=True,
            doc='start pairing in this channel and create the first round')
    def _start(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        if channel.settings.active and channel.settings.next_pairing is not None:
            raise Fail(f'Coffee chats are already running in this channel.  Use `{self._payload.command} pause` to pause them.')
        pairings = channel.start()
        message = f'Coffee chats have been started ({frequency_str(channel.settings.frequency_days)})!'
        if pairings:
            message += f'  I created {plural(len(pairings), "pairing")} for the first round.'
        else:
            message += "  I couldn't create a first round; I need at least two participating members."
        message += f'\n📅 The next automatic pairing will be on {format_short_day(channel.settings.next_pairing)}.'
        self._result(message, in_channel=True)

    @register('pause', admin=True,
            doc='stop creating new rounds in this channel')
    def _pause(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        if not channel.settings.active:
            raise Fail(f'Coffee chats are not currently running.  Use `{self._payload.command} start` to begin.')
        channel.pause()
        self._result(f'⏸️ Coffee chats have been paused, as requested by <@{self._payload.user_id}>.  No new automatic pairings will be created.',
                in_channel=True)

    @register('trigger', admin=True,
            doc='immediately create a round in this channel')
    def _trigger(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        pairings = channel.create_round()
        if pairings is None:
            raise Fail('No pairings were created.  Either a round is still in progress or fewer than two members are participating.')
        self._result(f'Created {plural(len(pairings), "pairing")}.')

    @register('reset', admin=True,
            doc='delete all pairings and preferences for this channel')
    def _reset(self):
        channel = self._channel(self._payload.channel_id, registered=True)
        pairings, preferences = channel.reset()
        self._result(f'✅ *Coffee chats have been reset!*\n\n*Deleted:*\n'
                f'• {plural(pairings, "pairing")}\n'
                f'• {plural(preferences, "user preference")}\n'
                f'• the pairing schedule\n\n'
                f'Use `{self._payload.command} start` to start fresh.')

    @register('channels', affects_channel=False, admin=True,
            doc='list registered channels')
    def _channels(self):
        channels = []
        for channel in Channel.get_channels(self._config, self._client,
                self._db):
            settings = channel.settings
            line = f'<#{channel.id}> - {frequency_str(settings.frequency_days)}'
            if not settings.active:
                line += ', paused'
            elif settings.next_pairing is not None:
                line += f', next {format_short_day(settings.next_pairing)}'
            channels.append(line)
        if not channels:
            channels.append('_none_')
        self._result('*Registered channels:*\n' + '\n'.join(channels))


class ActionHandler(Handler):
    '''Handler for a button in a pairing message.'''

    def handle(self):
        try:
            with self._db:
                action = self._payload.actions[0]
                try:
                    f = self._registry[action['action_id']]
                except KeyError:
                    raise Fail("Sorry, I don't know how to handle that button.")
                f(self, action['value'])
        except Fail as e:
            self._result(f'❌ {e}')
            raise HandledError()
        except Exception:
            self._result('❌ Internal error.  Admins have been notified.')
            raise

    @property
    def _user(self):
        return self._payload.user['id']

    def _result(self, message, blocks=None):
        body = {
            'response_type': 'ephemeral',
            'replace_original': False,
            'text': message,
        }
        if blocks is not None:
            body['blocks'] = blocks
        requests.post(self._payload.response_url, json=body)

    @register(ACTION_CONFIRM)
    def _confirm(self, pairing_id):
        try:
            pairing_id = int(pairing_id, 10)
        except ValueError:
            raise Fail("I couldn't find that coffee chat.")
        if not confirm_meetup(self._db, pairing_id):
            raise Fail("I couldn't find that coffee chat.")
        self._result('✅ Awesome!  Thanks for confirming your meetup.  We hope you had a great time! 🎉')

    @register(ACTION_SKIP)
    def _skip(self, channel_id):
        self._channel(channel_id, registered=True).skip_next(self._user)
        self._result("✅ Got it!  You'll skip the next coffee chat pairing.  You'll automatically be included in the round after that.")

    @register(ACTION_OPT_OUT)
    def _opt_out(self, channel_id):
        self._channel(channel_id, registered=True).opt_out(self._user)
        message = "✅ You've been opted out of future coffee chat pairings.  You won't be included in upcoming rounds."
        self._result(message, blocks=[
            _section(message),
            {
                'type': 'actions',
                'elements': [
                    _button('▶️ Resume Pairings', ACTION_OPT_IN, channel_id,
                            'primary'),
                ],
            },
        ])

    @register(ACTION_OPT_IN)
    def _opt_in(self, channel_id):
        self._channel(channel_id, registered=True).opt_in(self._user)
        self._result("✅ Welcome back!  You've been opted back into coffee chat pairings.  You'll be included in future rounds.")


def _acknowledge(socket_client, req):
    '''Acknowledge the event, as required by Slack.'''
    resp = SocketModeResponse(envelope_id=req.envelope_id)
    socket_client.send_socket_mode_response(resp)


@report_errors
def process_event(config, socket_client, req):
    '''Handler for a Slack event.'''
    payload = DottedDict(req.payload)

    if req.type == 'slash_commands':
        # Don't even acknowledge events in forbidden channels, to avoid
        # interfering with separate bot instances in other channels.
        if payload.channel_id in config.get('channels_deny', []):
            return
        if config.get('channels_allow') and payload.channel_id not in config.channels_allow:
            return
        _acknowledge(socket_client, req)
        channel = payload.channel_id
        handler = CommandHandler
    elif req.type == 'interactive':
        _acknowledge(socket_client, req)
        if payload.get('type') != 'block_actions':
            return
        channel = (payload.get('channel') or {}).get('id', '')
        handler = ActionHandler
    else:
        raise Fail(f'Unexpected event type "{req.type}"')

    # Idempotency
    with Database(config) as db:
        if not db.add_event(channel, payload.trigger_id):
            # When we ignore some events, Slack can send us duplicate
            # retries.  Detect and ignore those after acknowledging.
            return

    # Process it
    handler(config, payload)()


class Scheduler:
    def __init__(self, config, client, db):
        self._config = config
        self._client = client
        self._db = db
        self._jobs = []
        self._add_timer(self._prune, 'prune_interval', 3600)
        self._add_cron(self._rounds, 'round_schedule', '0 9 * * *')
        self._add_cron(self._reminders, 'reminder_schedule', '0 16 * * *')

    def _add_cron(self, fn, config_key, default=None):
        schedule = self._config.get(config_key, default)
        if schedule is not None:
            # evaluate the schedule in the configured timezone
            it = croniter(schedule, current_time(self._config))
            # add the list length as a tiebreaker when sorting, so we don't
            # try to compare two fns
            heappush(self._jobs, (next(it), len(self._jobs), fn, it))

    def _add_timer(self, fn, config_key, default=None):
        interval = self._config.get(config_key, default)
        if interval is not None:
            it = itertools.count(int(time.time()), interval)
            # add the list length as a tiebreaker when sorting, so we don't
            # try to compare two fns
            heappush(self._jobs, (next(it), len(self._jobs), fn, it))

    def run(self):
        while True:
            # get the next job that's due
            nex, idx, fn, it = heappop(self._jobs)
            # wait for the scheduled time, allowing for spurious wakeups
            while True:
                now = time.time()
                if now >= nex:
                    break
                time.sleep(nex - now)
            # run the job, passing the config to make report_errors() happy
            @report_errors
            @wraps(fn)
            def wrapper(_config):
                fn()
            wrapper(self._config)
            # schedule the next run, skipping any times that are already
            # in the past
            now = time.time()
            while True:
                nex = next(it)
                if nex > now:
                    break
            heappush(self._jobs, (nex, idx, fn, it))

    def _rounds(self):
        '''Report on the round that just finished, then start new ones.'''
        logger.info('Running scheduled coffee chat rounds')
        now = current_time(self._config)
        report_stats(self._config, self._client, self._db, now=now,
                due_only=True)
        create_due_rounds(self._config, self._client, self._db, now=now)

    def _reminders(self):
        logger.info('Running midway reminders')
        send_midway_reminders(self._config, self._client, self._db)

    def _prune(self):
        with self._db:
            self._db.prune_events()


def main():
    parser = argparse.ArgumentParser(
            description='Slack bot that pairs up channel members for coffee chats.')
    parser.add_argument('-c', '--config', metavar='FILE',
            default='~/.coffeebot', help='config file')
    parser.add_argument('-d', '--database', metavar='FILE',
            default='~/.coffeebot-db', help='database file')
    args = parser.parse_args()

    # Self-test
    Grouping.selftest()

    # Read config
    with open(os.path.expanduser(args.config)) as fh:
        config = DottedDict(yaml.safe_load(fh))
        config.database = os.path.expanduser(args.database)
    env_map = (
        ('COFFEEBOT_APP_TOKEN', 'app_token'),
        ('COFFEEBOT_TOKEN', 'token'),
    )
    for env, config_key in env_map:
        v = os.environ.get(env)
        if v:
            setattr(config, config_key, v)

    logging.basicConfig(level=config.get('log_level', 'INFO'),
            format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # Connect to services
    client = WebClient(token=config.token)
    # store our user ID
    config.bot_id = client.auth_test()['user_id']
    db = Database(config)

    # Start socket-mode listener in the background
    socket_client = SocketModeClient(app_token=config.app_token,
            web_client=WebClient(token=config.token))
    socket_client.socket_mode_request_listeners.append(
            lambda socket_client, req: process_event(config, socket_client, req))
    socket_client.connect()
    logger.info('coffeebot up and running')

    # Run scheduler
    Scheduler(config, client, db).run()


if __name__ == '__main__':
    main()
