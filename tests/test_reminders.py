from datetime import timedelta

from coffeebot import ACTION_CONFIRM, send_midway_reminders


def reminder_time(now):
    # halfway through a 14-day round, at the afternoon reminder run
    return now + timedelta(days=7, hours=7)


def test_reminders_sent_once(config, db, client, now, make_channel, text_of):
    channel = make_channel()
    with db:
        pairings = channel.create_round(now)
    client.posts.clear()

    with db:
        assert channel.send_reminders(reminder_time(now)) == 2
    assert sorted(p['channel'] for p in client.posts) == \
            sorted(p.conversation for p in pairings)
    text = text_of(client.posts[0])
    assert 'You have about 7 days left to connect' in text
    assert client.posts[0]['blocks'][-1]['elements'][0]['action_id'] == ACTION_CONFIRM
    assert all(p.reminder_sent for p in db.get_pairings('C1'))

    with db:
        assert channel.send_reminders(reminder_time(now) + timedelta(hours=1)) == 0
    assert len(client.posts) == 2
    assert all(p.reminder_sent for p in db.get_pairings('C1'))


def test_no_reminder_outside_window(db, client, now, make_channel):
    channel = make_channel()
    with db:
        channel.create_round(now)
        assert channel.send_reminders(now + timedelta(days=2)) == 0
        assert channel.send_reminders(now + timedelta(days=12)) == 0
    assert not any(p.reminder_sent for p in db.get_pairings('C1'))


def test_confirmed_and_unreachable_pairings_skipped(db, client, now,
        make_channel):
    channel = make_channel(members=['U1', 'U2', 'U3', 'U4', 'U5', 'U6'])
    with db:
        first, second, third = channel.create_round(now)
        db.confirm_pairing(first.id)
        db.set_pairing_conversation(second.id, None)
    client.posts.clear()
    with db:
        assert channel.send_reminders(reminder_time(now)) == 1
    assert [p['channel'] for p in client.posts] == [third.conversation]


def test_reminder_failure_does_not_stop_others(db, client, now,
        make_channel):
    channel = make_channel()
    with db:
        first, second = channel.create_round(now)
    client.channel_errors[('chat_postMessage', first.conversation)] = 'channel_not_found'
    with db:
        assert channel.send_reminders(reminder_time(now)) == 1
    assert not db.get_pairing(first.id).reminder_sent
    assert db.get_pairing(second.id).reminder_sent


def test_weekly_round_reminds_after_three_days(db, client, now,
        make_channel):
    channel = make_channel(frequency_days=7)
    with db:
        channel.create_round(now)
        assert channel.send_reminders(now + timedelta(days=3, hours=7)) == 2


def test_inactive_channels_not_reminded(config, db, client, now,
        make_channel):
    active = make_channel('C1')
    paused = make_channel('C2')
    with db:
        active.create_round(now)
        paused.create_round(now)
        paused.pause()
    send_midway_reminders(config, client, db, now=reminder_time(now))
    assert all(p.reminder_sent for p in db.get_pairings('C1'))
    assert not any(p.reminder_sent for p in db.get_pairings('C2'))
