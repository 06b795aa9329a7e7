from datetime import timedelta

from coffeebot import Database, UserPreference


def test_schema_is_created_once(config, db):
    with db:
        db.add_channel('C1', 'coffee', 7)
    again = Database(config)
    try:
        assert again.get_channel_config('C1').frequency_days == 7
    finally:
        again.close()


def test_register_twice(db):
    with db:
        assert db.add_channel('C1', 'coffee', 14)
        assert not db.add_channel('C1', 'other', 7)
    settings = db.get_channel_config('C1')
    assert settings.name == 'coffee'
    assert settings.frequency_days == 14
    assert not settings.active
    assert settings.last_pairing is None
    assert settings.next_pairing is None


def test_channel_configs_filtering(db, now):
    with db:
        db.add_channel('C1', 'a', 14)
        db.add_channel('C2', 'b', 14)
        db.add_channel('C3', 'c', 14)
        db.add_channel('C4', 'd', 14)
        for channel in ('C1', 'C2', 'C3'):
            db.set_channel_active(channel, True)
        db.set_channel_schedule('C1', None, now - timedelta(days=1))
        db.set_channel_schedule('C2', None, now + timedelta(days=1))
        # C3 is active but was never started
        db.set_channel_schedule('C4', None, now - timedelta(days=1))
    assert [c.id for c in db.get_channel_configs()] == ['C1', 'C2', 'C3', 'C4']
    assert [c.id for c in db.get_channel_configs(active=True)] == ['C1', 'C2', 'C3']
    assert [c.id for c in db.get_channel_configs(active=True, due_by=now)] == ['C1']


def test_schedule_round_trips(db, now):
    with db:
        db.add_channel('C1', 'coffee', 14)
        db.set_channel_schedule('C1', now, now + timedelta(days=14))
    settings = db.get_channel_config('C1')
    assert settings.last_pairing == now
    assert settings.next_pairing == now + timedelta(days=14)
    assert settings.next_pairing.tzinfo is not None


def test_preference_defaults(db):
    pref = db.get_preference('C1', 'U1')
    assert pref == UserPreference(channel='C1', user='U1', opted_in=True,
            skip_next=False)
    assert not pref.excluded


def test_preference_upsert_keeps_other_fields(db):
    with db:
        db.set_preference('C1', 'U1', opted_in=False)
        db.set_preference('C1', 'U1', skip_next=True)
    pref = db.get_preference('C1', 'U1')
    assert not pref.opted_in
    assert pref.skip_next
    assert len(db.get_preferences('C1')) == 1


def test_excluded_predicate():
    assert UserPreference('C1', 'U1', opted_in=False).excluded
    assert UserPreference('C1', 'U1', skip_next=True).excluded
    assert not UserPreference('C1', 'U1').excluded


def test_clear_skip_flags(db):
    with db:
        db.set_preference('C1', 'U1', skip_next=True)
        db.set_preference('C1', 'U2', skip_next=True, opted_in=False)
        db.set_preference('C1', 'U3', opted_in=False)
        db.set_preference('C2', 'U1', skip_next=True)
        assert db.clear_skip_flags('C1') == 2
    assert not any(p.skip_next for p in db.get_preferences('C1'))
    assert not db.get_preference('C1', 'U2').opted_in
    assert db.get_preference('C2', 'U1').skip_next


def test_pairing_filters(db, now):
    later = now + timedelta(days=14)
    with db:
        db.add_channel('C1', 'coffee', 14)
        first = db.add_pairing('C1', ['U1', 'U2'], now, now + timedelta(days=13))
        second = db.add_pairing('C1', ['U3', 'U4', 'U5'], later, later + timedelta(days=13))
        db.set_pairing_conversation(second.id, 'G1')
        db.set_pairing_reminder_sent(first.id)
    assert [p.id for p in db.get_pairings('C1')] == [first.id, second.id]
    assert [p.id for p in db.get_pairings('C1', created_since=later)] == [second.id]
    assert [p.id for p in db.get_pairings('C1', created_until=now)] == [first.id]
    assert [p.id for p in db.get_pairings('C1', due_since=later)] == [second.id]
    assert [p.id for p in db.get_pairings('C1', reminder_sent=False)] == [second.id]
    assert [p.id for p in db.get_pairings('C1', has_conversation=True)] == [second.id]
    assert [p.id for p in db.get_pairings('C1', has_conversation=False)] == [first.id]
    assert db.get_pairings('C2') == []
    assert db.get_pairing(second.id).users == ['U3', 'U4', 'U5']
    assert db.get_pairing(12345) is None


def test_user_pairings_newest_first(db, now):
    with db:
        db.add_channel('C1', 'a', 7)
        db.add_channel('C2', 'b', 7)
        old = db.add_pairing('C1', ['U1', 'U2'], now, now)
        new = db.add_pairing('C2', ['U3', 'U1'], now + timedelta(days=7), now)
        db.add_pairing('C1', ['U3', 'U4'], now, now)
    assert [p.id for p in db.get_user_pairings('U1')] == [new.id, old.id]
    assert [p.id for p in db.get_user_pairings('U1', channel='C1')] == [old.id]
    assert db.get_user_pairings('U9') == []


def test_reset_channel(db, now):
    with db:
        db.add_channel('C1', 'a', 7)
        db.add_channel('C2', 'b', 7)
        db.set_channel_schedule('C1', now, now + timedelta(days=7))
        db.add_pairing('C1', ['U1', 'U2'], now, now)
        db.add_pairing('C1', ['U3', 'U4'], now, now)
        db.add_pairing('C2', ['U1', 'U3'], now, now)
        db.set_preference('C1', 'U1', opted_in=False)
        db.set_preference('C2', 'U1', opted_in=False)
        assert db.reset_channel('C1') == (2, 1)
    assert db.get_pairings('C1') == []
    assert [p.channel for p in db.get_user_pairings('U1')] == ['C2']
    assert not db.get_preference('C2', 'U1').opted_in
    settings = db.get_channel_config('C1')
    assert settings.last_pairing is None
    assert settings.next_pairing is None


def test_events_are_deduplicated(db):
    with db:
        assert db.add_event('C1', 'T1')
        assert not db.add_event('C1', 'T1')
        assert db.add_event('C2', 'T1')
        db.prune_events(max_age=-10)
        assert db.add_event('C1', 'T1')
