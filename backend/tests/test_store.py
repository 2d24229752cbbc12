import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from slicetally.errors import InvalidInput, NotFound
from slicetally.models import CODE_ALPHABET
from slicetally.services.groups import GroupStore


def test_create_group_code_shape(store):
    code = store.create_group()
    assert len(code) == 6
    assert set(code) <= set(CODE_ALPHABET)
    assert code in store
    assert store.list_participants(code) == []


def test_create_group_with_seed(store):
    code = store.create_group(name='  Ana  ', participant_id='a', food_type='japones')
    group = store.get_group(code)
    assert group.food_type == 'japones'
    assert store.list_participants(code) == [{'id': 'a', 'name': 'Ana', 'slices': 0}]


@pytest.mark.parametrize('kwargs', [
    {'name': 'Ana'},
    {'participant_id': 'a'},
    {'name': '   ', 'participant_id': 'a'},
])
def test_create_group_rejects_half_seed(store, kwargs):
    with pytest.raises(InvalidInput):
        store.create_group(**kwargs)
    assert len(store) == 0


def test_unknown_food_type_falls_back(store):
    code = store.create_group(food_type='sushi-burrito')
    assert store.get_group(code).food_type == 'pizza'


def test_get_group_not_found(store):
    with pytest.raises(NotFound):
        store.get_group('ZZZZZZ')


def test_get_group_returns_copy(store):
    code = store.create_group(name='Ana', participant_id='a')
    group = store.get_group(code)
    group.participants['a'].slices = 99
    assert store.list_participants(code)[0]['slices'] == 0


def test_codes_are_case_insensitive(store):
    code = store.create_group(name='Ana', participant_id='a')
    assert store.join_group(code.lower(), 'Bea').name == 'Bea'
    assert len(store.list_participants(f"  {code.lower()} ")) == 2


def test_join_mints_new_participant(store):
    code = store.create_group()
    p = store.join_group(code, 'Ana')
    assert p.id.startswith('id-')
    assert p.slices == 0


def test_join_uses_supplied_participant_id(store):
    code = store.create_group()
    assert store.join_group(code, 'Ana', 'client-1').id == 'client-1'


def test_rejoin_by_name_is_case_insensitive(store):
    code = store.create_group(name='Ana', participant_id='a')
    store.adjust_slices(code, 'a', 2)
    p = store.join_group(code, 'ana')
    assert p.id == 'a'
    assert p.slices == 2
    # Stored spelling follows the latest join
    assert store.list_participants(code) == [{'id': 'a', 'name': 'ana', 'slices': 2}]


def test_rejoin_by_name_ignores_unrelated_participant_id(store):
    code = store.create_group(name='Ana', participant_id='a')
    assert store.join_group(code, ' ANA ', 'fresh-device').id == 'a'
    assert len(store.list_participants(code)) == 1


def test_join_id_taken_by_other_name_gets_fresh_id(store):
    code = store.create_group(name='Ana', participant_id='a')
    p = store.join_group(code, 'Bea', 'a')
    assert p.id != 'a'
    names = {row['id']: row['name'] for row in store.list_participants(code)}
    assert names['a'] == 'Ana'
    assert names[p.id] == 'Bea'


def test_join_duplicate_names_prefers_matching_id_then_join_order(store):
    code = store.create_group()
    store.restore({'groups': {code: {
        'code': code,
        'created_at': '2024-01-01T00:00:00+00:00',
        'participants': {
            'first': {'id': 'first', 'name': 'Ana', 'slices': 1, 'joined_at': '2024-01-01T00:00:01+00:00'},
            'second': {'id': 'second', 'name': 'ana', 'slices': 2, 'joined_at': '2024-01-01T00:00:02+00:00'},
        },
    }}})
    assert store.join_group(code, 'Ana').id == 'first'
    assert store.join_group(code, 'Ana', 'second').id == 'second'


def test_join_name_match_wins_over_another_participants_id(store):
    code = store.create_group(name='Ana', participant_id='a')
    store.join_group(code, 'Bob', 'b')
    # Bob's id with Ana's name resolves to Ana; Bob keeps his seat and name
    assert store.join_group(code, 'Ana', 'b').id == 'a'
    group = store.get_group(code)
    assert list(group.participants) == ['a', 'b']
    assert group.participants['b'].name == 'Bob'


def test_join_name_is_trimmed_and_capped(store):
    code = store.create_group()
    p = store.join_group(code, '  ' + 'x' * 50 + '  ')
    assert p.name == 'x' * 30


def test_join_errors(store):
    with pytest.raises(NotFound):
        store.join_group('NOPE42', 'Ana')
    code = store.create_group()
    with pytest.raises(InvalidInput):
        store.join_group(code, '   ')


def test_adjust_clamps_at_zero(store):
    code = store.create_group(name='Ana', participant_id='a')
    store.adjust_slices(code, 'a', 2)
    p = store.adjust_slices(code, 'a', -1000)
    assert p.slices == 0


def test_adjust_never_negative_under_random_deltas(store):
    code = store.create_group(name='Ana', participant_id='a')
    rng = random.Random(7)
    for _ in range(500):
        delta = rng.choice([-5, -3, -1, 1, 2, 4])
        assert store.adjust_slices(code, 'a', delta).slices >= 0


@pytest.mark.parametrize('delta', [0, 1.5, '1', True, None])
def test_adjust_rejects_bad_delta(store, delta):
    code = store.create_group(name='Ana', participant_id='a')
    with pytest.raises(InvalidInput):
        store.adjust_slices(code, 'a', delta)
    assert store.list_participants(code)[0]['slices'] == 0


def test_adjust_not_found(store):
    code = store.create_group(name='Ana', participant_id='a')
    with pytest.raises(NotFound):
        store.adjust_slices(code, 'ghost', 1)
    with pytest.raises(NotFound):
        store.adjust_slices('NOPE42', 'a', 1)


def test_adjust_records_bounded_audit_log():
    store = GroupStore(audit_log_limit=3)
    code = store.create_group(name='Ana', participant_id='a')
    for _ in range(5):
        store.adjust_slices(code, 'a', 1)
    log = list(store.get_group(code).audit_log)
    assert len(log) == 3
    assert [e['slices'] for e in log] == [3, 4, 5]
    assert all(e['participant_id'] == 'a' and e['delta'] == 1 for e in log)


def test_remove_participant_is_idempotent(store):
    code = store.create_group(name='Ana', participant_id='a')
    changes = []
    store.add_listener(changes.append)
    assert store.remove_participant(code, 'a') is True
    assert store.remove_participant(code, 'a') is False
    assert store.remove_participant('NOPE42', 'a') is False
    assert store.list_participants(code) == []
    assert [c.action for c in changes] == ['leave']


def test_list_participants_ordering(store):
    code = store.create_group()
    ids = [store.join_group(code, name).id for name in ('A', 'B', 'C')]
    for pid, count in zip(ids, [3, 1, 5]):
        store.adjust_slices(code, pid, count)
    assert [row['slices'] for row in store.list_participants(code)] == [5, 3, 1]


def test_list_participants_ties_favor_earlier_joiner(store):
    code = store.create_group()
    a = store.join_group(code, 'A').id
    b = store.join_group(code, 'B').id
    store.adjust_slices(code, b, 5)
    store.adjust_slices(code, a, 5)
    assert [row['id'] for row in store.list_participants(code)] == [a, b]


def test_list_participants_by_name(store):
    code = store.create_group()
    for name in ('carla', 'Bea', 'ana'):
        store.join_group(code, name)
    assert [r['name'] for r in store.list_participants_by_name(code)] == ['ana', 'Bea', 'carla']


def test_updated_at_never_moves_backwards(store):
    code = store.create_group(name='Ana', participant_id='a')
    group = store.get_group(code)
    p = group.participants['a']
    before = p.updated_at
    p.touch(before - timedelta(hours=1))
    assert p.updated_at == before


def test_listeners_receive_projection_after_each_mutation(store):
    changes = []
    store.add_listener(changes.append)
    code = store.create_group(name='Ana', participant_id='a')
    store.join_group(code, 'Bea')
    store.adjust_slices(code, 'a', 1)
    assert [c.action for c in changes] == ['create', 'join', 'adjust']
    assert [c.projection['version'] for c in changes] == [1, 2, 3]
    assert changes[-1].projection['participants'][0] == {'id': 'a', 'name': 'Ana', 'slices': 1}
    assert changes[-1].projection['meta']['food_type'] == 'pizza'


def test_failed_mutation_does_not_notify(store):
    code = store.create_group(name='Ana', participant_id='a')
    changes = []
    store.add_listener(changes.append)
    with pytest.raises(InvalidInput):
        store.adjust_slices(code, 'a', 0)
    assert changes == []


def test_listener_errors_do_not_reach_caller(store):
    def boom(change):
        raise RuntimeError('listener down')

    seen = []
    store.add_listener(boom)
    store.add_listener(seen.append)
    code = store.create_group()
    assert seen and seen[0].code == code


def test_concurrent_creates_yield_unique_codes(store):
    with ThreadPoolExecutor(max_workers=32) as pool:
        codes = list(pool.map(lambda _: store.create_group(), range(10000)))
    assert len(set(codes)) == 10000
    assert len(store) == 10000


def test_code_collisions_are_rerolled(monkeypatch, caplog):
    import slicetally.models as models

    picks = iter('AAAAAA' 'AAAAAA' 'BBBBBB')
    monkeypatch.setattr(models.secrets, 'choice', lambda alphabet: next(picks))
    store = GroupStore()
    assert store.create_group() == 'AAAAAA'
    with caplog.at_level(logging.DEBUG, logger='slicetally.services.groups.store'):
        assert store.create_group() == 'BBBBBB'
    assert '[code-collision] code AAAAAA already in use status=409' in caplog.text


def test_concurrent_increments_are_not_lost(store):
    code = store.create_group(name='Ana', participant_id='a')

    def bump(_):
        time.sleep(0)
        store.adjust_slices(code, 'a', 1)

    with ThreadPoolExecutor(max_workers=16) as pool:
        list(pool.map(bump, range(500)))
    assert store.list_participants(code)[0]['slices'] == 500


def test_to_dict_restore_roundtrip(store):
    code = store.create_group(name='Ana', participant_id='a', food_type='pastel')
    b = store.join_group(code, 'Bea').id
    store.adjust_slices(code, 'a', 3)
    store.adjust_slices(code, b, 1)
    document = store.to_dict()

    fresh = GroupStore()
    assert fresh.restore(document) == 1
    assert fresh.to_dict() == document
    assert fresh.list_participants(code) == store.list_participants(code)


def test_restore_skips_malformed_groups(store):
    count = store.restore({'groups': {
        'GOOD22': {'code': 'GOOD22', 'participants': {}},
        'BAD222': {'code': 'BAD222', 'created_at': 'not a date'},
    }})
    assert count == 1
    assert store.codes() == ['GOOD22']
