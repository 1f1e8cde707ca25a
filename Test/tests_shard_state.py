import pytest

from shard_state import ShardSet, ShardState


def test_membership_changes_bump_version():
    with ShardState(['a', 'b']) as state:
        seen = []
        state.add_listener(seen.append)
        assert state.current().version == 0
        s1 = state.add_shard('c', weight=2)
        s2 = state.remove_shard('a')
        assert (s1.version, s2.version) == (1, 2)
        assert s2.shards == ('b', 'c') and s2.weight('c') == 2
        assert [s.version for s in seen] == [1, 2]


def test_noop_changes_keep_version():
    with ShardState(['a', 'b']) as state:
        assert state.remove_shard('zzz') is None
        assert state.replace(['a', 'b']).version == 0
        assert state.replace(['b', 'x']).version == 1


def test_invalid_membership():
    with ShardState(['a']) as state:
        with pytest.raises(ValueError):
            state.add_shard('a')
        with pytest.raises(ValueError):
            state.add_shard('')
        with pytest.raises(ValueError):
            state.add_shard('b', weight=0)


def test_closed_state_rejects_mutation():
    state = ShardState(['a'])
    assert state.closed
    with pytest.raises(RuntimeError):
        state.add_shard('b')
    state.open()
    state.add_shard('b')
    state.close()
    with pytest.raises(RuntimeError):
        state.remove_shard('a')
    assert list(state.current()) == ['a', 'b']


def test_shard_set_validation():
    with pytest.raises(ValueError):
        ShardSet(('a', 'a'))
    with pytest.raises(ValueError):
        ShardSet(('a', 'b'), weights=(1,))
    s = ShardSet(('a', 'b'))
    assert s.pairs() == [('a', 1), ('b', 1)]
    assert 'a' in s and len(s) == 2 and not s.is_empty()
    assert ShardSet().is_empty()
