"""
tests/unit/test_registry.py — The in-memory connection table.
"""

from __future__ import annotations

import threading

from backend.app.realtime.registry import ConnectionRegistry


def test_first_and_last_connection_are_reported():
    registry = ConnectionRegistry()

    _, first = registry.add("s1", 1, "alice")
    _, second = registry.add("s2", 1, "alice")
    assert first is True
    assert second is False
    assert registry.sids_for_user(1) == ["s1", "s2"]

    _, last = registry.remove("s1")
    assert last is False
    assert registry.is_online(1)

    _, last = registry.remove("s2")
    assert last is True
    assert not registry.is_online(1)
    assert len(registry) == 0


def test_remove_unknown_sid():
    assert ConnectionRegistry().remove("ghost") == (None, False)


def test_rooms_follow_connections():
    registry = ConnectionRegistry()
    registry.add("s1", 1, "alice")
    registry.add("s2", 2, "bob")

    assert registry.join("s1", 10)
    assert registry.join("s2", 10)
    assert registry.join("s2", 11)
    assert registry.sids_in_room(10) == ["s1", "s2"]
    assert registry.get("s2").rooms == {10, 11}

    registry.remove("s2")
    assert registry.sids_in_room(10) == ["s1"]
    assert registry.sids_in_room(11) == []


def test_join_requires_a_registered_connection():
    registry = ConnectionRegistry()
    assert registry.join("ghost", 10) is False
    assert registry.sids_in_room(10) == []


def test_leave():
    registry = ConnectionRegistry()
    registry.add("s1", 1, "alice")
    registry.join("s1", 10)
    registry.leave("s1", 10)
    assert registry.sids_in_room(10) == []
    assert registry.get("s1").rooms == set()


def test_snapshots_are_copies():
    registry = ConnectionRegistry()
    registry.add("s1", 1, "alice")
    registry.join("s1", 10)

    snapshot = registry.sids_in_room(10)
    registry.remove("s1")
    assert snapshot == ["s1"]


def test_online_user_ids():
    registry = ConnectionRegistry()
    registry.add("s1", 2, "bob")
    registry.add("s2", 1, "alice")
    registry.add("s3", 2, "bob")
    assert registry.online_user_ids() == [1, 2]


def test_concurrent_connects_and_disconnects_for_one_user():
    """Exactly one connect sees is_first and exactly one disconnect sees is_last."""
    registry = ConnectionRegistry()
    sids = [f"s{i}" for i in range(50)]
    firsts: list[bool] = []
    lasts: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(sids))

    def connect(sid):
        barrier.wait()
        _, is_first = registry.add(sid, 1, "alice")
        registry.join(sid, 10)
        with lock:
            firsts.append(is_first)

    def disconnect(sid):
        barrier.wait()
        _, is_last = registry.remove(sid)
        with lock:
            lasts.append(is_last)

    for target in (connect, disconnect):
        threads = [threading.Thread(target=target, args=(sid,)) for sid in sids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        if target is connect:
            assert firsts.count(True) == 1
            assert len(registry.sids_in_room(10)) == len(sids)
            barrier.reset()

    assert lasts.count(True) == 1
    assert len(registry) == 0
    assert registry.sids_in_room(10) == []
    assert registry.lock_count() == 0


def test_lock_entries_are_dropped_when_idle():
    registry = ConnectionRegistry()
    for i in range(20):
        registry.add(f"s{i}", i, f"user{i}")
        registry.join(f"s{i}", 100 + i)
    for i in range(20):
        registry.remove(f"s{i}")

    assert registry.lock_count() == 0


def test_presence_lock_is_exclusive_per_user():
    registry = ConnectionRegistry()
    other_user_done = threading.Event()
    same_user_done = threading.Event()

    def hold_for(user_id, done):
        with registry.presence_lock(user_id):
            done.set()

    with registry.presence_lock(1):
        same = threading.Thread(target=hold_for, args=(1, same_user_done))
        other = threading.Thread(target=hold_for, args=(2, other_user_done))
        same.start()
        other.start()

        assert other_user_done.wait(timeout=2)
        assert not same_user_done.wait(timeout=0.2)

    same.join(timeout=2)
    other.join(timeout=2)
    assert same_user_done.is_set()
    assert registry.lock_count() == 0
