import threading

import pytest

from lexio.queue_store import QueueItem, QueueStore


def _queue(*ids):
    q = QueueStore()
    for i in ids:
        q.add(QueueItem(id=i, title=i.title(), content=f"content of {i}"))
    return q


def test_add_is_idempotent_and_passive():
    q = _queue("section-0")
    assert q.add(QueueItem("section-0", "dup", "other")) is False
    assert [it.id for it in q.items] == ["section-0"]
    assert q.items[0].title == "Section-0"
    assert q.current_index == -1
    assert q.play_intent is False


def test_remove_before_current_shifts_index():
    q = _queue("section-0", "section-1")
    q.set_current_index(1)
    assert q.remove("section-0")
    assert [it.id for it in q.items] == ["section-1"]
    assert q.current_index == 0


def test_remove_last_item_resets_index():
    q = _queue("a")
    q.set_current_index(0)
    q.remove("a")
    assert q.current_index == -1
    assert q.remove("missing") is False


def test_reorder_keeps_current_logical_item():
    q = _queue("a", "b", "c", "d")
    q.set_current_index(2)
    current = q.current_item()
    for src, dst in [(0, 3), (3, 0), (2, 0), (1, 3), (0, 2)]:
        q.reorder(src, dst)
        assert q.current_item() == current
        assert 0 <= q.current_index < len(q)


def test_reorder_out_of_range():
    q = _queue("a")
    with pytest.raises(IndexError):
        q.reorder(0, 3)


def test_set_current_index_bounds():
    q = _queue("a", "b")
    q.set_current_index(-1)
    with pytest.raises(IndexError):
        q.set_current_index(2)


def test_advance_at_end_clamps_or_wraps():
    q = _queue("a", "b")
    q.play_from(1)
    assert q.advance() is False
    assert q.current_index == 1
    assert q.play_intent is False

    q.play_from(1)
    q.toggle_repeat()
    assert q.advance() is True
    assert q.current_index == 0
    assert q.play_intent is True


def test_retreat_at_start():
    q = _queue("a", "b")
    q.play_from(0)
    assert q.retreat() is False
    assert q.current_index == 0
    assert q.play_intent is False
    q.repeat = True
    assert q.retreat() is True
    assert q.current_index == 1


def test_clear_resets_everything():
    q = _queue("a", "b")
    q.play_from(1)
    q.clear()
    assert len(q) == 0
    assert q.current_index == -1
    assert q.play_intent is False


def test_listeners_see_every_mutation():
    q = QueueStore()
    seen = []
    unsubscribe = q.subscribe(lambda store: seen.append(store.current_index))
    q.add(QueueItem("a", "A", "x"))
    q.play_from(0)
    unsubscribe()
    q.add(QueueItem("b", "B", "y"))
    assert seen == [-1, 0]


def test_remove_current_item_moves_to_previous():
    q = _queue("a", "b", "c")
    q.set_current_index(1)
    q.remove("b")
    assert q.current_index == 0
    assert q.current_item().id == "a"


def test_remove_first_current_item_floors_at_zero():
    q = _queue("a", "b")
    q.set_current_index(0)
    q.remove("a")
    assert q.current_index == 0
    assert q.current_item().id == "b"


def test_remove_after_current_keeps_index():
    q = _queue("a", "b", "c")
    q.set_current_index(1)
    q.remove("c")
    assert q.current_index == 1
    assert q.current_item().id == "b"


def test_mixed_operations_keep_index_valid():
    q = _queue("a", "b", "c", "d", "e")
    q.set_current_index(3)
    steps = [
        lambda: q.remove("a"),
        lambda: q.reorder(0, 3),
        lambda: q.add(QueueItem("f", "F", "x")),
        lambda: q.remove("d"),
        lambda: q.advance(),
        lambda: q.reorder(3, 0),
        lambda: q.remove("f"),
        lambda: q.retreat(),
        lambda: q.remove("b"),
        lambda: q.remove("c"),
        lambda: q.remove("e"),
    ]
    for step in steps:
        step()
        assert q.current_index == -1 or 0 <= q.current_index < len(q)
    assert len(q) == 0
    assert q.current_index == -1


def test_concurrent_advance_never_runs_past_end():
    ids = [f"section-{i}" for i in range(50)]
    q = _queue(*ids)
    q.play_from(0)
    seen = []
    q.subscribe(lambda store: seen.append(store.current_index))

    def run():
        for _ in range(100):
            q.advance()

    workers = [threading.Thread(target=run) for _ in range(2)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    assert q.current_index == 49
    assert max(seen) == 49


def test_listeners_run_without_holding_the_lock():
    q = _queue("a", "b")
    results = []

    def listener(store):
        t = threading.Thread(target=lambda: results.append(store.current_item()))
        t.start()
        t.join(timeout=2)
        assert not t.is_alive()

    q.subscribe(listener)
    q.play_from(1)
    assert results[0].id == "b"
