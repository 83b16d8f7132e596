import pytest

from offline_queue import OfflineQueue


def test_items_survive_reopen(tmp_path):
    path = tmp_path / "q.db"
    q = OfflineQueue(path)
    q.enqueue("main", {"serial": "A1234567", "localId": "local-a"})
    q.enqueue("main", {"serial": "B1234567", "localId": "local-b"})

    reopened = OfflineQueue(path)
    items = reopened.list_all("main")
    assert [i.payload["serial"] for i in items] == ["A1234567", "B1234567"]
    assert items[0].id < items[1].id


def test_workspaces_are_partitioned(queue):
    a = queue.enqueue("main", {"serial": "A1234567"})
    b = queue.enqueue("alt", {"serial": "B1234567"})

    assert [i.payload["serial"] for i in queue.list_all("main")] == ["A1234567"]
    assert queue.count("alt") == 1
    assert queue.count() == 2
    assert sorted(queue.workspaces()) == ["alt", "main"]

    # ids from another workspace are not removed
    assert queue.remove_many("main", [b]) == 0
    assert queue.count("alt") == 1
    assert queue.remove_many("main", [a]) == 1
    assert queue.list_all("main") == []


def test_no_dedup_inside_queue(queue):
    queue.enqueue("main", {"serial": "A1234567"})
    queue.enqueue("main", {"serial": "A1234567"})
    assert queue.count("main") == 2


def test_remove_many_with_nothing_is_noop(queue):
    queue.enqueue("main", {"serial": "A1234567"})
    assert queue.remove_many("main", []) == 0
    assert queue.count("main") == 1


def test_unknown_workspace_rejected(queue):
    with pytest.raises(ValueError):
        queue.enqueue("yard-3", {"serial": "A1234567"})
