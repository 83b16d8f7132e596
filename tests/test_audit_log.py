from datetime import datetime, timedelta

import pytest

from audit_log import AuditLog


def test_entries_newest_first_and_filtered(tmp_path):
    log = AuditLog(tmp_path / "audit.db")
    log.add("create", serial="AB123456", workspace="main")
    log.add("delete", serial="AB123456", workspace="main", scan_data={"serial": "AB123456"})
    log.add("create", serial="CD123456", workspace="alt")

    assert [e["serial"] for e in log.entries()] == ["CD123456", "AB123456", "AB123456"]
    deleted = log.entries(action="delete")
    assert deleted[0]["scanData"] == {"serial": "AB123456"}
    assert [e["mode"] for e in log.entries(workspace="alt")] == ["alt"]
    assert log.get(deleted[0]["id"])["action"] == "delete"


def test_history_is_capped(tmp_path):
    log = AuditLog(tmp_path / "audit.db", max_entries=3)
    for n in range(5):
        log.add("create", serial=f"SERIAL{n:04d}")
    assert [e["serial"] for e in log.entries()] == ["SERIAL0004", "SERIAL0003", "SERIAL0002"]


def test_stats_and_clear(tmp_path):
    log = AuditLog(tmp_path / "audit.db")
    log.add("create", serial="AB123456")
    log.add("restore", serial="AB123456")

    stats = log.stats()
    assert stats["totalCreated"] == 1
    assert stats["totalRestored"] == 1
    assert stats["recentActivity"] == 2
    assert log.stats(now=datetime.now() + timedelta(days=2))["recentActivity"] == 0

    log.clear()
    assert log.entries() == []


def test_unknown_action_rejected(tmp_path):
    with pytest.raises(ValueError):
        AuditLog(tmp_path / "audit.db").add("rename")
