import pytest

from audit_log import AuditLog
from offline_queue import OfflineQueue
from rail_config import DEFAULT_CONFIG
from realtime_listener import RemoteEvent
from staging_session import (
    STATE_CAPTURED,
    STATE_DUPLICATE_HELD,
    STATE_IDLE,
    EntryDetails,
    RemovalFailed,
    StagingActionFailed,
    StagingSession,
)
from staging_client import RemoteRejected, RemoteUnavailable

LABEL = "RAILCO123456789 SAR60 R260LHT UIC 60 18m"


@pytest.fixture
def audit(tmp_path):
    return AuditLog(tmp_path / "audit.db")


@pytest.fixture
def session(remote, queue, clock, audit):
    return StagingSession(remote, queue, clock=clock, audit=audit,
                          details=EntryDetails(operator="Clerk B", destination="Yard 2"))


def test_scan_then_confirm_stages_record(session, remote):
    assert session.on_detected(LABEL) == STATE_CAPTURED
    assert session.pending.grade == "SAR60"

    record = session.confirm()

    assert record.is_durable
    assert record.operator == "Clerk B"
    assert record.destination == "Yard 2"
    assert record.loaded_at == "WalvisBay"
    assert session.state == STATE_IDLE
    assert session.records[0] == record
    assert session.total_count == 1
    assert session.context.is_known("RAILCO123456789")
    assert remote.rows["main"][0]["spec"] == "UIC 60"
    assert session.status == "Saved to staged"


def test_scan_without_serial_is_rejected(session):
    assert session.on_detected("R260HT R260HT") == STATE_IDLE
    assert session.status == "Scan had no detectable serial"
    assert session.pending is None


def test_repeated_frames_evaluate_once(session, remote, clock):
    session.on_detected(LABEL)
    clock.advance(0.3)
    session.on_detected(LABEL)
    clock.advance(0.3)
    session.on_detected(LABEL)
    assert remote.calls.count("existence") == 1


def test_duplicate_hold_then_discard(session):
    session.on_detected(LABEL)
    session.confirm()

    session.debouncer.reset()
    assert session.on_detected(LABEL) == STATE_DUPLICATE_HELD
    prompt = session.duplicate_prompt
    assert prompt.serial == "RAILCO123456789"
    assert len(prompt.matches) == 1

    session.discard_duplicate()
    assert session.state == STATE_IDLE
    assert session.duplicate_prompt is None
    assert session.total_count == 1


def test_continue_duplicate_keeps_fields_and_skips_recheck(session, remote):
    remote.seed("main", "RAILCO123456789")
    assert session.on_detected(LABEL) == STATE_DUPLICATE_HELD

    pending = session.continue_duplicate()
    assert session.state == STATE_CAPTURED
    assert pending.override
    assert pending.rail_type == "R260LHT"

    checks = remote.calls.count("existence")
    record = session.confirm()
    assert record is not None
    assert remote.calls.count("existence") == checks
    assert len(remote.rows["main"]) == 2


def test_confirm_rechecks_for_duplicates(session, remote):
    session.on_detected(LABEL)
    # Another station stages the serial before this operator confirms
    remote.seed("main", "RAILCO123456789")

    assert session.confirm() is None
    assert session.state == STATE_DUPLICATE_HELD
    assert len(remote.rows["main"]) == 1


def test_discard_drops_candidate(session, remote):
    session.on_detected(LABEL)
    session.discard()
    assert session.state == STATE_IDLE
    assert session.confirm() is None
    assert remote.rows["main"] == []


def test_same_serial_in_other_workspace_is_not_duplicate(session, remote):
    remote.seed("alt", "RAILCO123456789")
    assert session.on_detected(LABEL) == STATE_CAPTURED


def test_manual_entry_uses_damaged_label_defaults(session):
    assert session.enter_manual("ab12345678") == STATE_CAPTURED
    pending = session.pending
    assert pending.serial == "AB12345678"
    assert (pending.grade, pending.rail_type, pending.spec, pending.length_m) == (
        "SAR48", "R260", "ATA 2DX066-25", "36 m")


def test_manual_entry_requires_serial(session):
    assert session.enter_manual("   ") == STATE_IDLE
    assert session.status.startswith("Unable to save")


def test_offline_confirm_then_flush_promotes_without_double_count(session, remote, queue):
    remote.online = False
    session.on_detected(LABEL)
    record = session.confirm()

    assert record.local_id.startswith("local-")
    assert record.id is None
    assert session.total_count == 1
    assert session.is_offline()
    assert queue.count("main") == 1
    assert "offline" in session.status

    remote.online = True
    session.handle_connectivity_change(True)

    assert queue.count("main") == 0
    assert not session.is_offline()
    assert session.total_count == 1
    assert len(session.records) == 1
    assert session.records[0].is_durable
    assert session.records[0].serial == "RAILCO123456789"


def test_flush_of_directly_queued_items_raises_count_by_two(session, remote, queue):
    queue.enqueue("main", {"serial": "A1234567", "sheet": "main"})
    queue.enqueue("main", {"serial": "B1234567", "sheet": "main"})

    remote.online = False
    failed = session.flush("main")
    assert not failed.ok
    assert queue.count("main") == 2
    assert session.total_count == 0

    remote.online = True
    result = session.flush("main")
    assert result.sent == 2
    assert queue.count("main") == 0
    assert session.total_count == 2


def test_repeated_flush_failures_update_status(session, remote, queue):
    queue.enqueue("main", {"serial": "A1234567"})
    remote.online = False
    session.flush()
    session.flush()
    assert "Sync failing (2 attempts)" in session.status


def test_stale_duplicate_check_is_discarded(session, remote):
    def switch_mid_check(serial):
        if serial == "RAILCO123456789":
            remote.on_existence = None
            session.switch_workspace("alt")

    remote.on_existence = switch_mid_check
    session.on_detected(LABEL)

    assert session.active_workspace == "alt"
    assert session.state == STATE_IDLE
    assert session.pending is None


def test_switch_workspace_clears_known_serials(session):
    session.import_known_serials("main", ["AB123456", "CD123456"])
    assert session.known_count == 2
    session.switch_workspace("alt")
    session.switch_workspace("main")
    assert session.known_count == 0


def test_known_serial_import_flags_duplicate(session):
    session.import_known_serials("main", ["railco123456789"])
    assert session.on_detected(LABEL) == STATE_DUPLICATE_HELD
    assert session.duplicate_prompt.source == "known"


def test_remove_durable_record(session, remote, audit):
    session.on_detected(LABEL)
    record = session.confirm()

    session.remove_record(record.id)

    assert session.records == ()
    assert session.total_count == 0
    assert remote.rows["main"] == []
    assert audit.entries(action="delete")[0]["serial"] == "RAILCO123456789"


def test_remove_failure_leaves_list_untouched(session, remote):
    session.on_detected(LABEL)
    record = session.confirm()
    remote.online = False

    with pytest.raises(RemovalFailed):
        session.remove_record(record.id)
    assert session.records[0].id == record.id
    assert session.total_count == 1


def test_remove_local_only_record_drops_queued_payload(session, remote, queue):
    remote.online = False
    session.on_detected(LABEL)
    record = session.confirm()

    session.remove_record(record.local_id)

    assert queue.count("main") == 0
    assert session.records == ()


def test_clear_workspace_failure_raises(session, remote):
    remote.online = False
    with pytest.raises(RemovalFailed):
        session.clear_workspace()


def test_restore_from_audit_resubmits_deleted_scan(session, remote, audit):
    session.on_detected(LABEL)
    record = session.confirm()
    session.remove_record(record.id)
    entry = audit.entries(action="delete")[0]

    restored = session.restore_from_audit(entry["id"])

    assert restored.serial == "RAILCO123456789"
    assert restored.rail_type == "R260LHT"
    assert session.total_count == 1
    assert len(remote.rows["main"]) == 1
    assert audit.stats()["totalRestored"] == 1


def test_restore_unknown_entry_fails(session):
    with pytest.raises(StagingActionFailed):
        session.restore_from_audit("missing")


def test_paging_loads_older_rows(remote, queue, clock):
    for n in range(5):
        remote.seed("main", f"RAILCO00000000{n}")
    session = StagingSession(remote, queue, clock=clock, page_size=2)

    assert session.load_first_page()
    assert [r.id for r in session.records] == [5, 4]
    assert session.total_count == 5
    assert session.load_more() == 2
    assert session.load_more() == 1
    assert session.load_more() == 0
    assert [r.id for r in session.records] == [5, 4, 3, 2, 1]


def test_remote_events_are_idempotent(session):
    event = RemoteEvent.from_socket("new-scan", {"id": 42, "serial": "RAILCO555555555", "sheet": "main"})
    assert session.handle_remote_event(event)
    assert not session.handle_remote_event(event)
    assert session.total_count == 1

    deleted = RemoteEvent.from_socket("deleted-scan", {"id": 42, "sheet": "main"})
    assert session.handle_remote_event(deleted)
    assert not session.handle_remote_event(deleted)
    assert session.total_count == 0


def test_remote_event_for_other_workspace_is_ignored(session):
    event = RemoteEvent.from_socket("new-scan", {"id": 3, "serial": "RAILCO555555555", "sheet": "alt"})
    assert not session.handle_remote_event(event)
    assert session.records == ()


def test_export_writes_file(session, tmp_path):
    path = session.export_workbook(tmp_path / "out" / "staged.xlsx")
    assert path.read_bytes().startswith(b"PK")


def test_realtime_echo_before_submit_response_lists_record_once(session, remote):
    submit = remote.submit

    def submit_with_echo(workspace, payload):
        new_id = submit(workspace, payload)
        session.handle_remote_event(RemoteEvent.from_socket(
            "new-scan", {"id": new_id, "serial": payload["serial"], "sheet": workspace}))
        return new_id

    remote.submit = submit_with_echo
    session.on_detected(LABEL)
    record = session.confirm()

    assert record.is_durable
    assert [r.id for r in session.records] == [record.id]
    assert session.total_count == 1


def test_offline_scans_survive_restart_and_flush_per_workspace(session, remote, queue, clock, audit):
    remote.online = False
    session.on_detected(LABEL)
    session.confirm()
    queue.enqueue("alt", {"serial": "ALTRAIL00000001", "sheet": "alt", "localId": "local-alt1"})
    assert queue.count("main") == 1

    # New process: fresh queue handle and session on the same file
    reopened = OfflineQueue(queue.db_path)
    remote.online = True
    bulk_submit = remote.bulk_submit

    def bulk_submit_main_only(workspace, records):
        if workspace == "alt":
            raise RemoteUnavailable("alt: timeout")
        return bulk_submit(workspace, records)

    remote.bulk_submit = bulk_submit_main_only
    restarted = StagingSession(remote, reopened, clock=clock, audit=audit)
    restarted.start()

    assert reopened.count("main") == 0
    assert [r["serial"] for r in remote.rows["main"]] == ["RAILCO123456789"]
    assert restarted.total_count == 1
    assert restarted.records[0].is_durable
    alt_items = reopened.list_all("alt")
    assert [item.payload["localId"] for item in alt_items] == ["local-alt1"]
    assert remote.rows["alt"] == []


def test_rejected_submit_is_not_queued(session, remote, queue):
    def reject(workspace, payload):
        raise RemoteRejected("POST /api/scan: HTTP 400 serial required", 400)

    remote.submit = reject
    session.on_detected(LABEL)

    assert session.confirm() is None
    assert queue.count("main") == 0
    assert session.records == ()
    assert session.total_count == 0
    assert session.state == STATE_CAPTURED
    assert session.status.startswith("Server rejected scan")


def test_damaged_label_defaults_come_from_config_defaults(session):
    assert session.damaged_defaults == DEFAULT_CONFIG["damaged_qr"]
