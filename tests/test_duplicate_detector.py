from duplicate_detector import (
    SOURCE_KNOWN,
    SOURCE_REMOTE,
    SOURCE_STAGED,
    DuplicateDetector,
    ScanDebouncer,
)
from staged_records import StagedRecord
from workspace_context import WorkspaceContext


def test_staged_serial_is_duplicate_case_insensitively():
    ctx = WorkspaceContext("main")
    ctx.prepend(StagedRecord(serial="RAILCO123456789", id=7))
    result = DuplicateDetector().check_local(" railco123456789 ", ctx)
    assert result.is_dup
    assert result.source == SOURCE_STAGED
    assert [r.id for r in result.matches] == [7]


def test_known_serial_is_duplicate_without_matches():
    ctx = WorkspaceContext("main")
    ctx.import_known(["AB123456"])
    result = DuplicateDetector().check_local("AB123456", ctx)
    assert result.is_dup
    assert result.source == SOURCE_KNOWN
    assert result.matches == []


def test_workspaces_are_isolated(remote):
    main = WorkspaceContext("main")
    alt = WorkspaceContext("alt")
    main.prepend(StagedRecord(serial="RAILCO123456789", id=1))
    remote.seed("main", "RAILCO123456789")
    detector = DuplicateDetector(remote)
    assert detector.is_duplicate("RAILCO123456789", main).is_dup
    assert not detector.is_duplicate("RAILCO123456789", alt).is_dup


def test_remote_match_builds_record_from_row(remote):
    remote.seed("alt", "RAILCO999999999", grade="SAR60")
    result = DuplicateDetector(remote).check_remote("RAILCO999999999", "alt")
    assert result.is_dup
    assert result.source == SOURCE_REMOTE
    assert result.matches[0].grade == "SAR60"
    assert result.matches[0].workspace == "alt"


def test_remote_failure_is_treated_as_new(remote):
    remote.online = False
    result = DuplicateDetector(remote).is_duplicate("RAILCO123456789", WorkspaceContext("main"))
    assert not result.is_dup


def test_debounce_suppresses_repeats_inside_window(clock):
    deb = ScanDebouncer(1.2, clock=clock)
    assert not deb.should_suppress("AB123456")
    clock.advance(0.5)
    assert deb.should_suppress("ab123456")
    clock.advance(1.0)
    assert not deb.should_suppress("AB123456")


def test_debounce_lets_different_serial_through(clock):
    deb = ScanDebouncer(1.2, clock=clock)
    assert not deb.should_suppress("AB123456")
    assert not deb.should_suppress("CD123456")
    assert not deb.should_suppress("AB123456")
    deb.reset()
    assert not deb.should_suppress("AB123456")
