from pathlib import Path

from replica_sync import COMPLETE_MESSAGE, IgnoreMatcher, check_sync_completion, count_entries

from conftest import read_log, write_file


def test_count_entries_counts_files_and_directories(tmp_path: Path):
    write_file(tmp_path / "a.txt")
    write_file(tmp_path / "d" / "b.txt")
    (tmp_path / "d" / "empty").mkdir()

    assert count_entries(tmp_path) == 4


def test_count_entries_skips_ignored(tmp_path: Path):
    write_file(tmp_path / "a.txt")
    write_file(tmp_path / "b.tmp")
    write_file(tmp_path / "build" / "c.o")

    assert count_entries(tmp_path, IgnoreMatcher(["*.tmp", "build/"])) == 1


def test_completion_logged_once_per_mutating_pass(source, replica, logger, session, log_path):
    write_file(source / "a.txt")
    write_file(replica / "a.txt")
    session.changes_made = True

    assert check_sync_completion(source, replica, logger, session)
    assert session.changes_made is False
    assert read_log(log_path) == [COMPLETE_MESSAGE]

    assert not check_sync_completion(source, replica, logger, session)
    assert read_log(log_path) == [COMPLETE_MESSAGE]


def test_no_completion_without_changes(source, replica, logger, session, log_path):
    write_file(source / "a.txt")
    write_file(replica / "a.txt")

    assert not check_sync_completion(source, replica, logger, session)
    assert read_log(log_path) == []


def test_no_completion_when_counts_differ(source, replica, logger, session, log_path):
    write_file(source / "a.txt")
    write_file(source / "b.txt")
    write_file(replica / "a.txt")
    session.changes_made = True

    assert not check_sync_completion(source, replica, logger, session)
    assert session.changes_made is True
    assert read_log(log_path) == []


def test_equal_counts_with_different_names_still_report_completion(source, replica, logger, session):
    # only cardinality is compared
    write_file(source / "a.txt")
    write_file(replica / "z.txt")
    session.changes_made = True

    assert check_sync_completion(source, replica, logger, session)


def test_count_failure_logged_as_not_converged(source, replica, logger, session, log_path, monkeypatch):
    import replica_sync

    def broken_count(root, ignore=None):
        raise PermissionError(13, "Permission denied", str(root))

    monkeypatch.setattr(replica_sync, "count_entries", broken_count)
    session.changes_made = True

    assert not check_sync_completion(source, replica, logger, session)
    assert session.changes_made is True
    messages = read_log(log_path)
    assert len(messages) == 1
    assert messages[0].startswith("Filesystem error: [Errno 13] Permission denied")
