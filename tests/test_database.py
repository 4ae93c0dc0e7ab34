import pytest

from orvex.errors import PersistenceConflictError


def test_insert_if_absent_keeps_first_value(db):
    assert db.insert_record_if_absent("wallet", "1", {"v": 1}) is True
    assert db.insert_record_if_absent("wallet", "1", {"v": 2}) is False
    assert db.get_record("wallet", "1") == {"v": 1}


def test_put_and_delete(db):
    db.put_record("settings", 5, {"a": 1})
    db.put_record("settings", "5", {"a": 2})

    assert db.get_record("settings", "5") == {"a": 2}
    assert db.count_records("settings") == 1
    assert db.delete_record("settings", "5") is True
    assert db.delete_record("settings", "5") is False


def test_update_record_creates_and_deletes(db):
    assert db.update_record("positions", "1", lambda rows: rows + [1], default=[]) == [1]
    assert db.get_record("positions", "1") == [1]

    assert db.update_record("positions", "1", lambda rows: None) is None
    assert db.get_record("positions", "1") is None


def test_update_record_mutates_a_copy_of_default(db):
    default = []
    db.update_record("positions", "1", lambda rows: rows.append(1) or rows, default=default)

    assert default == []


def test_update_record_retries_on_concurrent_write(db):
    db.put_record("positions", "1", [0])
    calls = []

    def mutate(rows):
        calls.append(list(rows))
        if len(calls) == 1:
            # Another writer lands between our read and our write
            db.put_record("positions", "1", rows + ["other"])
        return rows + ["mine"]

    result = db.update_record("positions", "1", mutate)

    assert calls == [[0], [0, "other"]]
    assert result == [0, "other", "mine"]


def test_update_record_gives_up_after_max_retries(db):
    db.put_record("positions", "1", [0])
    db.max_retries = 3

    def always_conflict(rows):
        db.put_record("positions", "1", rows + ["other"])
        return rows

    with pytest.raises(PersistenceConflictError):
        db.update_record("positions", "1", always_conflict)

