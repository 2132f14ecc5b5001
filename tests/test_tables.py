import pytest

from barpos import sessions, tables
from barpos.errors import ConflictError, NotFoundError, ValidationError
from barpos.models import DiningTable, OrderSession, TableStatus


def test_reservation_cycle(db, seed, events) -> None:
    ids = seed()
    assert tables.reserve(db, ids.t1).status == "reserved"
    with pytest.raises(ValidationError):
        tables.reserve(db, ids.t1)
    assert tables.cancel_reservation(db, ids.t1).status == "available"
    with pytest.raises(ValidationError):
        tables.cancel_reservation(db, ids.t1)
    assert [event["type"] for channel, event in events if channel == "tables"] == [
        "table_reserved",
        "table_available",
    ]


def test_reserved_table_can_be_seated(db, seed) -> None:
    ids = seed()
    tables.reserve(db, ids.t2)
    session, _ = sessions.open_session(db, ids.t2)
    table = db.get(DiningTable, ids.t2)
    assert (table.status, table.current_session_id) == ("occupied", session.id)


def test_only_cleaning_tables_can_be_marked_clean(db, seed) -> None:
    ids = seed()
    with pytest.raises(ValidationError):
        tables.mark_cleaned(db, ids.t1)
    with pytest.raises(NotFoundError):
        tables.mark_cleaned(db, 999)
    with pytest.raises(ValidationError):
        tables.reserve(db, ids.patio)


def test_seating_rules() -> None:
    free = DiningTable(table_number="T5", status="available", is_active=True)
    tables.ensure_can_seat(free)
    with pytest.raises(ValidationError):
        tables.ensure_can_seat(DiningTable(table_number="T6", status="cleaning", is_active=True))
    with pytest.raises(ValidationError):
        tables.ensure_can_seat(DiningTable(table_number="T7", status="available", is_active=False))
    with pytest.raises(ConflictError):
        tables.ensure_can_seat(DiningTable(table_number="T8", status="occupied", is_active=True, current_session_id=4))


def test_release_leaves_a_foreign_pointer_alone() -> None:
    table = DiningTable(table_number="T9", status="occupied", current_session_id=2)
    tables.release(table, OrderSession(id=1))
    assert (table.status, table.current_session_id) == ("occupied", 2)
    tables.release(table, OrderSession(id=2))
    assert (table.status, table.current_session_id) == ("cleaning", None)


def test_list_and_summary_skip_inactive_tables(db, seed) -> None:
    ids = seed()
    sessions.open_session(db, ids.t1)

    listed = tables.list_tables(db)
    assert [table.table_number for table in listed] == ["T1", "T2"]
    assert [table.id for table in tables.list_tables(db, TableStatus.OCCUPIED)] == [ids.t1]
    assert tables.list_tables(db, area="Patio") == []
    assert tables.availability_summary(db) == {
        "available": 1,
        "reserved": 0,
        "occupied": 1,
        "cleaning": 0,
        "total": 2,
    }
