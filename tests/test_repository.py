import datetime as dt
from decimal import Decimal

import pytest

from voice_intake.db import create_session_factory, get_db_engine
from voice_intake.errors import PersistenceError
from voice_intake.repository import EntityKind, SqlInventoryRepository
from voice_intake.tasks import MaintenanceEventTask
from voice_intake.vocabulary import MaintenanceType


@pytest.fixture
def sql_repo(tmp_path):
    engine = get_db_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    return SqlInventoryRepository(create_session_factory(engine))


def test_insert_and_list_active(sql_repo):
    first = sql_repo.insert({"kind": "vendor", "name": "Medika Srl", "phone": "0211223344"})
    sql_repo.insert({"kind": "vendor", "name": "Elettro Impianti Srl"})
    rows = sql_repo.list_active(EntityKind.VENDOR)
    assert [r["name"] for r in rows] == ["Elettro Impianti Srl", "Medika Srl"]
    medika = next(r for r in rows if r["id"] == first)
    assert medika["kind"] == "vendor"
    assert medika["needs_completion"] is False


def test_inactive_records_are_hidden(sql_repo):
    record_id = sql_repo.insert({"kind": "location", "name": "Camera 3"})
    sql_repo.update({"kind": "location", "id": record_id, "is_active": False})
    assert sql_repo.list_active(EntityKind.LOCATION) == []


def test_inline_create_is_flagged(sql_repo):
    record_id = sql_repo.create({"kind": "location", "name": "Ala nord"})
    [row] = sql_repo.list_active(EntityKind.LOCATION)
    assert row["id"] == record_id
    assert row["needs_completion"] is True

    with pytest.raises(PersistenceError):
        sql_repo.create({"kind": "location", "name": "  "})


def test_maintenance_record_round_trip(sql_repo):
    equipment_id = sql_repo.insert({"kind": "equipment", "name": "Letto elettrico", "location_name": "Camera 3"})
    task = MaintenanceEventTask(
        maintenance_type=MaintenanceType.REPAIR,
        description="motore sostituito",
        performed_on=dt.date(2026, 3, 2),
        cost=Decimal("120.50"),
    )
    sql_repo.insert(task.to_record({"equipment": equipment_id}))
    [row] = sql_repo.list_active(EntityKind.MAINTENANCE)
    assert row["equipment_id"] == equipment_id
    assert row["maintenance_type"] == "REPAIR"
    assert row["performed_on"] == "2026-03-02"
    assert row["cost"] == "120.50"


def test_bad_records_raise_persistence_error(sql_repo):
    with pytest.raises(PersistenceError):
        sql_repo.insert({"name": "no kind"})
    with pytest.raises(PersistenceError):
        sql_repo.insert({"kind": "maintenance", "description": "no type"})
    with pytest.raises(PersistenceError):
        sql_repo.insert({"kind": "equipment", "name": "x", "purchase_date": "yesterday"})
    with pytest.raises(PersistenceError):
        sql_repo.update({"kind": "vendor", "id": "missing", "name": "x"})
