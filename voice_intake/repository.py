# voice_intake/repository.py

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Protocol

from sqlalchemy import Date, Numeric, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from voice_intake.entities import Assignee, Equipment, Location, MaintenanceEvent, Vendor
from voice_intake.errors import PersistenceError

logger = logging.getLogger("voice_intake")


class EntityKind(str, Enum):
    EQUIPMENT = "equipment"
    MAINTENANCE = "maintenance"
    VENDOR = "vendor"
    LOCATION = "location"
    ASSIGNEE = "assignee"


class InventoryRepository(Protocol):
    """
    What the voice core needs from storage. Records are plain dicts carrying a
    "kind" key; ids are strings.
    """

    def list_active(self, kind: EntityKind) -> List[Dict[str, Any]]: ...

    def create(self, minimal_record: Dict[str, Any]) -> str: ...

    def insert(self, record: Dict[str, Any]) -> str: ...

    def update(self, record: Dict[str, Any]) -> None: ...


MODEL_BY_KIND = {
    EntityKind.EQUIPMENT: Equipment,
    EntityKind.MAINTENANCE: MaintenanceEvent,
    EntityKind.VENDOR: Vendor,
    EntityKind.LOCATION: Location,
    EntityKind.ASSIGNEE: Assignee,
}


def _kind_of(record: Dict[str, Any]) -> EntityKind:
    try:
        return EntityKind(record["kind"])
    except (KeyError, ValueError) as e:
        raise PersistenceError(f"Record has no valid 'kind': {record.get('kind')!r}") from e


class SqlInventoryRepository:
    """
    SQLAlchemy-backed repository. Every call opens and closes its own session.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory

    # -----------------------
    # Record <-> row helpers
    # -----------------------

    def _row_to_dict(self, kind: EntityKind, row) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": kind.value}
        for attr in inspect(row).mapper.column_attrs:
            value = getattr(row, attr.key)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, (date, datetime)):
                value = value.isoformat()
            out[attr.key] = value
        return out

    def _columns_from_record(self, model, record: Dict[str, Any]) -> Dict[str, Any]:
        columns = {c.key: c for c in inspect(model).columns}
        values: Dict[str, Any] = {}
        for key, value in record.items():
            column = columns.get(key)
            if column is None or key in ("created_at", "updated_at"):
                continue
            if isinstance(column.type, Date) and isinstance(value, str) and value:
                try:
                    value = date.fromisoformat(value[:10])
                except ValueError as e:
                    raise PersistenceError(f"Invalid date for {key}: {value!r}") from e
            elif isinstance(column.type, Numeric) and value is not None and not isinstance(value, Decimal):
                try:
                    value = Decimal(str(value))
                except InvalidOperation as e:
                    raise PersistenceError(f"Invalid number for {key}: {value!r}") from e
            values[key] = value
        return values

    # -----------------------
    # Protocol
    # -----------------------

    def list_active(self, kind: EntityKind) -> List[Dict[str, Any]]:
        kind = EntityKind(kind)
        model = MODEL_BY_KIND[kind]
        session: Session = self.SessionFactory()
        try:
            query = session.query(model).filter(model.is_active.is_(True))
            if hasattr(model, "name"):
                query = query.order_by(model.name.asc(), model.id.asc())
            rows = query.all()
            return [self._row_to_dict(kind, r) for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        finally:
            session.close()

    def _add(self, record: Dict[str, Any], *, incomplete: bool) -> str:
        kind = _kind_of(record)
        model = MODEL_BY_KIND[kind]
        values = self._columns_from_record(model, record)
        values.pop("id", None)
        if incomplete:
            values["needs_completion"] = True

        session: Session = self.SessionFactory()
        try:
            row = model(**values)
            session.add(row)
            session.commit()
            logger.info(f"[DB] {kind.value} {row.id} stored (needs_completion={bool(row.needs_completion)})")
            return row.id
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            session.close()

    def create(self, minimal_record: Dict[str, Any]) -> str:
        """Inline creation: the row is flagged for later completion."""
        if not str(minimal_record.get("name") or "").strip():
            raise PersistenceError("Inline creation needs at least a name")
        return self._add(minimal_record, incomplete=True)

    def insert(self, record: Dict[str, Any]) -> str:
        return self._add(record, incomplete=False)

    def update(self, record: Dict[str, Any]) -> None:
        kind = _kind_of(record)
        model = MODEL_BY_KIND[kind]
        record_id = record.get("id")
        if not record_id:
            raise PersistenceError("update() needs the record id")

        session: Session = self.SessionFactory()
        try:
            row = session.get(model, record_id)
            if row is None:
                raise PersistenceError(f"{kind.value} not found: {record_id}")
            for key, value in self._columns_from_record(model, record).items():
                if key != "id":
                    setattr(row, key, value)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            session.close()
