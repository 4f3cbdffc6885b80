# voice_intake/tasks.py

import datetime as dt
import logging
import re
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Tuple

from voice_intake.conversation_context import SpeakerHint
from voice_intake.errors import PersistenceError, TaskStateError
from voice_intake.repository import EntityKind
from voice_intake.vocabulary import MaintenanceType, match_maintenance_type

logger = logging.getLogger("voice_intake")


class TaskKind(str, Enum):
    EQUIPMENT_CREATION = "equipment_creation"
    MAINTENANCE_EVENT = "maintenance_event"
    VENDOR_CREATION = "vendor_creation"
    LOCATION_CREATION = "location_creation"


class TaskStatus(str, Enum):
    COLLECTING = "collecting"
    COMPLETE = "complete"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


# -----------------------
# Value coercion
# -----------------------

_TODAY_WORDS = {"today", "oggi"}
_YESTERDAY_WORDS = {"yesterday", "ieri"}
_TRUE_WORDS = {"true", "yes", "si", "sì", "1", "vero"}
_FALSE_WORDS = {"false", "no", "0", "falso"}


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_date(value, today: Optional[dt.date] = None) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip().lower()
    today = today or dt.date.today()
    if text in _TODAY_WORDS:
        return today
    if text in _YESTERDAY_WORDS:
        return today - dt.timedelta(days=1)
    m = re.fullmatch(r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})", text)
    if m:
        # spoken dates are day-first
        return dt.date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    return dt.date.fromisoformat(text[:10])


def coerce_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"not a yes/no value: {value!r}")


def coerce_int(value) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a count")
    if isinstance(value, (int, float)):
        return int(value)
    return int(float(str(value).strip().replace(",", ".")))


def coerce_decimal(value) -> Decimal:
    text = str(value).strip().replace("€", "").replace("EUR", "").strip()
    if "," in text and "." in text:
        text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"not an amount: {value!r}") from e


def coerce_maintenance_type(value) -> MaintenanceType:
    matched = match_maintenance_type(value)
    if matched is None:
        raise ValueError(f"unknown maintenance type: {value!r}")
    return matched


def coerce_text(value) -> str:
    return str(value).strip()


# -----------------------
# Task variants
# -----------------------

@dataclass(frozen=True)
class ActiveTask:
    """
    Shared behaviour of the per-domain field bags.

    Subclasses declare their fields as Optional dataclass fields and fill the
    class-level tables below; completeness, merging and summaries live here.
    """

    kind: ClassVar[TaskKind]
    REQUIRED: ClassVar[Tuple[str, ...]] = ()
    LABELS: ClassVar[Dict[str, str]] = {}
    COERCERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {}
    # free-text field -> kind of stored record it names
    REFERENCES: ClassVar[Dict[str, EntityKind]] = {}
    # alternative keys the model or the UI may use
    ALIASES: ClassVar[Dict[str, str]] = {}

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def missing_required_fields(self, speaker_hint: Optional[SpeakerHint] = None) -> List[str]:
        return [name for name in self.REQUIRED if _blank(getattr(self, name))]

    def is_complete(self, speaker_hint: Optional[SpeakerHint] = None) -> bool:
        return not self.missing_required_fields(speaker_hint)

    def coerce_updates(self, updates: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        """
        Clean an update map: unknown keys and blank values are dropped, values
        are converted to the field's type. Returns (clean, warnings).
        """
        known = set(self.field_names())
        clean: Dict[str, Any] = {}
        warnings: List[str] = []
        for key, value in (updates or {}).items():
            key = self.ALIASES.get(key, key)
            if key not in known:
                logger.debug("ignoring unknown %s field %r", self.kind.value, key)
                continue
            if _blank(value):
                continue
            coercer = self.COERCERS.get(key, coerce_text)
            try:
                clean[key] = coercer(value)
            except (TypeError, ValueError) as e:
                warnings.append(f"{self.LABELS.get(key, key)}: value {value!r} not understood ({e})")
        return clean, warnings

    def merge(self, updates: Mapping[str, Any]) -> "ActiveTask":
        """
        Monotonic merge: supplied fields overwrite, absent or blank ones never
        clear what was already collected.
        """
        clean, warnings = self.coerce_updates(updates)
        for w in warnings:
            logger.warning(w)
        if not clean:
            return self
        return replace(self, **clean)

    def with_snapshot(self, snapshot: Mapping[str, Any]) -> "ActiveTask":
        """
        Take the presentation layer's values as the new base. Unlike merge(),
        a None here is a manual clear and is honoured.
        """
        known = set(self.field_names())
        values: Dict[str, Any] = {}
        for key, value in (snapshot or {}).items():
            key = self.ALIASES.get(key, key)
            if key not in known:
                continue
            if _blank(value):
                values[key] = None
                continue
            try:
                values[key] = self.COERCERS.get(key, coerce_text)(value)
            except (TypeError, ValueError):
                logger.warning("snapshot value for %s not understood: %r", key, value)
        return replace(self, **values) if values else self

    def field_values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.field_names() if not _blank(getattr(self, name))}

    def collected_summary(self) -> str:
        lines = []
        for name, value in self.field_values().items():
            if isinstance(value, MaintenanceType):
                value = value.label
            elif isinstance(value, bool):
                value = "sì" if value else "no"
            elif isinstance(value, dt.date):
                value = value.isoformat()
            lines.append(f"- {self.LABELS.get(name, name)}: {value}")
        return "\n".join(lines) if lines else "(nothing collected yet)"

    def to_record(self, resolved_ids: Optional[Mapping[str, str]] = None, speaker_hint: Optional[SpeakerHint] = None) -> Dict[str, Any]:
        raise NotImplementedError


def _json_ready(values: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in values.items():
        if isinstance(v, MaintenanceType):
            v = v.name
        elif isinstance(v, dt.date):
            v = v.isoformat()
        elif isinstance(v, Decimal):
            v = str(v)
        out[k] = v
    return out


@dataclass(frozen=True)
class EquipmentCreationTask(ActiveTask):
    kind: ClassVar[TaskKind] = TaskKind.EQUIPMENT_CREATION
    REQUIRED: ClassVar[Tuple[str, ...]] = ("name", "category", "location")
    LABELS: ClassVar[Dict[str, str]] = {
        "name": "Nome", "category": "Categoria", "location": "Ubicazione", "brand": "Marca",
        "model": "Modello", "serial_number": "Numero di serie", "barcode": "Codice a barre",
        "purchase_date": "Data acquisto", "warranty_months": "Garanzia (mesi)",
        "vendor": "Fornitore/Manutentore", "notes": "Note",
    }
    COERCERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "purchase_date": coerce_date,
        "warranty_months": coerce_int,
    }
    REFERENCES: ClassVar[Dict[str, EntityKind]] = {
        "location": EntityKind.LOCATION,
        "vendor": EntityKind.VENDOR,
    }

    name: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    barcode: Optional[str] = None
    purchase_date: Optional[dt.date] = None
    warranty_months: Optional[int] = None
    vendor: Optional[str] = None
    notes: Optional[str] = None

    def to_record(self, resolved_ids=None, speaker_hint=None) -> Dict[str, Any]:
        ids = dict(resolved_ids or {})
        values = self.field_values()
        location = values.pop("location", None)
        values.pop("vendor", None)
        return {
            "kind": EntityKind.EQUIPMENT.value,
            **values,
            "location_name": location,
            "location_id": ids.get("location"),
            "vendor_id": ids.get("vendor"),
        }


@dataclass(frozen=True)
class MaintenanceEventTask(ActiveTask):
    kind: ClassVar[TaskKind] = TaskKind.MAINTENANCE_EVENT
    REQUIRED: ClassVar[Tuple[str, ...]] = ("maintenance_type", "description")
    LABELS: ClassVar[Dict[str, str]] = {
        "equipment": "Apparecchiatura", "equipment_id": "Codice apparecchiatura",
        "maintenance_type": "Tipo intervento", "description": "Descrizione",
        "performed_by": "Eseguito da", "performed_on": "Data", "cost": "Costo",
        "duration_minutes": "Durata (minuti)", "is_warranty_work": "In garanzia", "notes": "Note",
    }
    COERCERS: ClassVar[Dict[str, Callable[[Any], Any]]] = {
        "maintenance_type": coerce_maintenance_type,
        "performed_on": coerce_date,
        "cost": coerce_decimal,
        "duration_minutes": coerce_int,
        "is_warranty_work": coerce_bool,
    }
    REFERENCES: ClassVar[Dict[str, EntityKind]] = {
        "equipment": EntityKind.EQUIPMENT,
        "performed_by": EntityKind.VENDOR,
    }
    ALIASES: ClassVar[Dict[str, str]] = {
        "type": "maintenance_type",
        "intervention_type": "maintenance_type",
        "date": "performed_on",
        "performer": "performed_by",
        "maintainer": "performed_by",
        "is_warranty": "is_warranty_work",
    }

    equipment: Optional[str] = None
    # set when the task starts from a known equipment record
    equipment_id: Optional[str] = None
    maintenance_type: Optional[MaintenanceType] = None
    description: Optional[str] = None
    performed_by: Optional[str] = None
    performed_on: Optional[dt.date] = None
    cost: Optional[Decimal] = None
    duration_minutes: Optional[int] = None
    is_warranty_work: Optional[bool] = None
    notes: Optional[str] = None

    def missing_required_fields(self, speaker_hint: Optional[SpeakerHint] = None) -> List[str]:
        missing = super().missing_required_fields(speaker_hint)
        # who did the work only has to be asked when the wording did not tell
        if speaker_hint == SpeakerHint.UNKNOWN and _blank(self.performed_by):
            missing.append("performed_by")
        return missing

    def is_self_reported(self, speaker_hint: Optional[SpeakerHint]) -> bool:
        return speaker_hint == SpeakerHint.LIKELY_PERFORMER and _blank(self.performed_by)

    def to_record(self, resolved_ids=None, speaker_hint=None) -> Dict[str, Any]:
        ids = dict(resolved_ids or {})
        values = self.field_values()
        values.pop("equipment", None)
        performer = values.pop("performed_by", None)
        if values.get("performed_on") is None:
            values["performed_on"] = dt.date.today()
        return {
            "kind": EntityKind.MAINTENANCE.value,
            **values,
            "maintenance_type": self.maintenance_type.name if self.maintenance_type else None,
            "equipment_id": self.equipment_id or ids.get("equipment"),
            "performed_by_id": ids.get("performed_by"),
            "performed_by_name": performer,
            "self_reported": self.is_self_reported(speaker_hint),
        }


@dataclass(frozen=True)
class VendorCreationTask(ActiveTask):
    kind: ClassVar[TaskKind] = TaskKind.VENDOR_CREATION
    REQUIRED: ClassVar[Tuple[str, ...]] = ("name",)
    LABELS: ClassVar[Dict[str, str]] = {
        "name": "Nome", "company": "Azienda", "email": "Email", "phone": "Telefono",
        "specialization": "Specializzazione", "notes": "Note", "contact": "Email o telefono",
    }

    name: Optional[str] = None
    company: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    specialization: Optional[str] = None
    notes: Optional[str] = None

    def missing_required_fields(self, speaker_hint: Optional[SpeakerHint] = None) -> List[str]:
        missing = []
        if _blank(self.name) and _blank(self.company):
            missing.append("name")
        if _blank(self.email) and _blank(self.phone):
            missing.append("contact")
        return missing

    def to_record(self, resolved_ids=None, speaker_hint=None) -> Dict[str, Any]:
        values = self.field_values()
        values.setdefault("name", self.company)
        return {"kind": EntityKind.VENDOR.value, **values}


@dataclass(frozen=True)
class LocationCreationTask(ActiveTask):
    kind: ClassVar[TaskKind] = TaskKind.LOCATION_CREATION
    REQUIRED: ClassVar[Tuple[str, ...]] = ("name",)
    LABELS: ClassVar[Dict[str, str]] = {
        "name": "Nome", "building": "Edificio", "floor": "Piano", "department": "Reparto",
        "parent": "Dentro a", "notes": "Note",
    }
    REFERENCES: ClassVar[Dict[str, EntityKind]] = {"parent": EntityKind.LOCATION}

    name: Optional[str] = None
    building: Optional[str] = None
    floor: Optional[str] = None
    department: Optional[str] = None
    parent: Optional[str] = None
    notes: Optional[str] = None

    def to_record(self, resolved_ids=None, speaker_hint=None) -> Dict[str, Any]:
        values = self.field_values()
        values.pop("parent", None)
        return {"kind": EntityKind.LOCATION.value, **values, "parent_id": (resolved_ids or {}).get("parent")}


TASK_TYPES: Dict[TaskKind, type] = {
    TaskKind.EQUIPMENT_CREATION: EquipmentCreationTask,
    TaskKind.MAINTENANCE_EVENT: MaintenanceEventTask,
    TaskKind.VENDOR_CREATION: VendorCreationTask,
    TaskKind.LOCATION_CREATION: LocationCreationTask,
}


def new_task(kind: TaskKind, seed: Optional[Mapping[str, Any]] = None) -> ActiveTask:
    task = TASK_TYPES[TaskKind(kind)]()
    return task.merge(seed or {})


def record_for_json(record: Mapping[str, Any]) -> Dict[str, Any]:
    return _json_ready(dict(record))


# -----------------------
# State machine
# -----------------------

class TaskStateMachine:
    """
    collecting -> complete (predicate) -> confirmed (persisted) | abandoned.

    A failed save goes back to collecting with every field kept, so the
    operator can retry without dictating again.
    """

    def __init__(self, task: ActiveTask, speaker_hint: SpeakerHint = SpeakerHint.UNKNOWN):
        self.task = task
        self.speaker_hint = speaker_hint
        self.persisted_id: Optional[str] = None
        self._terminal: Optional[TaskStatus] = None
        self.last_error: Optional[Exception] = None

    @property
    def kind(self) -> TaskKind:
        return self.task.kind

    @property
    def status(self) -> TaskStatus:
        if self._terminal is not None:
            return self._terminal
        return TaskStatus.COMPLETE if self.task.is_complete(self.speaker_hint) else TaskStatus.COLLECTING

    @property
    def is_terminal(self) -> bool:
        return self._terminal is not None

    def missing_required_fields(self) -> List[str]:
        return self.task.missing_required_fields(self.speaker_hint)

    def _ensure_open(self, action: str) -> None:
        if self._terminal is not None:
            raise TaskStateError(f"Cannot {action}: task is {self._terminal.value}")

    def apply(self, updates: Mapping[str, Any]) -> ActiveTask:
        self._ensure_open("apply updates")
        self.task = self.task.merge(updates)
        return self.task

    def apply_snapshot(self, snapshot: Optional[Mapping[str, Any]]) -> ActiveTask:
        self._ensure_open("apply snapshot")
        if snapshot:
            self.task = self.task.with_snapshot(snapshot)
        return self.task

    def confirm(self, persist: Callable[[ActiveTask], str]) -> str:
        """
        Explicit operator confirmation. `persist` receives the task and returns
        the stored id; any exception it raises rolls the task back to collecting.
        """
        self._ensure_open("confirm")
        missing = self.missing_required_fields()
        if missing:
            raise TaskStateError(f"Cannot confirm, missing: {', '.join(missing)}")

        try:
            record_id = persist(self.task)
        except PersistenceError as e:
            self.last_error = e
            logger.warning(f"Persistence failed for {self.kind.value}, back to collecting: {e}")
            raise
        except Exception as e:
            self.last_error = e
            logger.warning(f"Persistence failed for {self.kind.value}, back to collecting: {e}")
            raise PersistenceError(str(e)) from e

        self.persisted_id = record_id
        self.last_error = None
        self._terminal = TaskStatus.CONFIRMED
        return record_id

    def abandon(self) -> None:
        if self._terminal == TaskStatus.CONFIRMED:
            raise TaskStateError("Cannot abandon a confirmed task")
        self._terminal = TaskStatus.ABANDONED
