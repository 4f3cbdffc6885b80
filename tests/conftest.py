import copy
import itertools
import uuid

import pytest

from voice_intake.config import Settings, with_overrides
from voice_intake.errors import PersistenceError
from voice_intake.extraction_pipeline import ExtractionPipeline
from voice_intake.repository import EntityKind


class FakeEngine:
    """Recognition engine driven by the test: callbacks are invoked by hand."""

    def __init__(self, fail_start=False):
        self.listener = None
        self.languages = []
        self.cancels = 0
        self.released = False
        self.fail_start = fail_start

    def set_listener(self, listener):
        self.listener = listener

    def start(self, language):
        if self.fail_start:
            raise RuntimeError("microphone busy")
        self.languages.append(language)

    @property
    def starts(self):
        return len(self.languages)

    def cancel(self):
        self.cancels += 1

    def release(self):
        self.released = True


class FakeChatLlm:
    """Returns scripted answers in order; an Exception in the script is raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def invoke(self, messages, **kwargs):
        self.calls.append(list(messages))
        if not self.responses:
            raise AssertionError("FakeChatLlm ran out of scripted responses")
        answer = self.responses.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeRepository:
    def __init__(self, records=None):
        self.records = {kind: [] for kind in EntityKind}
        for kind, rows in (records or {}).items():
            for row in rows:
                self.add(kind, **row)
        self.inserted = []
        self.created = []
        self.fail_insert = None
        self._ids = itertools.count(1)

    def add(self, kind, **values):
        row = {"id": values.pop("id", None) or str(uuid.uuid4()), "kind": EntityKind(kind).value, "is_active": True}
        row.update(values)
        self.records[EntityKind(kind)].append(row)
        return row

    def list_active(self, kind):
        return [copy.deepcopy(r) for r in self.records[EntityKind(kind)] if r.get("is_active", True)]

    def create(self, minimal_record):
        record_id = f"new-{next(self._ids)}"
        row = dict(minimal_record, id=record_id, needs_completion=True)
        self.created.append(row)
        self.records[EntityKind(row["kind"])].append(row)
        return record_id

    def insert(self, record):
        if self.fail_insert is not None:
            raise self.fail_insert
        record_id = f"rec-{next(self._ids)}"
        self.inserted.append(dict(record, id=record_id))
        return record_id

    def update(self, record):
        for row in self.records[EntityKind(record["kind"])]:
            if row["id"] == record["id"]:
                row.update(record)
                return
        raise PersistenceError(f"not found: {record['id']}")


def extraction_answer(updates=None, confirmation="Ok.", confidence=0.9, missing=None):
    import json
    return json.dumps({
        "updates": updates or {},
        "confirmation": confirmation,
        "confidence": confidence,
        "missing_fields": missing or [],
    })


@pytest.fixture
def settings():
    return with_overrides(Settings(), capture={"restart_delay_seconds": 0.0})


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def repo():
    return FakeRepository({
        EntityKind.VENDOR: [
            {"name": "Siemens Healthcare", "company": "Siemens"},
            {"name": "Medika Srl"},
            {"name": "Medika Service"},
            {"name": "Elettro Impianti Srl"},
        ],
        EntityKind.LOCATION: [
            {"name": "Camera 12", "floor": "P1"},
            {"name": "Magazzino farmacia", "floor": "PT"},
        ],
        EntityKind.EQUIPMENT: [
            {"name": "Concentratore ossigeno", "location_name": "Camera 12"},
            {"name": "Letto elettrico", "location_name": "Camera 3"},
            {"name": "Letto elettrico", "location_name": "Camera 12"},
        ],
        EntityKind.ASSIGNEE: [
            {"name": "Ufficio tecnico", "department": "Manutenzione"},
        ],
    })


@pytest.fixture
def make_pipeline(repo, settings):
    def factory(*responses, **kwargs):
        kwargs.setdefault("chat_llm", FakeChatLlm(*responses))
        return ExtractionPipeline(repo, kwargs.pop("settings", settings), **kwargs)
    return factory
