# voice_intake/vocabulary.py

from enum import Enum
from typing import Optional

from voice_intake.similarity import normalize_name, similarity


class MetaCategory(str, Enum):
    ORDINARY = "ordinary"
    EXTRAORDINARY = "extraordinary"
    LIFECYCLE = "lifecycle"


class MaintenanceType(Enum):
    # value: (label, meta category, spoken synonyms)
    SCHEDULED = ("Programmata", MetaCategory.ORDINARY,
                 ("programmata", "periodica", "schedulata", "prevista", "ordinaria", "scheduled", "routine"))
    INSPECTION = ("Verifica/Controllo", MetaCategory.ORDINARY,
                  ("verifica", "controllo", "check", "ispezione", "sopralluogo", "inspection"))
    REPAIR = ("Riparazione", MetaCategory.EXTRAORDINARY,
              ("riparazione", "riparato", "aggiustato", "sistemato", "riparare", "aggiustare", "repair", "fixed"))
    REPLACEMENT = ("Sostituzione componente", MetaCategory.EXTRAORDINARY,
                   ("sostituzione", "sostituito", "cambiato", "rimpiazzato", "sostituire", "cambiare", "replacement"))
    INSTALLATION = ("Installazione", MetaCategory.LIFECYCLE,
                    ("installazione", "installato", "montato", "installare", "montare", "installation"))
    ACCEPTANCE_TEST = ("Collaudo", MetaCategory.LIFECYCLE,
                       ("collaudo", "collaudato", "test iniziale", "prima verifica", "acceptance"))
    DECOMMISSION = ("Dismissione", MetaCategory.LIFECYCLE,
                    ("dismissione", "dismesso", "smontato", "buttato", "rimosso", "smantellato", "disposal"))
    EXTRAORDINARY = ("Straordinaria", MetaCategory.EXTRAORDINARY,
                     ("straordinaria", "urgente", "emergenza", "imprevisto", "emergency"))

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def meta_category(self) -> MetaCategory:
        return self.value[1]

    @property
    def synonyms(self) -> tuple:
        return self.value[2]

    @classmethod
    def by_meta_category(cls, meta: MetaCategory) -> list:
        return [t for t in cls if t.meta_category == meta]


def match_maintenance_type(spoken, *, min_similarity: float = 0.8) -> Optional[MaintenanceType]:
    """
    exact name/label -> synonym -> synonym contained in the phrase -> fuzzy
    against synonyms. None when nothing is close enough.
    """
    if isinstance(spoken, MaintenanceType):
        return spoken
    text = normalize_name(spoken).replace("_", " ")
    if not text:
        return None

    for t in MaintenanceType:
        if text in (t.name.lower().replace("_", " "), normalize_name(t.label)):
            return t

    for t in MaintenanceType:
        if text in t.synonyms:
            return t

    words = set(text.split(" "))
    for t in MaintenanceType:
        for syn in t.synonyms:
            if (" " in syn and syn in text) or syn in words:
                return t

    best, best_score = None, 0.0
    for t in MaintenanceType:
        for syn in t.synonyms:
            score = similarity(text, syn)
            if score > best_score:
                best, best_score = t, score
    return best if best_score >= min_similarity else None


def maintenance_type_catalog() -> str:
    """Lines for the extraction prompt: NAME (label): synonyms."""
    return "\n".join(f"- {t.name} ({t.label}): {', '.join(t.synonyms)}" for t in MaintenanceType)
