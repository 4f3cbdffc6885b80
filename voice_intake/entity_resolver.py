# voice_intake/entity_resolver.py

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Optional, Sequence, TypeVar, Union

from voice_intake.config import ResolverThresholds
from voice_intake.repository import EntityKind, InventoryRepository
from voice_intake.similarity import name_similarity, normalize_name

logger = logging.getLogger("voice_intake")

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    record: T


@dataclass(frozen=True)
class Ambiguous(Generic[T]):
    candidates: tuple
    query: str


@dataclass(frozen=True)
class NotFound:
    query: str


@dataclass(frozen=True)
class NeedsConfirmation(Generic[T]):
    candidate: T
    similarity: float
    query: str


Resolution = Union[Found, Ambiguous, NotFound, NeedsConfirmation]


def default_name_of(record: Any) -> str:
    if isinstance(record, str):
        return record
    if isinstance(record, dict):
        return str(record.get("name") or "")
    return str(getattr(record, "name", "") or "")


def _no_aliases(record: Any) -> Sequence[str]:
    return ()


def resolve(
    query: str,
    pool: Iterable[T],
    *,
    name_of: Callable[[T], str] = default_name_of,
    aliases_of: Callable[[T], Sequence[str]] = _no_aliases,
    thresholds: Optional[ResolverThresholds] = None,
) -> Resolution:
    """
    Map a spoken name to one record of `pool`.

    Tiers, first hit wins:
      1. exact case-insensitive match -> Found (first record with that name)
      2. substring either way: one hit -> Found, 2..max_substring_matches -> Ambiguous
      3. fuzzy score >= min_similarity:
         none -> NotFound, one >= high_confidence -> Found, one below -> NeedsConfirmation,
         several with top-two gap > confidence_gap -> NeedsConfirmation(top),
         otherwise Ambiguous(top_candidates)

    Pure: `pool` is only read, the same input always yields the same outcome.
    """
    th = thresholds or ResolverThresholds()
    q = normalize_name(query)
    if not q:
        return NotFound(query=query or "")

    candidates = list(pool)
    if not candidates:
        return NotFound(query=query)

    def names(record) -> list[str]:
        out = [normalize_name(name_of(record))]
        out.extend(normalize_name(a) for a in (aliases_of(record) or ()))
        return [n for n in out if n]

    # 1. exact
    for record in candidates:
        if q in names(record):
            return Found(record)

    # 2. substring containment
    contained = [r for r in candidates if any(q in n or n in q for n in names(r))]
    if len(contained) == 1:
        return Found(contained[0])
    if 2 <= len(contained) <= th.max_substring_matches:
        return Ambiguous(candidates=tuple(contained), query=query)

    # 3. fuzzy
    scored = []
    for record in candidates:
        score = max(
            (name_similarity(q, n, partial_weight=th.partial_name_weight) for n in names(record)),
            default=0.0,
        )
        if score >= th.min_similarity:
            scored.append((record, score))

    if not scored:
        return NotFound(query=query)

    # stable: equal scores keep pool order
    scored.sort(key=lambda pair: pair[1], reverse=True)

    if len(scored) == 1:
        record, score = scored[0]
        if score >= th.high_confidence:
            return Found(record)
        return NeedsConfirmation(candidate=record, similarity=score, query=query)

    (top, top_score), (_, second_score) = scored[0], scored[1]
    if round(top_score - second_score, 6) > th.confidence_gap:
        return NeedsConfirmation(candidate=top, similarity=top_score, query=query)

    return Ambiguous(candidates=tuple(r for r, _ in scored[: th.top_candidates]), query=query)


def resolution_to_dict(resolution: Resolution) -> dict:
    if isinstance(resolution, Found):
        return {"outcome": "found", "record": resolution.record}
    if isinstance(resolution, Ambiguous):
        return {"outcome": "ambiguous", "query": resolution.query, "candidates": list(resolution.candidates)}
    if isinstance(resolution, NeedsConfirmation):
        return {
            "outcome": "needs_confirmation",
            "query": resolution.query,
            "candidate": resolution.candidate,
            "similarity": resolution.similarity,
        }
    return {"outcome": "not_found", "query": resolution.query}


# names a record may also be called by, per kind
_ALIASES = {
    EntityKind.VENDOR: lambda r: [r.get("company") or ""],
    EntityKind.ASSIGNEE: lambda r: [r.get("department") or ""],
}


class EntityResolver:
    """
    Resolves names against the active records the repository lists for a kind.
    Never writes to the repository.
    """

    def __init__(self, repository: InventoryRepository, thresholds: Optional[ResolverThresholds] = None):
        self.repository = repository
        self.thresholds = thresholds or ResolverThresholds()

    def resolve(self, kind: EntityKind, query: str) -> Resolution:
        kind = EntityKind(kind)
        pool = list(self.repository.list_active(kind))
        outcome = resolve(
            query,
            pool,
            aliases_of=_ALIASES.get(kind, _no_aliases),
            thresholds=self.thresholds,
        )
        logger.debug("resolve %s %r over %d records -> %s", kind.value, query, len(pool), type(outcome).__name__)
        return outcome

    def resolve_vendor(self, query: str) -> Resolution:
        return self.resolve(EntityKind.VENDOR, query)

    def resolve_location(self, query: str) -> Resolution:
        return self.resolve(EntityKind.LOCATION, query)

    def resolve_assignee(self, query: str) -> Resolution:
        return self.resolve(EntityKind.ASSIGNEE, query)

    def resolve_equipment(self, query: str, location_hint: Optional[str] = None) -> Resolution:
        """
        Equipment names repeat across rooms ("letto elettrico"). Several active
        records carrying exactly the spoken name are Ambiguous rather than the
        first one listed, and an ambiguous outcome is narrowed by the spoken
        location when there is one.
        """
        q = normalize_name(query)
        pool = list(self.repository.list_active(EntityKind.EQUIPMENT))
        same_name = [r for r in pool if q and normalize_name(default_name_of(r)) == q]
        if len(same_name) > 1:
            outcome = Ambiguous(candidates=tuple(same_name[: self.thresholds.max_substring_matches]), query=query)
            logger.debug("resolve equipment %r: %d records share the name", query, len(same_name))
        else:
            outcome = resolve(query, pool, thresholds=self.thresholds)
            logger.debug("resolve equipment %r over %d records -> %s", query, len(pool), type(outcome).__name__)

        if not isinstance(outcome, Ambiguous) or not normalize_name(location_hint):
            return outcome

        hint = normalize_name(location_hint)
        narrowed = [
            c for c in outcome.candidates
            if hint in normalize_name(c.get("location_name")) or normalize_name(c.get("location_name")) in hint
            if normalize_name(c.get("location_name"))
        ]
        if len(narrowed) == 1:
            return Found(narrowed[0])
        if len(narrowed) > 1:
            return Ambiguous(candidates=tuple(narrowed), query=outcome.query)
        return outcome
