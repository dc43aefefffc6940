"""Diversity-constrained generation: retry until a candidate is not a repeat.

:func:`generate_with_constraint` has the same shape as the coordinator's retry
loop but a different predicate. Each rejected candidate's title, primary
ingredient and method are folded into the constraint set handed to the next
attempt, so every retry is strictly more restrictive than the last.

Running out of tries is not an error. The loop makes one final attempt with
the fully grown constraint set and returns whatever it produces, accepting a
possibly repetitive recipe rather than stalling the scheduled run. Errors
raised by ``generate`` itself (the LLM is unreachable) still propagate.

Matching policy of :func:`is_diverse`:
- titles are rejected on substring containment in either direction,
  case-insensitively ("Miso Soup" rejects "Spicy Miso Soup");
- primary ingredients and methods are rejected on exact string equality only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Iterable, Mapping, Optional, TypeVar

__all__ = [
    "DiversityConstraints",
    "candidate_attributes",
    "is_diverse",
    "generate_with_constraint",
]

LOGGER = logging.getLogger(__name__)

C = TypeVar("C")


def _clean(values: Iterable[Optional[str]]) -> FrozenSet[str]:
    return frozenset(str(v) for v in values if v is not None and str(v).strip())


def candidate_attributes(candidate: Any) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Return ``(title, primary_ingredient, method)`` of a recipe mapping or object."""

    if isinstance(candidate, Mapping):
        getter = candidate.get
    else:

        def getter(name: str) -> Any:
            return getattr(candidate, name, None)

    values = []
    for name in ("title", "primary_ingredient", "method"):
        value = getter(name)
        values.append(None if value is None else str(value))
    return values[0], values[1], values[2]


@dataclass(frozen=True)
class DiversityConstraints:
    """Attribute values a new candidate must steer away from."""

    avoided_titles: FrozenSet[str] = frozenset()
    avoided_primary_ingredients: FrozenSet[str] = frozenset()
    avoided_methods: FrozenSet[str] = frozenset()

    @classmethod
    def build(
        cls,
        titles: Iterable[Optional[str]] = (),
        ingredients: Iterable[Optional[str]] = (),
        methods: Iterable[Optional[str]] = (),
    ) -> "DiversityConstraints":
        return cls(_clean(titles), _clean(ingredients), _clean(methods))

    def absorb(self, candidate: Any) -> "DiversityConstraints":
        """Return a superset of these constraints that also excludes ``candidate``."""

        title, ingredient, method = candidate_attributes(candidate)
        return DiversityConstraints(
            self.avoided_titles | _clean([title]),
            self.avoided_primary_ingredients | _clean([ingredient]),
            self.avoided_methods | _clean([method]),
        )

    def __bool__(self) -> bool:
        return bool(self.avoided_titles or self.avoided_primary_ingredients or self.avoided_methods)


def _title_clashes(title: str, avoided: Iterable[str]) -> bool:
    needle = title.strip().casefold()
    if not needle:
        return False
    for other in avoided:
        hay = other.strip().casefold()
        if hay and (hay in needle or needle in hay):
            return True
    return False


def is_diverse(candidate: Any, constraints: DiversityConstraints) -> bool:
    """Default predicate: substring match on titles, exact match elsewhere."""

    title, ingredient, method = candidate_attributes(candidate)
    if title and _title_clashes(title, constraints.avoided_titles):
        return False
    if ingredient is not None and ingredient in constraints.avoided_primary_ingredients:
        return False
    if method is not None and method in constraints.avoided_methods:
        return False
    return True


def generate_with_constraint(
    tries: int,
    constraints: DiversityConstraints,
    generate: Callable[[DiversityConstraints], C],
    predicate: Callable[[C, DiversityConstraints], bool] = is_diverse,
) -> C:
    """Call ``generate`` until ``predicate`` accepts a candidate.

    Args:
        tries: Number of predicate-checked attempts.
        constraints: Initial exclusions, typically built from recent history.
        generate: Produces a candidate honouring the given constraints.
        predicate: Acceptance test for a candidate.

    Returns:
        The first accepted candidate, or the result of one final attempt with
        the accumulated constraints when every checked attempt was rejected.
    """
    if tries < 0:
        raise ValueError(f"tries must be >= 0, got {tries}")

    current = constraints
    for attempt in range(1, tries + 1):
        candidate = generate(current)
        if predicate(candidate, current):
            LOGGER.info("diversity.accepted attempt=%d tries=%d", attempt, tries)
            return candidate
        title, ingredient, method = candidate_attributes(candidate)
        LOGGER.info(
            "diversity.rejected attempt=%d title=%s primary_ingredient=%s method=%s",
            attempt,
            title,
            ingredient,
            method,
        )
        current = current.absorb(candidate)

    LOGGER.warning("diversity.exhausted tries=%d; accepting best-effort candidate", tries)
    return generate(current)
