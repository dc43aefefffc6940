"""Generation helpers that keep published recipes from repeating."""

from __future__ import annotations

from RecipePoster.Generation.diversity import (
    DiversityConstraints,
    candidate_attributes,
    generate_with_constraint,
    is_diverse,
)
from RecipePoster.Generation.history import RecipeHistory

__all__ = [
    "DiversityConstraints",
    "RecipeHistory",
    "candidate_attributes",
    "generate_with_constraint",
    "is_diverse",
]
