"""Duplicate detection for the global recipe catalogue.

A similarity hash (normalised title + main ingredients + servings) finds
exact re-generations cheaply; candidates sharing the hash or title words
are then compared with weighted Jaccard similarity:

    0.3 * title + 0.5 * ingredients + 0.2 * step keywords

A combined score of at least the threshold (0.8 by default) marks a
duplicate, in which case the existing catalogue recipe is reused.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from delisio.models import Recipe

logger = logging.getLogger(__name__)

_QUANTITY_PREFIX = re.compile(
    r"^[\s*]*\d+(\s*/\s*\d+)?(\.\d+)?"
    r"(\s*(?:oz|g|kg|lb|cup|tsp|tbsp|ml|l|pinch|dash|clove|slice|piece)s?)?(\s+of)?\s+",
    re.IGNORECASE,
)
_PREP_WORDS = re.compile(
    r"\b(fresh|dried|chopped|minced|diced|sliced|grated|crushed|ground|finely|roughly|"
    r"to taste|optional|for garnish|peeled|seeded|cored|rinsed|drained|cooked|uncooked|"
    r"raw|frozen|thawed|at room temperature|softened|melted|divided|large|small|medium)\b",
    re.IGNORECASE,
)
_COMMON_WORDS = frozenset({
    "with", "until", "then", "into", "from", "about", "over", "each", "them",
    "this", "that", "add", "and", "the", "your", "minutes", "heat", "place",
})


@dataclass
class SimilarityResult:
    is_duplicate: bool
    score: float
    existing_recipe_id: str | None = None
    details: dict[str, float] = field(default_factory=dict)


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", re.sub(r"[\W_]+", " ", text.lower())).strip()


def main_ingredients(ingredients: list[str]) -> list[str]:
    """Strip quantities, units and preparation words from ingredient lines."""
    out: list[str] = []
    for line in ingredients or []:
        text = _QUANTITY_PREFIX.sub("", line)
        text = _PREP_WORDS.sub("", text)
        text = re.sub(r"\([^)]*\)", "", text).split(",")[0]
        text = normalize_text(text)
        if len(text) > 2:
            out.append(text)
    return out


def similarity_hash(recipe: dict[str, Any]) -> str:
    parts = [
        normalize_text(recipe.get("title")),
        "|".join(sorted(main_ingredients(recipe.get("ingredients") or []))),
        str(recipe.get("servings") or 0),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def jaccard(a: list[str], b: list[str]) -> float:
    sa, sb = set(a), set(b)
    union = sa | sb
    return 1.0 if not union else len(sa & sb) / len(union)


def _step_keywords(steps: list[Any]) -> list[str]:
    words: list[str] = []
    for s in steps or []:
        text = s.get("text") if isinstance(s, dict) else str(s)
        words.extend(w for w in normalize_text(text).split() if len(w) > 3 and w not in _COMMON_WORDS)
    return words


def recipe_similarity(a: dict[str, Any], b: dict[str, Any]) -> tuple[float, dict[str, float]]:
    details = {
        "title": jaccard(normalize_text(a.get("title")).split(), normalize_text(b.get("title")).split()),
        "ingredients": jaccard(main_ingredients(a.get("ingredients") or []),
                               main_ingredients(b.get("ingredients") or [])),
        "steps": jaccard(_step_keywords(a.get("steps") or []), _step_keywords(b.get("steps") or [])),
    }
    score = 0.3 * details["title"] + 0.5 * details["ingredients"] + 0.2 * details["steps"]
    return score, details


def find_duplicate(db: Session, recipe: dict[str, Any], threshold: float = 0.8) -> SimilarityResult:
    """Compare *recipe* with likely candidates in the global catalogue."""
    rhash = recipe.get("similarity_hash") or similarity_hash(recipe)
    title_words = [w for w in normalize_text(recipe.get("title")).split() if len(w) > 3]

    conditions = [Recipe.similarity_hash == rhash]
    conditions.extend(Recipe.title.ilike(f"%{w}%") for w in title_words[:3])
    candidates = (
        db.query(Recipe)
        .filter(Recipe.owner_user_id.is_(None), or_(*conditions))
        .limit(10)
        .all()
    )

    best = SimilarityResult(is_duplicate=False, score=0.0)
    for cand in candidates:
        score, details = recipe_similarity(recipe, {
            "title": cand.title, "ingredients": cand.ingredients, "steps": cand.steps,
        })
        if cand.similarity_hash == rhash:
            score = max(score, 1.0)
        if score > best.score:
            best = SimilarityResult(False, score, cand.id, details)

    best.is_duplicate = best.score >= threshold
    logger.info(
        "Duplicate check for %r: %s (score %.2f)",
        recipe.get("title"), "duplicate" if best.is_duplicate else "unique", best.score,
    )
    return best
