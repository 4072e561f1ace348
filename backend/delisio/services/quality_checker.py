"""Recipe quality scoring.

Composable heuristic checks over a coerced recipe dict, combined into an
overall 0-10 score. Recipes scoring below the pass threshold are still
saved, but the score is stored so discovery can rank them lower and the
maintenance task can flag them.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# ── Check result ───────────────────────────────────────────────────────

@dataclass
class CheckResult:
    check_type: str
    passed: bool
    score: float  # 0.0 - 1.0
    details: dict = field(default_factory=dict)


@dataclass
class QualityReport:
    overall: float  # 0 - 10
    passed: bool
    checks: list[CheckResult]

    @property
    def reasons(self) -> list[str]:
        return [c.details.get("reason", c.check_type) for c in self.checks if not c.passed]


_QUANTITY_RE = re.compile(
    r"^\s*(\d|½|¼|¾|⅓|⅔|a |an |one |two |three |four |half |pinch|dash|handful|some )",
    re.IGNORECASE,
)
_WORD_RE = re.compile(r"[a-z]{4,}")

REFUSAL_PHRASES = [
    "i cannot",
    "i can't",
    "as an ai",
    "language model",
    "i'm sorry",
    "i am sorry",
]


# ── Individual checks ──────────────────────────────────────────────────

def check_completeness(recipe: dict[str, Any]) -> CheckResult:
    """Title, at least 3 ingredients and 3 steps, servings and nutrition."""
    parts = {
        "title": bool(recipe.get("title")),
        "ingredients": len(recipe.get("ingredients") or []) >= 3,
        "steps": len(recipe.get("steps") or []) >= 3,
        "servings": bool(recipe.get("servings")),
        "nutrition": bool(recipe.get("nutrition")),
    }
    score = sum(parts.values()) / len(parts)
    missing = [k for k, ok in parts.items() if not ok]
    return CheckResult(
        check_type="completeness",
        passed=parts["title"] and parts["ingredients"] and parts["steps"],
        score=score,
        details={"missing": missing, "reason": f"Incomplete recipe: {', '.join(missing)}"},
    )


def check_ingredient_quantities(ingredients: list[str]) -> CheckResult:
    """Share of ingredient lines that state a quantity."""
    if not ingredients:
        return CheckResult("quantities", False, 0.0, {"reason": "No ingredients"})
    with_qty = sum(1 for i in ingredients if _QUANTITY_RE.match(i))
    ratio = with_qty / len(ingredients)
    return CheckResult(
        check_type="quantities",
        passed=ratio >= 0.6,
        score=ratio,
        details={"with_quantity": with_qty, "reason": "Ingredient quantities are missing"},
    )


def check_step_clarity(steps: list[dict[str, Any]]) -> CheckResult:
    """Steps should be neither one-word fragments nor walls of text."""
    if not steps:
        return CheckResult("clarity", False, 0.0, {"reason": "No steps"})
    lengths = [len(s.get("text") or "") for s in steps]
    good = sum(1 for n in lengths if 20 <= n <= 500)
    ratio = good / len(lengths)
    return CheckResult(
        check_type="clarity",
        passed=ratio >= 0.7,
        score=ratio,
        details={"step_lengths": lengths, "reason": "Steps are too short or too long"},
    )


def check_consistency(ingredients: list[str], steps: list[dict[str, Any]]) -> CheckResult:
    """Share of ingredients whose main word is used in some step."""
    if not ingredients or not steps:
        return CheckResult("consistency", False, 0.0, {"reason": "Nothing to compare"})
    step_words = set(_WORD_RE.findall(" ".join((s.get("text") or "").lower() for s in steps)))
    used = 0
    for line in ingredients:
        words = _WORD_RE.findall(line.lower())
        if any(w in step_words or w.rstrip("s") in step_words for w in words):
            used += 1
    ratio = used / len(ingredients)
    return CheckResult(
        check_type="consistency",
        passed=ratio >= 0.5,
        score=ratio,
        details={"used": used, "reason": "Many ingredients are never used in the steps"},
    )


def check_refusal(recipe: dict[str, Any]) -> CheckResult:
    """Detect model refusals or apologies dressed up as a recipe."""
    text = " ".join(
        [recipe.get("title") or ""] + [s.get("text") or "" for s in recipe.get("steps") or []]
    ).lower()
    hits = [p for p in REFUSAL_PHRASES if p in text]
    return CheckResult(
        check_type="refusal",
        passed=not hits,
        score=0.0 if hits else 1.0,
        details={"phrases": hits, "reason": "Model output contains a refusal"},
    )


# ── Composite score ────────────────────────────────────────────────────

_WEIGHTS = {
    "completeness": 0.3,
    "quantities": 0.2,
    "clarity": 0.2,
    "consistency": 0.2,
    "refusal": 0.1,
}


def evaluate_recipe(recipe: dict[str, Any], pass_threshold: float = 7.0) -> QualityReport:
    """Run every check and combine them into a 0-10 score."""
    ingredients = recipe.get("ingredients") or []
    steps = recipe.get("steps") or []
    checks = [
        check_completeness(recipe),
        check_ingredient_quantities(ingredients),
        check_step_clarity(steps),
        check_consistency(ingredients, steps),
        check_refusal(recipe),
    ]
    overall = round(10 * sum(_WEIGHTS[c.check_type] * c.score for c in checks), 1)
    refused = not checks[-1].passed
    report = QualityReport(overall=overall, passed=overall >= pass_threshold and not refused, checks=checks)
    logger.debug("Quality for %r: %.1f", recipe.get("title"), overall)
    return report
