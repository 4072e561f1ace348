"""JSON extraction and validation for LLM replies.

Model output is treated as untrusted text. Even in JSON mode a reply can
arrive wrapped in markdown fences, preceded by commentary, or carry the
wrong key names. The helpers here:

1. strip fences and reasoning tags,
2. try a direct ``json.loads``,
3. fall back to scanning for the first balanced ``{...}`` object,
4. validate and normalise recipe / chat payloads.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)


# ── Sanitisation ───────────────────────────────────────────────────────

def sanitize_llm_output(raw: str) -> str:
    """Remove reasoning blocks and markdown fences, then trim."""
    if not raw:
        return ""
    text = raw
    for tag in ("think", "reasoning"):
        text = re.sub(rf"<{tag}>.*?</{tag}>", "", text, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(rf"<{tag}>.*$", "", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"```(?:json|JSON)?\s*\n?", "", text)
    return text.strip()


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring, ignoring braces in strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
        elif ch == "\\" and in_string:
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
    return None


class ParseResult:
    """Outcome of ``safe_parse_json`` with a preview for logging."""

    __slots__ = ("data", "method", "raw_preview")

    def __init__(self, data: dict[str, Any] | None, method: str, raw_preview: str = ""):
        self.data = data
        self.method = method  # "direct" | "extraction" | "failed"
        self.raw_preview = raw_preview

    @property
    def ok(self) -> bool:
        return self.data is not None


def safe_parse_json(raw: str) -> ParseResult:
    preview = (raw or "")[:300]
    cleaned = sanitize_llm_output(raw or "")

    try:
        data = json.loads(cleaned)
        if isinstance(data, dict):
            return ParseResult(data, "direct", preview)
    except ValueError:
        pass

    extracted = extract_json_object(cleaned)
    if extracted:
        try:
            data = json.loads(extracted)
            if isinstance(data, dict):
                return ParseResult(data, "extraction", preview)
        except ValueError:
            pass

    return ParseResult(None, "failed", preview)


# ── Recipe payloads ────────────────────────────────────────────────────

def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        m = re.search(r"\d+", value)
        return int(m.group()) if m else None
    return None


def _ingredient_text(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, dict):
        parts = [str(item.get(k, "")).strip() for k in ("quantity", "unit", "name", "ingredient")]
        return " ".join(p for p in parts if p)
    return str(item).strip()


def _step(item: Any) -> dict[str, Any]:
    if isinstance(item, str):
        return {"text": item.strip(), "illustration": None, "image_url": None}
    if isinstance(item, dict):
        text = item.get("text") or item.get("instruction") or item.get("description") or ""
        return {
            "text": str(text).strip(),
            "illustration": item.get("illustration"),
            "image_url": item.get("image_url"),
        }
    return {"text": str(item).strip(), "illustration": None, "image_url": None}


def validate_recipe_schema(data: dict[str, Any]) -> tuple[bool, list[str]]:
    """Check the fields a usable recipe needs. Returns (ok, violations)."""
    violations: list[str] = []
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        violations.append("missing required field 'title'")
    ingredients = data.get("ingredients")
    if not isinstance(ingredients, list) or not ingredients:
        violations.append("'ingredients' must be a non-empty list")
    steps = data.get("steps") or data.get("instructions")
    if not isinstance(steps, list) or not steps:
        violations.append("'steps' must be a non-empty list")
    return (len(violations) == 0, violations)


def coerce_recipe(data: dict[str, Any]) -> dict[str, Any]:
    """Normalise a validated recipe payload into the stored shape."""
    nutrition = data.get("nutrition") or data.get("nutritionInfo") or None
    steps = [_step(s) for s in (data.get("steps") or data.get("instructions") or [])]
    return {
        "title": str(data.get("title", "")).strip(),
        "servings": _to_int(data.get("servings")),
        "ingredients": [t for t in (_ingredient_text(i) for i in data.get("ingredients", [])) if t],
        "steps": [s for s in steps if s["text"]],
        "nutrition": nutrition if isinstance(nutrition, dict) else None,
        "prep_time_minutes": _to_int(data.get("prepTime", data.get("prep_time"))),
        "cook_time_minutes": _to_int(data.get("cookTime", data.get("cook_time"))),
        "total_time_minutes": _to_int(data.get("totalTime", data.get("total_time"))),
    }


# ── Chat payloads ──────────────────────────────────────────────────────

def coerce_chat_reply(data: dict[str, Any]) -> dict[str, Any] | None:
    """Return ``{reply, suggestions}`` or None when *data* has no reply."""
    reply = data.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        return None
    suggestions = data.get("suggestions")
    if isinstance(suggestions, list):
        suggestions = [str(s).strip() for s in suggestions if str(s).strip()][:7] or None
    else:
        suggestions = None
    return {"reply": reply.strip(), "suggestions": suggestions}
