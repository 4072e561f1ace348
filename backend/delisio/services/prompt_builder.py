"""Prompt construction for recipe and chat generation.

Both prompts ask for a single JSON object so the pipelines can parse the
reply without guessing at prose. The recipe prompt folds in the user's
saved preferences (diet, allergies, cuisines, skill level).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class PreparedPrompt:
    system: str
    user: str


_RECIPE_SYSTEM = """\
You are an expert chef AI assistant specialised in generating structured recipe data.
Your response MUST be ONLY a single, valid JSON object with exactly this structure:

{{
  "title": string,              // catchy and accurate recipe title
  "servings": integer,          // estimated number of servings
  "ingredients": [string],      // each entry lists quantity and ingredient, e.g. "2 large eggs"
  "steps": [                    // several distinct steps
    {{"text": string, "illustration": string}}
  ],
  "nutrition": {{"calories": integer, "protein": string, "fat": string, "carbs": string}},
  "prepTime": integer,          // minutes
  "cookTime": integer,          // minutes
  "totalTime": integer          // minutes
}}

"illustration" is a short phrase describing what the step looks like
(for example "Sauteing onions in a pan"). Use only the keys shown above.
Do not include markdown, commentary or anything outside the JSON object.

Generate a recipe for the user's request: "{query}".{preferences}"""

_CHAT_SYSTEM = """\
You are Delisio, a friendly, conversational and proactive cooking assistant.
Help users with cooking techniques, ingredient substitutions and pairings,
kitchen tips and diet-aware cooking advice, and guide them towards specific
named recipes.

- If a request is vague ("I want pizza", "what can I do with chicken?"),
  either ask one or two short clarifying questions, or offer up to 7
  specific, named recipe ideas listed in your reply.
- If the user asks for a specific recipe, acknowledge it, optionally give a
  quick tip, and offer to generate the full illustrated recipe.
- For technique or ingredient questions, answer helpfully and concisely.
- Be warm and encouraging. Never judge the user's choices.

Your entire response MUST be a single JSON object:
{"reply": string, "suggestions": null | [string]}

"suggestions" lists the recipe names you suggested or confirmed (at most 7),
and MUST be null when you are asking questions or answering a general
question. Do not include any text outside the JSON object."""

_SKILL_NOTES = {
    "beginner": "Keep techniques simple and explain basic steps. Avoid complex methods.",
    "intermediate": "Moderate techniques are fine, but explain anything unfamiliar.",
    "advanced": "Complex techniques are welcome; assume good knowledge of cooking methods.",
}


def format_preferences(preferences: dict[str, Any] | None) -> str:
    """Render saved preferences as an extra prompt section ('' if none)."""
    if not preferences:
        return ""
    lines: list[str] = []
    diet = preferences.get("dietary_restrictions") or []
    allergies = preferences.get("allergies") or []
    cuisines = preferences.get("favorite_cuisines") or []
    skill = preferences.get("cooking_skill")

    if diet:
        lines.append(f"- Dietary restrictions: {', '.join(diet)}. Avoid violating these.")
    if allergies:
        lines.append(f"- Allergies: {', '.join(allergies)}. Do not include these ingredients.")
    if cuisines:
        lines.append(f"- Favourite cuisines: {', '.join(cuisines)}. Incorporate elements if appropriate.")
    if skill:
        lines.append(f"- Cooking skill level: {skill}. Adapt complexity accordingly.")
        if skill in _SKILL_NOTES:
            lines.append(f"  {_SKILL_NOTES[skill]}")
    if not lines:
        return ""
    return "\n\nUser preferences to consider:\n" + "\n".join(lines)


def build_recipe_prompt(query: str, preferences: dict[str, Any] | None = None) -> PreparedPrompt:
    system = _RECIPE_SYSTEM.format(query=query.strip(), preferences=format_preferences(preferences))
    return PreparedPrompt(system=system, user=f"Generate the recipe JSON object for: {query.strip()}")


def build_chat_prompt(message: str) -> PreparedPrompt:
    return PreparedPrompt(system=_CHAT_SYSTEM, user=message.strip())


def build_step_image_prompt(recipe_title: str, step_text: str, illustration: str | None) -> str:
    subject = illustration or step_text
    return f"{subject}, while preparing {recipe_title}"
