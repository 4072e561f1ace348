"""Tests for LLM JSON parsing and recipe/chat normalisation."""
from delisio.utils.json_utils import (
    coerce_chat_reply,
    coerce_recipe,
    extract_json_object,
    safe_parse_json,
    sanitize_llm_output,
    validate_recipe_schema,
)


class TestSanitize:
    def test_strips_fences(self):
        assert sanitize_llm_output('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_strips_reasoning(self):
        assert sanitize_llm_output('<think>hmm</think>{"a": 1}') == '{"a": 1}'

    def test_unclosed_reasoning_dropped(self):
        assert sanitize_llm_output('{"a": 1}<think>still going') == '{"a": 1}'

    def test_empty(self):
        assert sanitize_llm_output("") == ""


class TestExtract:
    def test_braces_inside_strings(self):
        text = 'Here you go: {"reply": "use {braces}", "n": 1} thanks'
        assert extract_json_object(text) == '{"reply": "use {braces}", "n": 1}'

    def test_no_object(self):
        assert extract_json_object("nothing here") is None

    def test_unbalanced(self):
        assert extract_json_object('{"a": {"b": 1}') is None


class TestSafeParse:
    def test_direct(self):
        result = safe_parse_json('{"title": "Soup"}')
        assert result.ok
        assert result.method == "direct"

    def test_extraction(self):
        result = safe_parse_json('Sure! {"title": "Soup"} Enjoy.')
        assert result.data == {"title": "Soup"}
        assert result.method == "extraction"

    def test_array_is_not_an_object(self):
        assert safe_parse_json("[1, 2]").ok is False

    def test_failure_keeps_preview(self):
        result = safe_parse_json("no json")
        assert result.method == "failed"
        assert result.raw_preview == "no json"


class TestRecipeSchema:
    def test_valid(self):
        ok, violations = validate_recipe_schema({"title": "Soup", "ingredients": ["water"], "steps": ["boil"]})
        assert ok is True
        assert violations == []

    def test_instructions_alias(self):
        ok, _ = validate_recipe_schema({"title": "Soup", "ingredients": ["water"], "instructions": ["boil"]})
        assert ok is True

    def test_violations(self):
        ok, violations = validate_recipe_schema({"title": " ", "ingredients": []})
        assert ok is False
        assert len(violations) == 3


class TestCoerceRecipe:
    def test_normalises_shapes(self):
        recipe = coerce_recipe({
            "title": "  Chili  ",
            "servings": "4 people",
            "ingredients": [{"quantity": "1", "unit": "lb", "name": "beef"}, "2 cans beans", ""],
            "instructions": ["Brown the beef.", {"instruction": "Add beans.", "illustration": "Pot"}, {"text": ""}],
            "nutritionInfo": {"calories": 500},
            "prepTime": 10,
            "cookTime": "45 minutes",
        })
        assert recipe["title"] == "Chili"
        assert recipe["servings"] == 4
        assert recipe["ingredients"] == ["1 lb beef", "2 cans beans"]
        assert recipe["steps"] == [
            {"text": "Brown the beef.", "illustration": None, "image_url": None},
            {"text": "Add beans.", "illustration": "Pot", "image_url": None},
        ]
        assert recipe["nutrition"] == {"calories": 500}
        assert recipe["prep_time_minutes"] == 10
        assert recipe["cook_time_minutes"] == 45
        assert recipe["total_time_minutes"] is None


class TestCoerceChatReply:
    def test_reply_and_suggestions(self):
        out = coerce_chat_reply({"reply": " Try these! ", "suggestions": [f"Dish {i}" for i in range(10)]})
        assert out["reply"] == "Try these!"
        assert len(out["suggestions"]) == 7

    def test_empty_suggestions_become_none(self):
        assert coerce_chat_reply({"reply": "Hi", "suggestions": []})["suggestions"] is None
        assert coerce_chat_reply({"reply": "Hi", "suggestions": "nope"})["suggestions"] is None

    def test_missing_reply(self):
        assert coerce_chat_reply({"message": "hi"}) is None
