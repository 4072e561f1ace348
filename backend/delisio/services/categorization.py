"""Keyword-based recipe categorisation.

Each category carries key terms (matched against the title and the full
recipe text) and key ingredients (matched against the ingredient list).
Scoring per category:

  - key term in the title: +10
  - key term anywhere in title, ingredients or steps: +3
  - key ingredient contained in any ingredient line: +5

The best-scoring category wins; a recipe nothing matches is ``other``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    description: str
    key_terms: tuple[str, ...] = field(default_factory=tuple)
    key_ingredients: tuple[str, ...] = field(default_factory=tuple)


CATEGORIES: tuple[Category, ...] = (
    Category("breakfast", "Breakfast", "Morning meals to start your day",
             ("breakfast", "brunch", "morning", "toast"),
             ("eggs", "bacon", "oatmeal", "pancake", "waffle", "cereal", "granola", "yogurt")),
    Category("lunch", "Lunch", "Midday meals that are quick and satisfying",
             ("lunch", "quick", "midday", "light"),
             ("sandwich", "wrap", "salad", "soup")),
    Category("dinner", "Dinner", "Evening meals for the whole family",
             ("dinner", "supper", "evening", "main course"),
             ("steak", "roast", "casserole", "risotto")),
    Category("dessert", "Dessert", "Sweet treats for after meals",
             ("dessert", "sweet", "treat", "bake", "confection"),
             ("chocolate", "sugar", "ice cream", "cake", "cookie", "pie", "pudding")),
    Category("appetizer", "Appetizer", "Small bites to start a meal",
             ("appetizer", "starter", "hors d'oeuvre", "finger food", "snack"),
             ("dip", "spread", "cracker", "cheese")),
    Category("side-dish", "Side Dish", "Accompaniments to main courses",
             ("side", "accompaniment", "complement"),
             ("potato", "rice", "pasta", "vegetable")),
    Category("salad", "Salad", "Fresh and healthy salad dishes",
             ("salad", "fresh", "toss", "bowl"),
             ("lettuce", "greens", "vegetable", "dressing", "vinaigrette")),
    Category("soup", "Soup", "Warm and comforting soups and stews",
             ("soup", "stew", "chowder", "bisque", "chili"),
             ("broth", "stock", "vegetable", "bean", "noodle")),
    Category("vegetarian", "Vegetarian", "Meat-free recipes for vegetarians",
             ("vegetarian", "meatless", "plant-based"),
             ("tofu", "tempeh", "seitan", "legume", "vegetable")),
    Category("vegan", "Vegan", "Plant-based recipes without animal products",
             ("vegan", "plant-based", "dairy-free", "egg-free"),
             ("tofu", "tempeh", "seitan", "legume", "vegetable", "nutritional yeast")),
    Category("gluten-free", "Gluten-Free", "Recipes without gluten for those with sensitivities",
             ("gluten-free", "celiac", "wheat-free"),
             ("rice flour", "almond flour", "gluten-free")),
    Category("seafood", "Seafood", "Fish and shellfish dishes from the sea",
             ("seafood", "fish", "shellfish", "ocean"),
             ("fish", "salmon", "tuna", "shrimp", "crab", "lobster", "mussel", "clam", "scallop")),
    Category("meat", "Meat", "Hearty meat-based dishes for carnivores",
             ("meat", "carnivore", "protein"),
             ("beef", "chicken", "pork", "lamb", "turkey", "sausage")),
    Category("pasta", "Pasta", "Italian-inspired pasta dishes",
             ("pasta", "italian", "noodle"),
             ("pasta", "spaghetti", "noodle", "linguine", "fettuccine", "penne", "macaroni")),
    Category("baking", "Baking", "Sweet and savory baked goods",
             ("bake", "pastry", "bread", "dough", "oven"),
             ("flour", "sugar", "butter", "egg", "yeast", "baking powder", "baking soda")),
    Category("slow-cooker", "Slow Cooker", "Set-it-and-forget-it slow cooker recipes",
             ("slow cooker", "crockpot", "slow", "simmer"),
             ("meat", "vegetable", "broth")),
    Category("quick-easy", "Quick & Easy", "Fast recipes for busy days",
             ("quick", "easy", "simple", "fast", "30-minute", "20-minute", "15-minute")),
    Category("healthy", "Healthy", "Nutritious recipes for a balanced diet",
             ("healthy", "nutritious", "wellness", "balanced", "low-calorie", "diet"),
             ("vegetable", "fruit", "whole grain", "lean protein")),
    Category("beverage", "Beverage", "Drinks from smoothies to cocktails",
             ("drink", "beverage", "smoothie", "cocktail", "milkshake", "juice", "tea", "coffee"),
             ("milk", "juice", "tea", "coffee", "alcohol", "fruit", "yogurt")),
    Category("international", "International", "Cuisine from around the world",
             ("international", "ethnic", "world", "exotic", "fusion")),
    Category("other", "Other", "Recipes that don't fit other categories"),
)

CATEGORY_IDS = frozenset(c.id for c in CATEGORIES)


def _step_text(step: Any) -> str:
    if isinstance(step, str):
        return step
    if isinstance(step, dict):
        return str(step.get("text") or "")
    return ""


def detect_recipe_category(title: str, ingredients: list[str], steps: list[Any]) -> str:
    """Return the best-matching category id for a recipe."""
    norm_title = (title or "").lower()
    norm_ingredients = [i.lower() for i in ingredients or []]
    norm_steps = [_step_text(s).lower() for s in steps or []]
    combined = " ".join([norm_title, *norm_ingredients, *norm_steps])

    best_id, best_score = "other", 0
    for cat in CATEGORIES:
        score = 0
        for term in cat.key_terms:
            if term in norm_title:
                score += 10
            if term in combined:
                score += 3
        for ing in cat.key_ingredients:
            if any(ing in line for line in norm_ingredients):
                score += 5
        # Strictly greater keeps the earlier category on ties
        if score > best_score:
            best_id, best_score = cat.id, score
    return best_id


def get_related_categories(primary: str, title: str, ingredients: list[str], limit: int = 3) -> list[str]:
    """Up to *limit* secondary category ids, used as recipe tags."""
    if primary == "other":
        return []
    norm_title = (title or "").lower()
    joined = " ".join(i.lower() for i in ingredients or [])

    scored: list[tuple[int, int, str]] = []
    for order, cat in enumerate(CATEGORIES):
        if cat.id == primary:
            continue
        score = sum(3 for t in cat.key_terms if t in norm_title)
        score += sum(2 for i in cat.key_ingredients if i in joined)
        if score > 0:
            scored.append((-score, order, cat.id))
    scored.sort()
    return [cid for _, _, cid in scored[:limit]]


def categorize(recipe: dict[str, Any]) -> tuple[str, list[str]]:
    """Category id and related-category tags for a coerced recipe dict."""
    title = recipe.get("title", "")
    ingredients = recipe.get("ingredients") or []
    category = detect_recipe_category(title, ingredients, recipe.get("steps") or [])
    return category, get_related_categories(category, title, ingredients)
