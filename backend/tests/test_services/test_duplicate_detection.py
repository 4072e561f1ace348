"""Tests for catalogue duplicate detection."""
from delisio.models import Recipe
from delisio.services.duplicate_detection import (
    find_duplicate,
    jaccard,
    main_ingredients,
    normalize_text,
    recipe_similarity,
    similarity_hash,
)

PANCAKES = {
    "title": "Fluffy Pancakes",
    "servings": 4,
    "ingredients": ["2 cups all-purpose flour", "2 large eggs", "1 1/2 cups milk", "2 tbsp sugar"],
    "steps": [{"text": "Whisk flour, eggs, milk and sugar into a smooth batter."},
              {"text": "Cook ladlefuls on a hot griddle until bubbles form, then flip."}],
}


def add_catalogue_recipe(db, data, owner=None):
    row = Recipe(
        owner_user_id=owner,
        title=data["title"],
        servings=data["servings"],
        ingredients=data["ingredients"],
        steps=data["steps"],
        similarity_hash=similarity_hash(data),
    )
    db.add(row)
    db.commit()
    return row


class TestNormalisation:
    def test_normalize_text(self):
        assert normalize_text("  Crème-Brûlée!!  ") == "crème brûlée"
        assert normalize_text(None) == ""

    def test_main_ingredients_strip_quantities(self):
        assert main_ingredients(["2 large eggs", "1 cup chopped onion, divided", "salt (to taste)"]) == [
            "eggs", "onion", "salt",
        ]

    def test_jaccard(self):
        assert jaccard(["a", "b"], ["b", "c"]) == 1 / 3
        assert jaccard([], []) == 1.0


class TestSimilarityHash:
    def test_ignores_quantities_and_order(self):
        other = dict(PANCAKES, ingredients=list(reversed(PANCAKES["ingredients"])))
        assert similarity_hash(other) == similarity_hash(PANCAKES)

    def test_servings_change_hash(self):
        assert similarity_hash(dict(PANCAKES, servings=8)) != similarity_hash(PANCAKES)


class TestRecipeSimilarity:
    def test_identical(self):
        score, details = recipe_similarity(PANCAKES, PANCAKES)
        assert score == 1.0
        assert details == {"title": 1.0, "ingredients": 1.0, "steps": 1.0}

    def test_unrelated(self):
        soup = {"title": "Lentil Soup", "ingredients": ["1 cup lentils", "2 carrots"],
                "steps": [{"text": "Simmer lentils with carrots."}]}
        score, _ = recipe_similarity(PANCAKES, soup)
        assert score < 0.2


class TestFindDuplicate:
    def test_same_hash_is_duplicate(self, db_session):
        row = add_catalogue_recipe(db_session, PANCAKES)
        result = find_duplicate(db_session, dict(PANCAKES))
        assert result.is_duplicate is True
        assert result.existing_recipe_id == row.id

    def test_user_copies_ignored(self, db_session):
        add_catalogue_recipe(db_session, PANCAKES, owner="u1")
        assert find_duplicate(db_session, dict(PANCAKES)).is_duplicate is False

    def test_similar_title_different_recipe(self, db_session):
        add_catalogue_recipe(db_session, PANCAKES)
        banana = {
            "title": "Banana Pancakes",
            "servings": 2,
            "ingredients": ["2 ripe bananas", "2 eggs"],
            "steps": [{"text": "Mash bananas with eggs and fry small rounds."}],
        }
        result = find_duplicate(db_session, banana)
        assert result.is_duplicate is False
        assert 0 < result.score < 0.8
