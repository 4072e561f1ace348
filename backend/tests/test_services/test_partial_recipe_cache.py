"""Tests for partial recipe snapshots."""
from unittest import mock

import redis

from delisio.services.partial_recipe_cache import (
    PartialRecipeCache,
    calculate_progress,
    partial_key,
)


def snapshot(steps=3):
    return {
        "title": "Shakshuka",
        "steps": [{"text": f"Step {i}", "illustration": None, "image_url": None} for i in range(steps)],
        "thumbnail_url": None,
    }


class TestProgress:
    def test_text_only(self):
        assert calculate_progress(snapshot()) == 40

    def test_partial_images(self):
        recipe = snapshot(4)
        recipe["steps"][0]["image_url"] = "a"
        assert calculate_progress(recipe) == 55

    def test_no_recipe(self):
        assert calculate_progress(None) == 0

    def test_key(self):
        assert partial_key("abc") == "recipe:abc:partial"


class TestLocalCache:
    def test_roundtrip_and_delete(self):
        cache = PartialRecipeCache()
        cache.set("r1", snapshot())
        assert cache.get("r1")["title"] == "Shakshuka"
        cache.delete("r1")
        assert cache.get("r1") is None

    def test_expired_entry_ignored(self):
        cache = PartialRecipeCache(ttl_seconds=-1)
        cache.set("r1", snapshot())
        assert cache.get("r1") is None

    def test_step_images_and_thumbnail(self):
        cache = PartialRecipeCache()
        cache.set("r1", snapshot(2))
        first = cache.set_step_image("r1", 0, "https://img/1.png")
        assert first["progress"] == 70
        assert first["thumbnail_url"] is None
        last = cache.set_step_image("r1", 1, "https://img/2.png")
        assert last["progress"] == 100
        assert last["thumbnail_url"] == "https://img/2.png"
        assert cache.get("r1")["steps"][1]["image_url"] == "https://img/2.png"

    def test_step_image_without_snapshot(self):
        assert PartialRecipeCache().set_step_image("missing", 0, "x") is None


class TestRedisFailure:
    def test_falls_back_to_local(self):
        client = mock.Mock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")
        cache = PartialRecipeCache(client)
        cache.set("r1", snapshot())
        assert cache.get("r1")["title"] == "Shakshuka"

    def test_uses_redis_when_available(self):
        client = mock.Mock()
        client.get.return_value = b'{"title": "From Redis"}'
        cache = PartialRecipeCache(client, ttl_seconds=60)
        cache.set("r1", snapshot())
        client.set.assert_called_once()
        assert client.set.call_args.kwargs["ex"] == 60
        assert cache.get("r1") == {"title": "From Redis"}
