"""Step illustration generation and permanent storage.

The image API returns a short-lived URL; the image is downloaded and
uploaded to the storage bucket so recipes keep a stable public URL. When
no storage platform is configured the temporary URL is returned as is.
"""
from __future__ import annotations

import logging

import httpx

from delisio.errors import UpstreamFailure
from delisio.services.http_client_manager import get_http_client

logger = logging.getLogger(__name__)

# Image settings per subscription tier
TIER_IMAGE_OPTIONS: dict[str, dict[str, str]] = {
    "free": {"quality": "standard", "size": "1024x1024"},
    "basic": {"quality": "standard", "size": "1024x1024"},
    "premium": {"quality": "hd", "size": "1792x1024"},
}

STYLE_SUFFIX = (
    "Bright, appetising food photography, natural light, clean kitchen "
    "background, no text or watermarks."
)


def image_options_for_tier(tier: str | None) -> dict[str, str]:
    return TIER_IMAGE_OPTIONS.get(tier or "free", TIER_IMAGE_OPTIONS["free"])


class ImageService:
    def __init__(
        self,
        api_key: str,
        model: str = "dall-e-3",
        base_url: str = "https://api.openai.com/v1",
        storage_url: str = "",
        storage_key: str = "",
        bucket: str = "recipe-images",
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.storage_url = storage_url.rstrip("/")
        self.storage_key = storage_key
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "ImageService":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.IMAGE_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            storage_url=settings.SUPABASE_URL,
            storage_key=settings.SUPABASE_SERVICE_KEY,
            bucket=settings.STORAGE_BUCKET,
        )

    async def generate(self, prompt: str, tier: str | None = None) -> str:
        """Generate one image and return its temporary URL."""
        if not self.api_key:
            raise UpstreamFailure("OpenAI API key is not configured")
        opts = image_options_for_tier(tier)
        client = get_http_client("images")
        try:
            resp = await client.post(
                f"{self.base_url}/images/generations",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "prompt": f"{prompt}. {STYLE_SUFFIX}",
                    "n": 1,
                    "size": opts["size"],
                    "quality": opts["quality"],
                },
            )
            resp.raise_for_status()
            return resp.json()["data"][0]["url"]
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            raise UpstreamFailure(f"Image generation failed with HTTP {code}", upstreamStatus=code) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Image generation failed: {exc}") from exc
        except (ValueError, KeyError, IndexError) as exc:
            raise UpstreamFailure("Image API returned an unexpected response shape") from exc

    async def store(self, temp_url: str, object_name: str) -> str:
        """Copy the image at *temp_url* into the bucket; return its public URL."""
        if not (self.storage_url and self.storage_key):
            return temp_url
        client = get_http_client("storage")
        try:
            download = await client.get(temp_url)
            download.raise_for_status()
            upload = await client.post(
                f"{self.storage_url}/storage/v1/object/{self.bucket}/{object_name}",
                headers={
                    "Authorization": f"Bearer {self.storage_key}",
                    "Content-Type": download.headers.get("content-type", "image/png"),
                    "x-upsert": "true",
                },
                content=download.content,
            )
            upload.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Image upload failed: {exc}") from exc
        return f"{self.storage_url}/storage/v1/object/public/{self.bucket}/{object_name}"

    async def generate_and_store(self, prompt: str, object_name: str, tier: str | None = None) -> str:
        temp_url = await self.generate(prompt, tier)
        url = await self.store(temp_url, object_name)
        logger.info("Stored step image %s", object_name)
        return url
