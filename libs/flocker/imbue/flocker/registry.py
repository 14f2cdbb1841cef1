from datetime import datetime
from typing import Any

import httpx
from loguru import logger
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

from imbue.flocker.config.data_types import DEFAULT_REGISTRY_URL
from imbue.flocker.errors import RegistryError
from imbue.flocker.primitives import DEFAULT_IMAGE_REPOSITORY
from imbue.flocker.primitives import ImageReference
from imbue.flocker.utils.models import FrozenModel


class RegistryTag(FrozenModel):
    """One tag of the image repository, as listed by Docker Hub."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(description="Tag name, e.g. 'stable' or 'v3.0.0'")
    last_updated: datetime | None = Field(default=None, description="When the tag was last pushed")
    full_size: int | None = Field(default=None, description="Compressed size in bytes")


class TagPage(FrozenModel):
    """One page of tags, plus the URL of the next page when there is one."""

    tags: tuple[RegistryTag, ...]
    next_url: str | None = None


class RegistryClient(FrozenModel):
    """HTTP client for listing the tags of an image repository on Docker Hub."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    base_url: str = Field(default=DEFAULT_REGISTRY_URL, description="Base URL of the Docker Hub API")
    repository: str = Field(default=DEFAULT_IMAGE_REPOSITORY, description="Repository whose tags are listed")
    page_size: int = Field(default=10, ge=1, le=100, description="Tags per page")
    timeout_seconds: float = Field(default=30.0, gt=0)
    transport: httpx.BaseTransport | None = Field(
        default=None, description="Transport override (tests use httpx.MockTransport)"
    )

    def first_page_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/repositories/{self.repository}/tags"

    def image_for(self, tag: RegistryTag) -> ImageReference:
        return ImageReference(f"{self.repository}:{tag.name}")

    def list_tags(self, page_url: str | None = None) -> TagPage:
        """Fetch one page of tags. Pass the previous page's next_url to continue."""
        if page_url is None:
            url = self.first_page_url()
            params: dict[str, Any] | None = {"page_size": self.page_size, "ordering": "last_updated"}
        else:
            # The next URL already carries its query string
            url = page_url
            params = None

        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout_seconds) as client:
                response = client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.debug("Failed to fetch tags from {}: {}", url, e)
            raise RegistryError(f"Failed to fetch tags for {self.repository}: {e}") from e
        except ValueError as e:
            raise RegistryError(f"Docker Hub returned invalid JSON for {self.repository}: {e}") from e

        return _parse_tag_page(data, self.repository)


def _parse_tag_page(data: Any, repository: str) -> TagPage:
    if not isinstance(data, dict) or not isinstance(data.get("results"), list):
        raise RegistryError(f"Unexpected tag listing format for {repository}")
    try:
        tags = tuple(RegistryTag.model_validate(item) for item in data["results"])
    except ValidationError as e:
        raise RegistryError(f"Unexpected tag entry for {repository}: {e.errors()[0]['msg']}") from e
    next_url = data.get("next")
    return TagPage(tags=tags, next_url=next_url if isinstance(next_url, str) and next_url else None)
