"""Container registry cleanup — keep the newest N images per repository."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_KEEP = 10


class ImageRef(BaseModel):
    """One tagged image in a registry repository."""

    project: str
    repository_id: int
    repository: str = ""
    tag: str
    location: str = ""
    created_at: datetime | None = None


class ImageRegistry(Protocol):
    async def list_images(self, project: str) -> list[ImageRef]: ...

    async def delete_image(self, ref: ImageRef) -> None: ...


class HttpImageRegistry:
    """GitLab-style container registry API.

    Endpoints used, relative to ``base_url`` (e.g. ``https://gitlab.example.com/api/v4``):

    - ``GET /projects/:id/registry/repositories``
    - ``GET /projects/:id/registry/repositories/:repo/tags``
    - ``GET /projects/:id/registry/repositories/:repo/tags/:tag``
    - ``DELETE /projects/:id/registry/repositories/:repo/tags/:tag``

    ``project`` is a numeric id or a ``group/name`` path.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        headers = {"User-Agent": "Conveyor/0.1.0"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def list_images(self, project: str) -> list[ImageRef]:
        base = f"/projects/{_project_id(project)}/registry/repositories"
        resp = await self._client.get(base)
        resp.raise_for_status()

        images: list[ImageRef] = []
        for repo in resp.json():
            repo_id = repo["id"]
            tags_resp = await self._client.get(f"{base}/{repo_id}/tags")
            tags_resp.raise_for_status()
            for tag in tags_resp.json():
                # The tag list omits creation time; the detail endpoint has it.
                detail = await self._client.get(f"{base}/{repo_id}/tags/{quote(tag['name'], safe='')}")
                detail.raise_for_status()
                info = detail.json()
                images.append(
                    ImageRef(
                        project=project,
                        repository_id=repo_id,
                        repository=repo.get("path") or repo.get("location", ""),
                        tag=tag["name"],
                        location=info.get("location") or tag.get("location", ""),
                        created_at=info.get("created_at"),
                    )
                )
        logger.debug("Registry for %s lists %d images", project, len(images))
        return images

    async def delete_image(self, ref: ImageRef) -> None:
        resp = await self._client.delete(
            f"/projects/{_project_id(ref.project)}/registry/repositories/"
            f"{ref.repository_id}/tags/{quote(ref.tag, safe='')}"
        )
        resp.raise_for_status()
        logger.info("Deleted image %s", ref.location or f"{ref.repository}:{ref.tag}")


async def prune_images(
    registry: ImageRegistry,
    project: str,
    keep: int = DEFAULT_KEEP,
    *,
    dry_run: bool = False,
) -> list[ImageRef]:
    """Delete all but the newest ``keep`` images of each repository.

    Images without a creation time count as oldest. Returns the images that
    were (or, with ``dry_run``, would be) deleted.
    """
    if keep < 0:
        raise ValueError("keep must be >= 0")

    by_repo: dict[int, list[ImageRef]] = {}
    for image in await registry.list_images(project):
        by_repo.setdefault(image.repository_id, []).append(image)

    oldest = datetime.min.replace(tzinfo=timezone.utc)
    doomed: list[ImageRef] = []
    for images in by_repo.values():
        images.sort(key=lambda i: (_aware(i.created_at) or oldest, i.tag), reverse=True)
        doomed.extend(images[keep:])

    for image in doomed:
        if dry_run:
            logger.info("Would delete image %s:%s", image.repository, image.tag)
            continue
        await registry.delete_image(image)

    logger.info(
        "Pruned %d images from %s (keeping newest %d per repository)%s",
        len(doomed),
        project,
        keep,
        " [dry run]" if dry_run else "",
    )
    return doomed


def _project_id(project: str) -> str:
    return quote(project, safe="")


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
