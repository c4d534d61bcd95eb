"""Minimal Miniflux REST API client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import UpstreamError
from .models import Entry, FeedInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 50


def _entry_from_payload(payload: Dict[str, Any]) -> Entry:
    feed = payload.get("feed") or {}
    return Entry(
        id=int(payload["id"]),
        feed_id=int(payload.get("feed_id") or feed.get("id") or 0),
        title=payload.get("title") or "",
        content=payload.get("content") or "",
        author=payload.get("author") or "",
        url=payload.get("url") or "",
        tags=frozenset(payload.get("tags") or ()),
        status=payload.get("status") or "unread",
    )


class MinifluxClient:
    """Fetch unread entries and mark them read through the Miniflux API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages
        self.session = session or requests.Session()
        self.session.headers.update({"X-Auth-Token": token})

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            body = exc.response.text if exc.response is not None else ""
            message = f"{method} {path} failed: {status}"
            if body:
                message = f"{message} - {body}"
            raise UpstreamError(
                message,
                status_code=status,
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"{method} {path} returned invalid JSON") from exc

    def test_connection(self) -> None:
        """Raise ``UpstreamError`` unless the API accepts our credentials."""
        logger.debug("Testing Miniflux API connection")
        self._request("GET", "/v1/me")
        logger.info("Miniflux API connection successful")

    def fetch_unread(self, feed_id: int) -> List[Entry]:
        """Return every unread entry of ``feed_id`` in upstream order.

        Pages are requested until the API runs out of entries or
        ``max_pages`` is reached.
        """
        entries: List[Entry] = []
        offset = 0
        for _ in range(self.max_pages):
            payload = self._request(
                "GET",
                f"/v1/feeds/{feed_id}/entries",
                params={
                    "status": "unread",
                    "order": "id",
                    "direction": "asc",
                    "limit": self.page_size,
                    "offset": offset,
                },
            )
            if not isinstance(payload, dict):
                raise UpstreamError(f"Unexpected entries payload for feed {feed_id}")

            batch = payload.get("entries") or []
            try:
                entries.extend(_entry_from_payload(item) for item in batch)
            except (KeyError, TypeError, ValueError) as exc:
                raise UpstreamError(
                    f"Malformed entry in feed {feed_id}: {exc}"
                ) from exc

            offset += len(batch)
            if len(batch) < self.page_size:
                break
            total = payload.get("total")
            if total is not None and offset >= total:
                break
        else:
            logger.warning(
                "Stopped paging feed %d after %d pages (%d entries)",
                feed_id,
                self.max_pages,
                len(entries),
            )

        logger.debug("Fetched %d unread entries for feed %d", len(entries), feed_id)
        return entries

    def mark_read(self, entry_id: int) -> None:
        self._request(
            "PUT",
            "/v1/entries",
            json={"entry_ids": [entry_id], "status": "read"},
        )
        logger.debug("Marked entry %d as read", entry_id)

    def get_feeds(self) -> List[FeedInfo]:
        payload = self._request("GET", "/v1/feeds") or []
        feeds = [
            FeedInfo(
                id=int(item["id"]),
                title=item.get("title") or "",
                site_url=item.get("site_url") or "",
                feed_url=item.get("feed_url") or "",
            )
            for item in payload
        ]
        logger.info("Fetched %d feeds", len(feeds))
        return feeds
