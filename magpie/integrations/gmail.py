"""Async gateway to the mail provider (Gmail REST API).

``MailGateway`` is the contract the pipeline, reconciler and rollback
consume; ``GmailClient`` implements it with httpx. Every method is a
single provider round trip and is the unit of retry for callers.
"""

import base64
import logging
from datetime import UTC, datetime
from typing import Protocol

import httpx

from magpie.errors import AuthenticationError, ProviderError, RateLimitError
from magpie.retry import retry_async
from magpie.schemas.email import EmailRecord, ProviderLabel

logger = logging.getLogger(__name__)

# Provider hard limit per listing page, regardless of the caller's target.
MAX_PAGE_SIZE = 50

MAX_RETRIES = 2
RETRY_DELAY = 1.0


class MailGateway(Protocol):
    async def list_messages(
        self, query: str = "", page_token: str | None = None, page_size: int = MAX_PAGE_SIZE
    ) -> tuple[list[str], str | None]: ...

    async def count_messages(
        self, query: str = "", label_ids: list[str] | None = None
    ) -> int: ...

    async def get_message(self, message_id: str) -> EmailRecord: ...

    async def list_labels(self) -> list[ProviderLabel]: ...

    async def create_label(self, name: str, color: str | None = None) -> str: ...

    async def apply_label(self, message_id: str, label_id: str) -> bool: ...

    async def remove_label(self, message_id: str, label_id: str) -> bool: ...


def _decode_body(data: str) -> str:
    """Decode a base64url Gmail body part."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_plain_text(payload: dict) -> str:
    """Depth-first search for the first text/plain part."""
    mime_type = payload.get("mimeType", "")
    data = payload.get("body", {}).get("data")
    if data and (mime_type.startswith("text/plain") or not payload.get("parts")):
        return _decode_body(data)
    for part in payload.get("parts", []) or []:
        text = _find_plain_text(part)
        if text:
            return text
    return ""


def parse_message(raw: dict) -> EmailRecord:
    """Convert a Gmail ``format=full`` message into an EmailRecord."""
    payload = raw.get("payload", {}) or {}
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
    snippet = raw.get("snippet", "")

    timestamp = None
    if raw.get("internalDate"):
        timestamp = datetime.fromtimestamp(int(raw["internalDate"]) / 1000, tz=UTC)

    return EmailRecord(
        id=raw["id"],
        thread_id=raw.get("threadId", ""),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        body=_find_plain_text(payload) or snippet,
        snippet=snippet,
        timestamp=timestamp,
        label_ids=list(raw.get("labelIds", [])),
    )


class GmailClient:
    """Async HTTP client for the Gmail v1 REST API.

    Usage::

        async with GmailClient(base_url, access_token) as gmail:
            ids, token = await gmail.list_messages("in:inbox")
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        user_id: str = "me",
        timeout: float = 30.0,
    ) -> None:
        self._user_id = user_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )

    async def __aenter__(self) -> "GmailClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _path(self, suffix: str) -> str:
        return f"/gmail/v1/users/{self._user_id}/{suffix}"

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request, retrying on connection drop, mapping failures."""
        try:
            response = await retry_async(
                self._client.request,
                method,
                path,
                attempts=MAX_RETRIES + 1,
                backoff=(RETRY_DELAY,),
                retry_on=(httpx.RemoteProtocolError,),
                context=f"{method} {path}",
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Provider rejected credentials ({status})", status_code=status
            )
        if status == 429:
            raise RateLimitError(f"Rate limited on {method} {path}", status_code=status)
        if status >= 400:
            raise ProviderError(
                f"{method} {path} returned {status}: {response.text[:200]}",
                status_code=status,
            )
        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(
        self,
        query: str = "",
        page_token: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> tuple[list[str], str | None]:
        """Fetch one page of message ids.

        ``page_size`` is capped at the provider limit; callers reach larger
        targets by following ``next_page_token``.
        """
        params: dict = {"maxResults": max(1, min(page_size, MAX_PAGE_SIZE))}
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token

        data = await self._request("GET", self._path("messages"), params=params)
        ids = [m["id"] for m in data.get("messages", [])]
        logger.debug("Listed %d message id(s), next=%s", len(ids), data.get("nextPageToken"))
        return ids, data.get("nextPageToken")

    async def count_messages(self, query: str = "", label_ids: list[str] | None = None) -> int:
        """Provider estimate of messages matching ``query`` and carrying every label."""
        params: dict = {"maxResults": 1}
        if query:
            params["q"] = query
        if label_ids:
            params["labelIds"] = label_ids

        data = await self._request("GET", self._path("messages"), params=params)
        return int(data.get("resultSizeEstimate", 0))

    async def get_message(self, message_id: str) -> EmailRecord:
        data = await self._request(
            "GET", self._path(f"messages/{message_id}"), params={"format": "full"}
        )
        return parse_message(data)

    async def _modify(self, message_id: str, *, add: list[str], remove: list[str]) -> bool:
        data = await self._request(
            "POST",
            self._path(f"messages/{message_id}/modify"),
            json={"addLabelIds": add, "removeLabelIds": remove},
        )
        return data.get("id") == message_id

    async def apply_label(self, message_id: str, label_id: str) -> bool:
        return await self._modify(message_id, add=[label_id], remove=[])

    async def remove_label(self, message_id: str, label_id: str) -> bool:
        return await self._modify(message_id, add=[], remove=[label_id])

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    async def list_labels(self) -> list[ProviderLabel]:
        data = await self._request("GET", self._path("labels"))
        return [
            ProviderLabel(id=lbl["id"], name=lbl["name"], type=lbl.get("type", "user"))
            for lbl in data.get("labels", [])
        ]

    async def create_label(self, name: str, color: str | None = None) -> str:
        """Create a user label, or return the id of an existing one with that name."""
        for label in await self.list_labels():
            if label.name == name:
                return label.id

        body: dict = {
            "name": name,
            "messageListVisibility": "show",
            "labelListVisibility": "labelShow",
        }
        if color:
            body["color"] = {"textColor": "#ffffff", "backgroundColor": color}

        try:
            data = await self._request("POST", self._path("labels"), json=body)
        except ProviderError as exc:
            if exc.status_code != 409:
                raise
            # Created concurrently by another run.
            for label in await self.list_labels():
                if label.name == name:
                    return label.id
            raise

        logger.info("Created label %s (%s)", name, data["id"])
        return data["id"]
