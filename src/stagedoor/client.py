"""HTTP client for a stagedoor server.

Usage:
    client = Stagedoor(url="http://localhost:8000", user_id="alice")
    conv = client.create_conversation(["bob", "carol"], name="Crew")
    client.add_participant(conv["conversation_id"], "dave")

    # Act as someone else over the same connection
    bob = client.as_user("bob")
    bob.mark_as_read(conv["conversation_id"])
    print(bob.get_unread_count())

Errors reported by the server come back as the matching
``stagedoor.errors`` class (PermissionDenied, NotMember, ...), so code
written against the core works unchanged against a remote server.
"""

from __future__ import annotations

from typing import Any

import httpx

from .errors import ERROR_KINDS, error_from_dict


class Stagedoor:
    """Client for stagedoor's HTTP API, acting as one user."""

    def __init__(
        self,
        url: str | None = None,
        user_id: str | None = None,
        gateway_token: str | None = None,
        *,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the client.

        Args:
            url: Base URL of the stagedoor server. May be omitted when
                 ``http_client`` already has a base URL (e.g. a TestClient).
            user_id: User to act as (sent in X-User-Id)
            gateway_token: Bearer token for servers that require one
            http_client: Existing httpx client to send requests through
            timeout: Request timeout in seconds
        """
        if url is None and http_client is None:
            raise ValueError("Either url or http_client is required")
        self._url = (url or "").rstrip("/")
        self._user_id = user_id
        self._gateway_token = gateway_token
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def as_user(self, user_id: str) -> "Stagedoor":
        """A client for another user sharing this client's connection."""
        return Stagedoor(
            self._url or None,
            user_id,
            self._gateway_token,
            http_client=self._client,
        )

    def close(self) -> None:
        """Close HTTP client (only if this instance created it)."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "Stagedoor":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self._user_id:
            headers["X-User-Id"] = self._user_id
        if self._gateway_token:
            headers["Authorization"] = f"Bearer {self._gateway_token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an HTTP request.

        Raises:
            ConversationError: subclass matching the server's error kind
            RuntimeError: any other error response
        """
        response = self._client.request(
            method,
            f"{self._url}{path}",
            json=json,
            params=params,
            headers=self._headers(),
        )

        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("kind") in ERROR_KINDS:
                raise error_from_dict(data)
            raise RuntimeError(f"API error {response.status_code}: {response.text}")

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    # --- Conversations ---

    def create_conversation(
        self,
        participant_ids: list[str],
        kind: str = "group",
        name: str | None = None,
    ) -> dict[str, Any]:
        """Create a conversation; ``created`` is False for an existing direct chat."""
        payload: dict[str, Any] = {"kind": kind, "participant_ids": participant_ids}
        if name is not None:
            payload["name"] = name
        return self._request("POST", "/conversations", json=payload)

    def list_conversations(self) -> list[dict[str, Any]]:
        return self._request("GET", "/conversations")

    def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        return self._request("GET", f"/conversations/{conversation_id}")

    def rename_conversation(self, conversation_id: str, name: str | None) -> dict[str, Any]:
        return self._request("PATCH", f"/conversations/{conversation_id}", json={"name": name})

    def set_muted(self, conversation_id: str, muted: bool) -> dict[str, Any]:
        return self._request(
            "PATCH", f"/conversations/{conversation_id}", json={"is_muted": muted}
        )

    def leave_conversation(self, conversation_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/conversations/{conversation_id}")

    # --- Participants ---

    def list_participants(
        self, conversation_id: str, include_left: bool = False
    ) -> list[dict[str, Any]]:
        params = {"include_left": "true"} if include_left else None
        return self._request(
            "GET", f"/conversations/{conversation_id}/participants", params=params
        )

    def add_participant(self, conversation_id: str, user_id: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/conversations/{conversation_id}/participants",
            json={"user_id": user_id},
        )

    def remove_participant(self, conversation_id: str, user_id: str) -> dict[str, Any]:
        return self._request(
            "DELETE", f"/conversations/{conversation_id}/participants/{user_id}"
        )

    # --- Read state ---

    def mark_as_read(self, conversation_id: str) -> dict[str, Any]:
        return self._request("POST", f"/conversations/{conversation_id}/read")

    def get_unread_count(self) -> int:
        return self._request("GET", "/conversations/unread-count")["count"]

    # --- Ops ---

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")
