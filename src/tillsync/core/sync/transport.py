"""
Remote authority transport.

``RemoteAuthority`` is the protocol the orchestrator pushes through;
``HttpRemoteAuthority`` implements it against the backend REST API:

    GET    {base}/{entity_type}/{id}     fetch
    POST   {base}/{entity_type}          create
    PUT    {base}/{entity_type}/{id}     update
    DELETE {base}/{entity_type}/{id}     delete
    POST   {base}/sync/pull              pull_changes

HTTP failures are translated into the sync exception hierarchy here, so the
retry policy never has to look at status codes:

    timeout / connection error / 5xx / 408 / 429  -> TransientNetworkError
    409 on create, update or delete               -> ConflictDetected
    other 4xx                                      -> PermanentValidationError
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from tillsync.core.config.models import RemoteConfig
from tillsync.core.sync.exceptions import (
    ConflictDetected,
    PermanentValidationError,
    TransientNetworkError,
)
from tillsync.core.sync.models import PullChanges, RemoteRecord
from tillsync.core.sync.retry import is_retryable_status
from tillsync.utils.timestamps import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class RemoteAuthority(Protocol):
    """
    Interface to the system holding the authoritative copy of each entity.

    ``create`` and ``update`` may return the stored record (with the
    server's ``updatedAt``) or None when the backend answers without a body.
    ``fetch`` returns None when the remote has no record.
    """

    async def fetch(self, entity_type: str, entity_id: str) -> RemoteRecord | None: ...

    async def create(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteRecord | None: ...

    async def update(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteRecord | None: ...

    async def delete(self, entity_type: str, entity_id: str) -> None: ...

    async def pull_changes(self, since: datetime | None, device_id: str) -> PullChanges: ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def _unwrap(body: Any) -> Any:
    # Some routes wrap the record in {"data": ...}
    if isinstance(body, dict) and "data" in body and isinstance(body["data"], (dict, list)):
        return body["data"]
    return body


class HttpRemoteAuthority:
    """
    REST client for the backend API built on ``httpx.AsyncClient``.

    Example:
        >>> async with HttpRemoteAuthority("http://localhost:3000/api", token="t") as remote:
        ...     record = await remote.fetch("products", "p-1")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        verify: bool = True,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Create a client.

        Args:
            base_url: API base URL (e.g. http://localhost:3000/api)
            token: Bearer token
            timeout: Per-request timeout in seconds
            verify: Verify TLS certificates
            client: Pre-built client; the caller keeps ownership
            transport: Custom transport, e.g. ``httpx.MockTransport`` in tests
        """
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: RemoteConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HttpRemoteAuthority:
        return cls(
            config.base_url,
            token=config.token,
            timeout=config.timeout_seconds,
            verify=config.verify_tls,
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpRemoteAuthority:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # RemoteAuthority
    # ------------------------------------------------------------------

    async def fetch(self, entity_type: str, entity_id: str) -> RemoteRecord | None:
        response = await self._request(
            "GET", f"/{entity_type}/{entity_id}", allow_not_found=True
        )
        if response is None:
            return None
        return self._record(response, entity_id, strict=True)

    async def create(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteRecord | None:
        body = {**payload, "id": entity_id}
        response = await self._request(
            "POST", f"/{entity_type}", json=body, conflict_on=(entity_type, entity_id)
        )
        return self._record(response, entity_id)

    async def update(
        self, entity_type: str, entity_id: str, payload: dict[str, Any]
    ) -> RemoteRecord | None:
        body = {**payload, "id": entity_id}
        response = await self._request(
            "PUT",
            f"/{entity_type}/{entity_id}",
            json=body,
            conflict_on=(entity_type, entity_id),
        )
        return self._record(response, entity_id)

    async def delete(self, entity_type: str, entity_id: str) -> None:
        # A 404 means the record is already gone, which is what we wanted
        await self._request(
            "DELETE",
            f"/{entity_type}/{entity_id}",
            allow_not_found=True,
            conflict_on=(entity_type, entity_id),
        )

    async def pull_changes(self, since: datetime | None, device_id: str) -> PullChanges:
        response = await self._request(
            "POST",
            "/sync/pull",
            json={"deviceId": device_id, "lastSyncAt": to_iso(since)},
        )
        assert response is not None
        body = _unwrap(self._json(response)) or {}
        changes = body.get("changes") or {}
        if not isinstance(changes, dict):
            raise PermanentValidationError(
                "Malformed pull response: 'changes' is not an object",
                status_code=response.status_code,
            )
        return PullChanges(
            synced_at=parse_timestamp(body.get("syncedAt")) or utcnow(),
            changes={
                entity_type: [r for r in records if isinstance(r, dict)]
                for entity_type, records in changes.items()
                if isinstance(records, list)
            },
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
        conflict_on: tuple[str, str] | None = None,
    ) -> httpx.Response | None:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {path} timed out", url=url) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}", url=url) from e

        logger.debug("%s %s -> %d", method, url, response.status_code)

        if response.status_code == 404 and allow_not_found:
            return None
        if response.is_success:
            return response

        message = _error_message(response)
        if response.status_code == 409 and conflict_on is not None:
            raise ConflictDetected(*conflict_on, f"{method} {path}: {message}")
        if is_retryable_status(response.status_code):
            raise TransientNetworkError(
                f"{method} {path}: {message}",
                status_code=response.status_code,
                url=url,
            )
        raise PermanentValidationError(
            f"{method} {path}: {message}",
            status_code=response.status_code,
            url=url,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise PermanentValidationError(
                "Remote returned a non-JSON body",
                status_code=response.status_code,
            ) from e

    def _record(
        self,
        response: httpx.Response | None,
        entity_id: str,
        *,
        strict: bool = False,
    ) -> RemoteRecord | None:
        if response is None:
            return None
        body = _unwrap(self._json(response))
        if not isinstance(body, dict):
            if strict:
                raise PermanentValidationError(
                    f"Remote returned no record for {entity_id}",
                    status_code=response.status_code,
                )
            return None
        body.setdefault("id", entity_id)
        try:
            return RemoteRecord.from_payload(body)
        except ValueError as e:
            if strict:
                raise PermanentValidationError(str(e), status_code=response.status_code) from e
            logger.debug("Remote answered %s without a usable record: %s", entity_id, e)
            return None
