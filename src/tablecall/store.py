"""Call and artifact persistence.

update_call() is a compare-and-set: the write lands only if every field in
`guard` still holds the value the caller observed. That is what keeps two
workers from overwriting each other's transitions for the same call.
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import httpx

from tablecall.errors import StorageError
from tablecall.models import Call, CallArtifact, to_row

logger = logging.getLogger(__name__)

CALLS_TABLE = "calls"
ARTIFACTS_TABLE = "call_artifacts"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStore(ABC):
    @abstractmethod
    async def get_call_by_provider_id(self, provider_call_id: str) -> Call | None: ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Call | None: ...

    @abstractmethod
    async def update_call(self, call_id: str, updates: dict, guard: dict | None = None) -> Call | None:
        """Apply `updates` if `guard` matches; return the new Call or None on mismatch."""

    @abstractmethod
    async def get_artifact(self, call_id: str) -> CallArtifact | None: ...

    @abstractmethod
    async def upsert_artifact(self, call_id: str, fields: dict) -> None: ...

    async def close(self) -> None:
        pass


class InMemoryCallStore(CallStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._calls: dict[str, Call] = {}
        self._artifacts: dict[str, CallArtifact] = {}

    def add_call(self, call: Call, artifact: CallArtifact | None = None) -> None:
        """Insert a call the way the intake API would, with its paired artifact."""
        self._calls[call.id] = call
        self._artifacts[call.id] = artifact or CallArtifact(call_id=call.id)

    async def get_call_by_provider_id(self, provider_call_id: str) -> Call | None:
        for call in self._calls.values():
            if call.provider_call_id == provider_call_id:
                return copy.deepcopy(call)
        return None

    async def get_call(self, call_id: str) -> Call | None:
        call = self._calls.get(call_id)
        return copy.deepcopy(call) if call is not None else None

    async def update_call(self, call_id: str, updates: dict, guard: dict | None = None) -> Call | None:
        call = self._calls.get(call_id)
        if call is None:
            raise StorageError(f"call {call_id} not found")
        for key, expected in (guard or {}).items():
            if getattr(call, key) != expected:
                return None
        updated = call.with_updates({**copy.deepcopy(updates), "updated_at": utcnow()})
        self._calls[call_id] = updated
        return copy.deepcopy(updated)

    async def get_artifact(self, call_id: str) -> CallArtifact | None:
        artifact = self._artifacts.get(call_id)
        return copy.deepcopy(artifact) if artifact is not None else None

    async def upsert_artifact(self, call_id: str, fields: dict) -> None:
        artifact = self._artifacts.get(call_id) or CallArtifact(call_id=call_id)
        for key, value in copy.deepcopy(fields).items():
            setattr(artifact, key, value)
        artifact.updated_at = utcnow()
        self._artifacts[call_id] = artifact


class SupabaseCallStore(CallStore):
    """Store backed by Supabase's PostgREST API with the service-role key.

    Guarded updates become PATCH requests filtered on the guard columns;
    an empty representation in the response means the guard did not match.
    """

    def __init__(
        self,
        url: str,
        secret_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = url.rstrip("/") + "/rest/v1"
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "apikey": secret_key,
                    "Authorization": f"Bearer {secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, table: str, label: str, **kwargs) -> list[dict]:
        try:
            resp = await self._client.request(method, f"/{table}", **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("%s returned %s: %s", label, e.response.status_code, e.response.text)
            raise StorageError(f"{label} failed with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("%s failed: %s", label, e)
            raise StorageError(f"{label} failed: {e}") from e
        if not resp.content:
            return []
        return resp.json()

    async def _select_one(self, table: str, column: str, value: str, label: str) -> dict | None:
        rows = await self._request(
            "GET", table, label,
            params={column: f"eq.{value}", "select": "*", "limit": "1"},
        )
        return rows[0] if rows else None

    async def get_call_by_provider_id(self, provider_call_id: str) -> Call | None:
        row = await self._select_one(CALLS_TABLE, "provider_call_id", provider_call_id, "Call lookup")
        return Call.from_row(row) if row else None

    async def get_call(self, call_id: str) -> Call | None:
        row = await self._select_one(CALLS_TABLE, "id", call_id, "Call fetch")
        return Call.from_row(row) if row else None

    async def update_call(self, call_id: str, updates: dict, guard: dict | None = None) -> Call | None:
        params = {"id": f"eq.{call_id}"}
        for key, expected in to_row(guard or {}).items():
            params[key] = postgrest_filter(expected)
        rows = await self._request(
            "PATCH", CALLS_TABLE, "Call update",
            params=params,
            json=to_row({**updates, "updated_at": utcnow()}),
            headers={"Prefer": "return=representation"},
        )
        return Call.from_row(rows[0]) if rows else None

    async def get_artifact(self, call_id: str) -> CallArtifact | None:
        row = await self._select_one(ARTIFACTS_TABLE, "call_id", call_id, "Artifact fetch")
        return CallArtifact.from_row(row) if row else None

    async def upsert_artifact(self, call_id: str, fields: dict) -> None:
        await self._request(
            "POST", ARTIFACTS_TABLE, "Artifact upsert",
            params={"on_conflict": "call_id"},
            json=to_row({"call_id": call_id, **fields, "updated_at": utcnow()}),
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )


def postgrest_filter(value) -> str:
    if value is None:
        return "is.null"
    if value is True:
        return "is.true"
    if value is False:
        return "is.false"
    return f"eq.{value}"
