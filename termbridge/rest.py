"""HTTP client for the hosted registry API (PostgREST-style tables)."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiohttp

from termbridge.errors import RegistrationError, RegistryHTTPError
from termbridge.models import SESSION_ACTIVE, SESSION_ENDED, Machine, Session
from termbridge.utils import ApiConfig

log = logging.getLogger("registry")


class RestClient:
    """Thin aiohttp wrapper: auth headers, JSON decoding, HTTP errors."""

    def __init__(self, api: ApiConfig, *, timeout_s: float = 15.0):
        self.base_url = api.url.rstrip("/")
        self._api = api
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api.api_key:
            headers["apikey"] = self._api.api_key
        token = self._api.access_token or self._api.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _make_url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers(), timeout=self._timeout
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request_json(self, method: str, path: str, **kwargs) -> object | None:
        session = await self._get_session()
        url = self._make_url(path)
        async with session.request(method, url, **kwargs) as resp:
            log.debug("%s %s -> %s", method, url, resp.status)
            if resp.status == 204:
                return None
            text = await resp.text()
            if resp.status >= 400:
                detail = text.strip() or resp.reason
                raise RegistryHTTPError(resp.status, method=method, url=url, detail=detail)
            if not text:
                return None
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text


def _first_row(response: object) -> dict[str, Any] | None:
    if isinstance(response, list):
        return response[0] if response and isinstance(response[0], dict) else None
    if isinstance(response, dict):
        return response
    return None


def _row_to_machine(row: dict[str, Any]) -> Machine:
    return Machine(
        id=str(row["id"]),
        owner_id=str(row.get("user_id") or ""),
        name=str(row.get("name") or ""),
        hostname=str(row.get("hostname") or ""),
        status=str(row.get("status") or "offline"),
        created_at=str(row.get("created_at") or ""),
        last_seen_at=row.get("last_seen_at"),
    )


def _row_to_session(row: dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        machine_id=str(row.get("machine_id") or ""),
        status=str(row.get("status") or SESSION_ACTIVE),
        working_directory=row.get("working_directory"),
        started_at=str(row.get("started_at") or ""),
        model=row.get("model"),
        resume_token=row.get("sdk_session_id"),
        ended_at=row.get("ended_at"),
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RestRegistry:
    """RegistryPort over `/rest/v1/<table>` endpoints."""

    def __init__(self, client: RestClient):
        self.client = client

    async def close(self) -> None:
        await self.client.close()

    async def _select_one(self, table: str, row_id: str) -> dict[str, Any] | None:
        response = await self.client.request_json(
            "GET", f"/rest/v1/{table}", params={"id": f"eq.{row_id}", "select": "*"}
        )
        return _first_row(response)

    async def _patch(self, table: str, filters: dict[str, str], body: dict[str, Any]) -> list:
        response = await self.client.request_json(
            "PATCH",
            f"/rest/v1/{table}",
            params=filters,
            json=body,
            headers={"Prefer": "return=representation"},
        )
        return response if isinstance(response, list) else []

    async def upsert_machine(self, machine: Machine) -> Machine:
        body = {
            "id": machine.id,
            "user_id": machine.owner_id,
            "name": machine.name,
            "hostname": machine.hostname,
            "status": machine.status,
            "last_seen_at": _now_iso(),
        }
        try:
            response = await self.client.request_json(
                "POST",
                "/rest/v1/machines",
                json=body,
                headers={"Prefer": "resolution=merge-duplicates,return=representation"},
            )
        except (RegistryHTTPError, aiohttp.ClientError) as exc:
            raise RegistrationError(f"Failed to register machine: {exc}") from exc
        row = _first_row(response)
        if row is None:
            raise RegistrationError("Machine upsert returned no row")
        return _row_to_machine(row)

    async def get_machine(self, machine_id: str) -> Machine | None:
        row = await self._select_one("machines", machine_id)
        return _row_to_machine(row) if row else None

    async def update_machine_status(self, machine_id: str, status: str) -> None:
        await self._patch(
            "machines",
            {"id": f"eq.{machine_id}"},
            {"status": status, "last_seen_at": _now_iso()},
        )

    async def touch_machine(self, machine_id: str) -> None:
        await self._patch("machines", {"id": f"eq.{machine_id}"}, {"last_seen_at": _now_iso()})

    async def create_session(
        self, machine_id: str, working_directory: str | None, model: str | None = None
    ) -> Session:
        body: dict[str, Any] = {
            "machine_id": machine_id,
            "status": SESSION_ACTIVE,
            "working_directory": working_directory,
        }
        if model:
            body["model"] = model
        try:
            response = await self.client.request_json(
                "POST",
                "/rest/v1/sessions",
                json=body,
                headers={"Prefer": "return=representation"},
            )
        except (RegistryHTTPError, aiohttp.ClientError) as exc:
            raise RegistrationError(f"Failed to create session: {exc}") from exc
        row = _first_row(response)
        if row is None:
            raise RegistrationError("Session insert returned no row")
        return _row_to_session(row)

    async def get_session(self, session_id: str) -> Session | None:
        row = await self._select_one("sessions", session_id)
        return _row_to_session(row) if row else None

    async def end_session(self, session_id: str) -> bool:
        rows = await self._patch(
            "sessions",
            {"id": f"eq.{session_id}", "status": f"neq.{SESSION_ENDED}"},
            {"status": SESSION_ENDED, "ended_at": _now_iso()},
        )
        return bool(rows)

    async def _update_open(self, session_id: str, body: dict[str, Any]) -> None:
        await self._patch(
            "sessions",
            {"id": f"eq.{session_id}", "status": f"neq.{SESSION_ENDED}"},
            body,
        )

    async def update_session_status(self, session_id: str, status: str) -> None:
        if status == SESSION_ENDED:
            await self.end_session(session_id)
            return
        await self._update_open(session_id, {"status": status})

    async def update_session_model(self, session_id: str, model: str) -> None:
        await self._update_open(session_id, {"model": model})

    async def update_session_resume_token(self, session_id: str, token: str) -> None:
        await self._update_open(session_id, {"sdk_session_id": token})

    async def append_message(
        self, session_id: str, msg_type: str, content: str | None, seq: int
    ) -> None:
        await self.client.request_json(
            "POST",
            "/rest/v1/messages",
            json={"session_id": session_id, "type": msg_type, "content": content or "", "seq": seq},
            headers={"Prefer": "return=minimal"},
        )
