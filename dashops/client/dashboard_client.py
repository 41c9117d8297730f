from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from dashops.core.logging import get_logger
from dashops.errors import NetworkError, ProtocolError

# 4xx answers are final; retrying them only repeats the rejection.
_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class DashboardClient:
    """Thin async wrapper over the dashboard REST API (agents, software, equipment, account)."""

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout: float = 15.0,
        retries: int = 2,
        logger: logging.Logger | None = None,
        tls_verify: bool = True,
        tls_ca_cert_path: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff_sec: float = 1.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retries = max(1, retries)
        self._retry_backoff_sec = retry_backoff_sec
        self._logger = logger or get_logger("dashops.client")

        headers = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=headers,
            verify=self._resolve_verify(tls_verify, tls_ca_cert_path),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DashboardClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def set_api_token(self, token: str | None) -> None:
        cleaned = (token or "").strip()
        if cleaned:
            self._client.headers["Authorization"] = f"Bearer {cleaned}"
        else:
            self._client.headers.pop("Authorization", None)

    def _resolve_verify(self, tls_verify: bool, tls_ca_cert_path: str) -> bool | str:
        if not tls_verify:
            return False

        cert_path = tls_ca_cert_path.strip()
        if cert_path and Path(cert_path).exists():
            return cert_path
        if cert_path:
            self._logger.warning("tls_ca_cert_missing", extra={"path": cert_path})
        return True

    def _format_error(self, exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            request = exc.request
            detail = (response.text or "").strip().replace("\n", " ")
            if len(detail) > 220:
                detail = f"{detail[:220]}..."
            return (
                f"status={response.status_code} method={request.method} "
                f"url={request.url} detail={detail}"
            )
        if isinstance(exc, httpx.RequestError):
            request = exc.request
            return (
                f"{exc.__class__.__name__} method={request.method} "
                f"url={request.url} detail={exc}"
            )
        return str(exc)

    @staticmethod
    def _server_message(response: httpx.Response) -> str | None:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict):
            message = data.get("message") or data.get("error") or data.get("detail")
            if isinstance(message, str) and message.strip():
                return message.strip()
        return None

    async def _request(
        self,
        method: str,
        url: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        last_exc: Exception | None = None
        status_code: int | None = None
        message: str | None = None
        for attempt in range(1, self._retries + 1):
            try:
                response = await self._client.request(method, url, json=json_body, params=params)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                status_code = exc.response.status_code
                message = self._server_message(exc.response)
                if status_code not in _RETRYABLE_STATUS:
                    break
            except httpx.RequestError as exc:
                last_exc = exc
                status_code = None
                message = None
            else:
                if response.status_code == 204 or not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError as exc:
                    raise ProtocolError(f"response_not_json: {method} {url}") from exc

            if attempt < self._retries:
                await asyncio.sleep(min(self._retry_backoff_sec * 2 ** (attempt - 1), 8))

        detail = self._format_error(last_exc) if last_exc else "unknown_error"
        self._logger.warning(
            "dashboard_request_failed method=%s url=%s error=%s",
            method,
            url,
            detail,
        )
        raise NetworkError(message or f"dashboard_request_failed: {detail}", status_code=status_code)

    # ---- agents ------------------------------------------------------------

    async def get_agent(self, agent_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/agents/{quote(agent_id, safe='')}")
        return _unwrap(data, "agent")

    async def run_agent(self, agent_id: str) -> dict[str, Any]:
        data = await self._request("POST", f"/agents/{quote(agent_id, safe='')}/run")
        return _unwrap(data, "result")

    async def stop_agent(self, agent_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/agents/{quote(agent_id, safe='')}/stop")

    async def get_agent_logs(self, agent_id: str, limit: int = 100) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/agents/{quote(agent_id, safe='')}/logs", params={"limit": str(limit)})
        return _items(_unwrap(data, "logs"))

    # ---- software ----------------------------------------------------------

    async def get_software(self, software_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/software/{quote(software_id, safe='')}")

    async def install_software(self, software_id: str, version: str | None = None) -> dict[str, Any]:
        body = {"version": version} if version else {}
        return await self._request("POST", f"/software/{quote(software_id, safe='')}/install", body)

    async def update_software(self, software_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/software/{quote(software_id, safe='')}/update")

    async def uninstall_software(self, software_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/software/{quote(software_id, safe='')}/uninstall")

    async def launch_software(self, software_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/software/{quote(software_id, safe='')}/launch")

    async def get_installation_status(self, installation_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/software/installation/{quote(installation_id, safe='')}")

    # ---- equipment ---------------------------------------------------------

    async def get_equipment(self, equipment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/equipment/{quote(equipment_id, safe='')}")

    async def connect_equipment(self, equipment_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/equipment/{quote(equipment_id, safe='')}/connect")

    async def disconnect_equipment(self, equipment_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/equipment/{quote(equipment_id, safe='')}/disconnect")

    async def run_diagnostics(self, equipment_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/equipment/{quote(equipment_id, safe='')}/diagnostics")

    async def update_firmware(self, equipment_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/equipment/{quote(equipment_id, safe='')}/firmware/update")

    async def get_firmware_progress(self, equipment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/equipment/{quote(equipment_id, safe='')}/firmware/progress")

    # ---- connections -------------------------------------------------------

    async def reconnect_service(self, service_name: str) -> dict[str, Any]:
        return await self._request("POST", f"/system/connections/{quote(service_name, safe='')}/reconnect")

    async def get_connection_logs(self, limit: int = 50) -> list[dict[str, Any]]:
        data = await self._request("GET", "/system/connections/logs", params={"limit": str(limit)})
        return _items(data)

    async def get_service_logs(self, service_name: str, limit: int = 50) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/system/connections/{quote(service_name, safe='')}/logs",
            params={"limit": str(limit)},
        )
        return _items(data)

    # ---- account -----------------------------------------------------------

    async def toggle_two_factor(self, enabled: bool) -> dict[str, Any]:
        return await self._request("PUT", "/auth/2fa", {"enabled": enabled})

    async def verify_two_factor(self, code: str) -> dict[str, Any]:
        return await self._request("POST", "/auth/2fa/verify", {"code": code})


def _unwrap(data: Any, key: str) -> Any:
    if isinstance(data, dict) and key in data:
        return data[key]
    return data


def _items(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        data = data["items"]
    if not isinstance(data, list):
        raise ProtocolError("expected a list of log entries")
    return [item for item in data if isinstance(item, dict)]
