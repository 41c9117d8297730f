from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from dashops.client.dashboard_client import DashboardClient
from dashops.core.logging import get_logger
from dashops.errors import OperationError, ProtocolError, RemoteFailure
from dashops.models.operation import (
    Executor,
    ExecutorOutcome,
    OperationKind,
    StartOptions,
    StatusFetcher,
    StatusReport,
)
from dashops.services.poller import parse_status_report, sleep_or_stop

DOMAINS = ("agents", "software", "equipment", "connections", "account")

# Catalog key per domain; connections are addressed by service name.
DOMAIN_KEYS = {
    "agents": "id",
    "software": "id",
    "equipment": "id",
    "connections": "name",
    "account": "id",
}


def entity_key(domain: str, entity_id: str) -> str:
    return f"{domain}:{entity_id}"


def local_id(entity_id: str) -> str:
    domain, sep, rest = entity_id.partition(":")
    if sep and domain in DOMAINS:
        return rest
    return entity_id


@dataclass
class ActionSpec:
    executor: Executor
    fetch_status: StatusFetcher | None = None
    expects_job: bool = False
    returns_entity: bool = False

    def options(self, **overrides: Any) -> StartOptions:
        return StartOptions(
            fetch_status=self.fetch_status,
            expects_job=self.expects_job,
            **overrides,
        )


def _require_success(data: Any, action: str) -> None:
    if isinstance(data, dict) and data.get("success") is False:
        raise RemoteFailure(str(data.get("message") or f"{action} was rejected"))


class DashboardActions:
    """
    Executors and status fetchers for each (domain, kind) the dashboard can
    trigger, built on one DashboardClient.
    """

    def __init__(self, client: DashboardClient) -> None:
        self.client = client
        self.logger = get_logger("dashops.actions")
        self._builders: dict[tuple[str, str], Callable[[str], ActionSpec]] = {
            ("agents", OperationKind.run): self._agent_run,
            ("agents", OperationKind.stop): self._agent_stop,
            ("software", OperationKind.install): self._software_install,
            ("software", OperationKind.update): self._software_update,
            ("software", OperationKind.uninstall): self._software_uninstall,
            ("software", OperationKind.launch): self._software_launch,
            ("equipment", OperationKind.connect): self._equipment_connect,
            ("equipment", OperationKind.disconnect): self._equipment_disconnect,
            ("equipment", OperationKind.diagnose): self._equipment_diagnose,
            ("equipment", OperationKind.firmware_update): self._equipment_firmware_update,
            ("connections", OperationKind.reconnect): self._connection_reconnect,
            ("account", OperationKind.toggle_2fa): self._account_toggle_2fa,
            ("account", OperationKind.verify_2fa): self._account_verify_2fa,
        }

    def supported(self) -> list[tuple[str, str]]:
        return sorted((domain, str(kind)) for domain, kind in self._builders)

    def resolve(self, domain: str, kind: str, entity_id: str) -> ActionSpec:
        builder = self._builders.get((domain, kind))
        if builder is None:
            raise KeyError(f"Action '{domain}/{kind}' is not supported")
        return builder(local_id(entity_id))

    # ---- agents ------------------------------------------------------------

    def _agent_run(self, agent_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            return ExecutorOutcome(result=await self.client.run_agent(agent_id))

        return ActionSpec(executor=execute)

    def _agent_stop(self, agent_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            data = await self.client.stop_agent(agent_id)
            _require_success(data, "agent stop")
            return ExecutorOutcome(result=data)

        return ActionSpec(executor=execute)

    # ---- software ----------------------------------------------------------

    def _installation_fetcher(self, software_id: str) -> StatusFetcher:
        async def fetch(job_id: str) -> StatusReport:
            report = parse_status_report(await self.client.get_installation_status(job_id))
            if report.succeeded:
                report.result = await self.client.get_software(software_id)
            return report

        return fetch

    def _installation_kickoff(self, call: Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]) -> Executor:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            data = await call(params)
            installation_id = None
            if isinstance(data, dict):
                installation_id = data.get("installationId") or data.get("installation_id") or data.get("jobId")
            if not installation_id:
                raise ProtocolError(f"{kind}_response_missing_installation_id")
            return ExecutorOutcome(job_id=str(installation_id))

        return execute

    def _software_install(self, software_id: str) -> ActionSpec:
        return ActionSpec(
            executor=self._installation_kickoff(
                lambda params: self.client.install_software(software_id, params.get("version"))
            ),
            fetch_status=self._installation_fetcher(software_id),
            expects_job=True,
            returns_entity=True,
        )

    def _software_update(self, software_id: str) -> ActionSpec:
        return ActionSpec(
            executor=self._installation_kickoff(lambda params: self.client.update_software(software_id)),
            fetch_status=self._installation_fetcher(software_id),
            expects_job=True,
            returns_entity=True,
        )

    def _software_uninstall(self, software_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            _require_success(await self.client.uninstall_software(software_id), "uninstall")
            return ExecutorOutcome(result=await self.client.get_software(software_id))

        return ActionSpec(executor=execute, returns_entity=True)

    def _software_launch(self, software_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            data = await self.client.launch_software(software_id)
            _require_success(data, "launch")
            return ExecutorOutcome(result=data)

        return ActionSpec(executor=execute)

    # ---- equipment ---------------------------------------------------------

    def _equipment_connect(self, equipment_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            return ExecutorOutcome(result=await self.client.connect_equipment(equipment_id))

        return ActionSpec(executor=execute, returns_entity=True)

    def _equipment_disconnect(self, equipment_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            _require_success(await self.client.disconnect_equipment(equipment_id), "disconnect")
            return ExecutorOutcome(result=await self.client.get_equipment(equipment_id))

        return ActionSpec(executor=execute, returns_entity=True)

    def _equipment_diagnose(self, equipment_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            data = await self.client.run_diagnostics(equipment_id)
            if not isinstance(data, dict) or "result" not in data:
                raise ProtocolError("diagnostics_response_missing_result")
            if data["result"] == "error":
                details = data.get("details") or {}
                errors = details.get("errors") if isinstance(details, dict) else None
                message = data.get("message") or "; ".join(str(item) for item in errors or []) or "diagnostics reported errors"
                raise RemoteFailure(str(message))
            # Wrapped: the report has its own "result" key.
            return ExecutorOutcome(result=data)

        return ActionSpec(executor=execute)

    def _equipment_firmware_update(self, equipment_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            _require_success(await self.client.update_firmware(equipment_id), "firmware update")
            # Progress is tracked per device, so the device id doubles as the job id.
            return ExecutorOutcome(job_id=equipment_id)

        async def fetch(job_id: str) -> StatusReport:
            report = parse_status_report(await self.client.get_firmware_progress(job_id))
            if report.succeeded:
                report.result = await self.client.get_equipment(job_id)
            return report

        return ActionSpec(executor=execute, fetch_status=fetch, expects_job=True, returns_entity=True)

    # ---- connections -------------------------------------------------------

    def _connection_reconnect(self, service_name: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            return ExecutorOutcome(result=await self.client.reconnect_service(service_name))

        return ActionSpec(executor=execute, returns_entity=True)

    # ---- account -----------------------------------------------------------

    def _account_toggle_2fa(self, account_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            return ExecutorOutcome(result=await self.client.toggle_two_factor(bool(params.get("enabled", True))))

        return ActionSpec(executor=execute)

    def _account_verify_2fa(self, account_id: str) -> ActionSpec:
        async def execute(entity_id: str, kind: str, params: dict[str, Any]) -> ExecutorOutcome:
            code = str(params.get("code") or "").strip()
            if not code:
                raise ProtocolError("verify_2fa requires a code", retryable=True)
            data = await self.client.verify_two_factor(code)
            if not isinstance(data, dict) or "valid" not in data:
                raise ProtocolError("verify_2fa_response_missing_valid")
            if not data["valid"]:
                raise RemoteFailure("verification code is invalid")
            return ExecutorOutcome(result=data)

        return ActionSpec(executor=execute)

    # ---- log streaming -----------------------------------------------------

    async def stream_logs(
        self,
        domain: str,
        entity_id: str,
        limit: int = 50,
        interval_sec: float = 2.0,
        stop_event: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield log entries not seen before, polling the backend every interval."""
        if domain == "agents":
            fetch = lambda: self.client.get_agent_logs(local_id(entity_id), limit)  # noqa: E731
        elif domain == "connections":
            fetch = lambda: self.client.get_service_logs(local_id(entity_id), limit)  # noqa: E731
        else:
            raise KeyError(f"Domain '{domain}' has no log stream")

        stop_event = stop_event or asyncio.Event()
        seen: set[str] = set()
        while not stop_event.is_set():
            try:
                entries = await fetch()
            except OperationError as exc:
                self.logger.warning(
                    "log_stream_fetch_failed",
                    extra={"entity_id": entity_id, "error": exc.message, "event": "logs.fetch_failed"},
                )
                entries = []
            markers = [_log_marker(entry) for entry in entries]
            fresh = [entry for entry, marker in zip(entries, markers) if marker not in seen]
            if markers:
                # Only the latest window can repeat, so older markers are dropped.
                seen = set(markers)
            for entry in fresh:
                yield entry
            await sleep_or_stop(stop_event, interval_sec)


def _log_marker(entry: dict[str, Any]) -> str:
    return str(entry.get("id") or f"{entry.get('timestamp')}|{entry.get('message')}")
