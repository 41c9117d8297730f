from __future__ import annotations

from collections.abc import Callable, Iterable

from dashops.errors import AlreadyActive
from dashops.models.operation import OperationId, OperationKind, OperationState

DEFAULT_EXCLUSIVE_GROUPS: dict[str, tuple[frozenset[str], ...]] = {
    "software": (
        frozenset({OperationKind.install, OperationKind.uninstall, OperationKind.update, OperationKind.launch}),
    ),
    "agents": (frozenset({OperationKind.run, OperationKind.stop}),),
    "equipment": (
        frozenset(
            {
                OperationKind.connect,
                OperationKind.disconnect,
                OperationKind.diagnose,
                OperationKind.firmware_update,
            }
        ),
    ),
    "connections": (frozenset({OperationKind.reconnect, OperationKind.disconnect}),),
    "account": (frozenset({OperationKind.toggle_2fa, OperationKind.verify_2fa}),),
}


def entity_type_of(entity_id: str) -> str | None:
    """Entity type encoded as a ``"{type}:{id}"`` prefix, if any."""
    prefix, sep, _ = entity_id.partition(":")
    return prefix if sep and prefix else None


class ActionGuard:
    """
    Re-entrancy policy for operation starts.

    Kinds are grouped into mutually exclusive sets per entity type; two kinds
    conflict when they share a set, and a kind always conflicts with itself.
    The entity type is read from the entity id (``"software:7"``). Ids without
    a known type fall back to the union of every type's groups.
    Only operations on the same entity that are still requesting or polling
    block a start. Terminal records never do, so a retry after a failure is
    always accepted.
    """

    def __init__(
        self,
        exclusive_groups: dict[str, Iterable[Iterable[str]]] | None = None,
        entity_type: Callable[[str], str | None] = entity_type_of,
    ) -> None:
        groups = DEFAULT_EXCLUSIVE_GROUPS if exclusive_groups is None else exclusive_groups
        self._entity_type = entity_type
        self._by_type: dict[str, dict[str, set[str]]] = {}
        self._any_type: dict[str, set[str]] = {}
        for type_name, kind_sets in groups.items():
            table = self._by_type.setdefault(type_name, {})
            for kind_set in kind_sets:
                members = {str(kind) for kind in kind_set}
                for kind in members:
                    table.setdefault(kind, set()).update(members)
                    self._any_type.setdefault(kind, set()).update(members)

    def conflicting_kinds(self, kind: str, entity_type: str | None = None) -> frozenset[str]:
        table = self._by_type.get(entity_type, self._any_type) if entity_type else self._any_type
        return frozenset(table.get(kind, set()) | {kind})

    def blocking(self, operation_id: OperationId, active: Iterable[OperationState]) -> OperationId | None:
        conflicts = self.conflicting_kinds(operation_id.kind, self._entity_type(operation_id.entity_id))
        for state in active:
            other = state.operation_id
            if other.entity_id != operation_id.entity_id or not state.is_active:
                continue
            if other.kind in conflicts:
                return other
        return None

    def can_start(self, operation_id: OperationId, active: Iterable[OperationState]) -> bool:
        return self.blocking(operation_id, active) is None

    def check(self, operation_id: OperationId, active: Iterable[OperationState]) -> None:
        blocking = self.blocking(operation_id, active)
        if blocking is not None:
            raise AlreadyActive(operation_id, blocking)
