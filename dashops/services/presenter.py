from collections.abc import Mapping

from dashops.models.operation import OperationPhase, OperationState, ViewFlags


def to_view_flags(state: OperationState, labels: Mapping[str, str] | None = None) -> ViewFlags:
    failed = state.phase == OperationPhase.failed
    return ViewFlags(
        is_loading=state.is_active,
        error=(state.error.message if state.error else "operation failed") if failed else None,
        progress=state.progress if state.phase == OperationPhase.polling else None,
        can_cancel=state.is_active,
        action_label=labels.get(state.phase) if labels else None,
    )
