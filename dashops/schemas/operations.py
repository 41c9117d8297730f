from typing import Any

from pydantic import BaseModel, Field

from dashops.models.operation import OperationState, ViewFlags


class OperationStartRequest(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)
    optimistic: bool = False


class OperationView(BaseModel):
    state: OperationState
    flags: ViewFlags


class OperationListResponse(BaseModel):
    items: list[OperationView]


class ActionDescriptor(BaseModel):
    domain: str
    kind: str


class ActionListResponse(BaseModel):
    items: list[ActionDescriptor]


class CatalogResponse(BaseModel):
    domain: str
    items: list[dict[str, Any]]
