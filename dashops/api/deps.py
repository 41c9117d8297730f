from starlette.requests import HTTPConnection

from dashops.client.actions import DashboardActions
from dashops.core.config import Settings
from dashops.services.catalog import CatalogCache
from dashops.services.operation_store import OperationStore
from dashops.ws.hub import OperationHub


def get_settings(connection: HTTPConnection) -> Settings:
    return connection.app.state.settings


def get_store(connection: HTTPConnection) -> OperationStore:
    return connection.app.state.store


def get_actions(connection: HTTPConnection) -> DashboardActions:
    return connection.app.state.actions


def get_catalog(connection: HTTPConnection) -> CatalogCache:
    return connection.app.state.catalog


def get_hub(connection: HTTPConnection) -> OperationHub:
    return connection.app.state.ws_hub
