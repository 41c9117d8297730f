from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from dashops.services.reconciler import splice_entity


class CatalogCache:
    """Last confirmed entity per domain, as pushed by completed operations."""

    def __init__(self, keys: Mapping[str, str] | None = None) -> None:
        self._keys = dict(keys or {})
        self._items: dict[str, list[Any]] = {}

    def key_for(self, domain: str) -> str:
        return self._keys.get(domain, "id")

    def items(self, domain: str) -> list[Any]:
        return list(self._items.get(domain, []))

    def get(self, domain: str, entity_id: str) -> Any:
        key = self.key_for(domain)
        for item in self._items.get(domain, []):
            value = item.get(key) if isinstance(item, Mapping) else getattr(item, key, None)
            if value is not None and str(value) == str(entity_id):
                return item
        return None

    def put(self, domain: str, entity: Any) -> None:
        self._items[domain] = splice_entity(self._items.get(domain, []), entity, key=self.key_for(domain))

    def replace(self, domain: str, items: list[Any]) -> None:
        self._items[domain] = list(items)
