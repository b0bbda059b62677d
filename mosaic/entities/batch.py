"""
ExtractionBatch - the name -> entity id map for one extraction call.

Relationship endpoints returned by the extractor are entity *names*.  They
are resolved against the entities stored from the same call only; a
relationship naming an entity that was not extracted in this batch is
dropped.  A fresh batch is created per invocation, nothing is shared
between calls.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ExtractionBatch:
    user_id: str
    source_type: str
    source_id: str
    _ids: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().lower()

    def register(self, name: str, entity_id: str) -> None:
        self._ids[self._key(name)] = entity_id

    def resolve(self, name: str) -> Optional[str]:
        return self._ids.get(self._key(name))

    def entity_ids(self) -> list[str]:
        return list(dict.fromkeys(self._ids.values()))

    def __len__(self) -> int:
        return len(self._ids)
