"""
Chunk schema - the atomic unit that gets embedded and searched.

A Chunk belongs to exactly one source item.  All chunks of an item are
replaced together whenever the item is reprocessed.
"""
from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, Field


class Chunk(BaseModel):
    """A single embeddable text window produced from a source item."""

    # Identity
    chunk_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    item_id: str                         # Owning note / task / event
    order_index: int                     # Strictly increasing within an item

    # Content
    text: str
    embedding: Optional[list[float]] = None   # None when the embedding call failed
    token_estimate: int = 0
