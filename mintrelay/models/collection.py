"""
mintrelay/models/collection.py
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Collection(BaseModel):
    """A creator's NFT collection contract. Immutable once deployed."""
    model_config = ConfigDict(frozen=True)

    address: str
    owner: str
    name: str
    symbol: str
    royalty_bps: int = 0
    tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None
