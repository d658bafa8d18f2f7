from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, Optional

from sqlmodel import Field, SQLModel


class FetchRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    batch_id: str = Field(index=True)
    boundary_index: int
    status: str
    service_url: str
    query: str
    image_path: str = ""
    resolution: Optional[int] = None
    rectangle_payload: str = Field(default="", description="JSON encoded georeferencing rectangle")
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def rectangle(self) -> Optional[Dict[str, float]]:
        if not self.rectangle_payload:
            return None
        try:
            return json.loads(self.rectangle_payload)
        except json.JSONDecodeError:
            return None


class ApiUsageStat(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(index=True, unique=True)
    request_count: int = 0
    last_used_at: Optional[datetime] = None
