from __future__ import annotations

from pydantic import BaseModel, Field


class RunE2ERequest(BaseModel):
    project_id: str | None = Field(None, min_length=1, max_length=80)
    timeout_ms: int | None = Field(None, ge=1000, le=30 * 60 * 1000)


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    base_url: str = Field(..., min_length=1, max_length=2000)
    monitoring_types: list[str] = Field(default_factory=list)
    is_active: bool = True
