"""Outbound payload contract shared with the insights analytics endpoint."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WeightSeries(BaseModel):
    """Parallel arrays, one element per included weight entry."""

    weight: list[float] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    dates: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_parallel(self) -> "WeightSeries":
        if not len(self.weight) == len(self.notes) == len(self.dates):
            raise ValueError("weight, notes and dates must have the same length")
        return self


class InsightsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")
    email: str | None = None
    unit: str = "kg"
    entries: WeightSeries = Field(default_factory=WeightSeries)
    goal_weight: float | None = None
    goal_days: int | None = None
    detailed_analysis: bool | None = None

    def to_wire(self) -> dict:
        """Serialise for the POST body, omitting absent optional keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
