from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CloudFilamentUsage(BaseModel):
    """One filament of a cloud task's AMS breakdown (slicer estimate)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ams_slot: Optional[int] = Field(default=None, alias="ams", description="AMS slot, 1-indexed")
    filament_type: Optional[str] = Field(default=None, alias="filamentType")
    source_color: Optional[str] = Field(default=None, alias="sourceColor", description="RGBA hex of the sliced filament")
    weight_grams: Optional[float] = Field(default=None, alias="weight")

    @property
    def slot_index(self) -> int:
        """0-indexed slot; a missing slot means the first one."""
        return (self.ams_slot or 1) - 1

    @property
    def grams(self) -> float:
        return self.weight_grams or 0.0


class CloudTask(BaseModel):
    """A print task as reported by the Bambu cloud (most recent first)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    design_title: Optional[str] = Field(default=None, alias="designTitle")
    status: Optional[int] = Field(default=None, description="2 = completed, 3 = failed")
    total_weight_grams: Optional[float] = Field(default=None, alias="weight")
    per_filament_usage: Optional[list[CloudFilamentUsage]] = Field(default=None, alias="amsDetailMapping")

    @property
    def display_title(self) -> str:
        return self.design_title or self.title or ""

    @property
    def breakdown(self) -> list[CloudFilamentUsage]:
        return self.per_filament_usage or []

    @property
    def total_grams(self) -> float:
        return self.total_weight_grams or 0.0


TASK_STATUS_COMPLETED = 2
TASK_STATUS_FAILED = 3
