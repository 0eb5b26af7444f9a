from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class AvailabilitySlotDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    start: str
    end: str


class AvailabilityDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    base: Dict[str, List[AvailabilitySlotDto]] = {}
    overrides: Dict[str, List[AvailabilitySlotDto]] = {}


class CreateMachineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=50)
    description: Optional[str] = None
    totalCount: int = Field(default=1, ge=1, le=100)
    pricePerHour: int = Field(ge=0)
    specs: Optional[dict] = None
    availability: Optional[AvailabilityDto] = None
    tags: List[int] = []


class UpdateMachineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    totalCount: Optional[int] = Field(default=None, ge=1, le=100)
    pricePerHour: Optional[int] = Field(default=None, ge=0)
    specs: Optional[dict] = None
    availability: Optional[AvailabilityDto] = None
    tags: Optional[List[int]] = None


class CreateInstanceDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    instanceCode: Optional[str] = Field(default=None, max_length=80)
    status: Literal["active", "maintenance", "retired"] = "active"
    availability: Optional[AvailabilityDto] = None
    metadata: Optional[dict] = None


class UpdateInstanceDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[Literal["active", "maintenance", "retired"]] = None
    availability: Optional[AvailabilityDto] = None
    clearAvailability: bool = False
    metadata: Optional[dict] = None
