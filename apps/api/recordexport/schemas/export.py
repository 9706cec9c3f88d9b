from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FilterPredicate(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["single", "list", "range", "not"]
    value: Any

    @model_validator(mode="before")
    @classmethod
    def _freeze_list_values(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type") == "list" and isinstance(data.get("value"), list):
            return {**data, "value": tuple(data["value"])}
        return data

    @model_validator(mode="after")
    def _check_value_shape(self) -> "FilterPredicate":
        if self.type == "list":
            if not isinstance(self.value, tuple) or not self.value:
                raise ValueError("list filters need a non-empty list of values")
        elif self.type == "range":
            if not isinstance(self.value, dict) or not ({"from", "to"} & set(self.value)):
                raise ValueError("range filters need a mapping with 'from' and/or 'to'")
            unknown = set(self.value) - {"from", "to"}
            if unknown:
                raise ValueError(f"unknown range bounds: {sorted(unknown)}")
        elif isinstance(self.value, (list, tuple, dict)) or self.value is None:
            raise ValueError(f"{self.type} filters need a single scalar value")
        return self


class SortOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1)
    direction: Literal["asc", "desc"] = "asc"


class AccessScope(BaseModel):
    user_name: str = Field(min_length=1)
    managed_user_names: list[str] = Field(default_factory=list)
    # module_id -> form name -> {field name -> field descriptor}
    permitted_properties: dict[str, dict[str, dict[str, Any]]] = Field(default_factory=dict)


class ExportJobCreate(BaseModel):
    record_type: str = Field(min_length=1)
    format: str = Field(min_length=1)
    filters: dict[str, Any] = Field(default_factory=dict)
    order: SortOrder | None = None
    query: str | None = None
    match_criteria: dict[str, Any] | None = None
    custom_export_params: dict[str, Any] | None = None
    password: str | None = None
    file_name: str | None = None


class ExportJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    record_type: str
    format: str
    owned_by: str
    status: str | None = None
    file_name: str | None = None
    started_at: datetime | None = None
    completed_on: datetime | None = None
    error_message: str | None = None
