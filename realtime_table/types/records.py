"""
Typed records for the JSON columns of the back-office tables.

Free-form objects such as `quality_specifications` or `location` are
validated here, at the write boundary, instead of trusting their shape when
rows are read back.
"""
from typing import Any, Dict, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from realtime_table.errors import ValidationError, classify_error


class QualitySpecifications(BaseModel):
    """Assay of a smelter sale lot; contents are percentages"""
    model_config = ConfigDict(extra="forbid")

    ni_content: Optional[float] = Field(default=None, ge=0, le=100)
    moisture_content: Optional[float] = Field(default=None, ge=0, le=100)
    fe_content: Optional[float] = Field(default=None, ge=0, le=100)
    sio2_content: Optional[float] = Field(default=None, ge=0, le=100)
    size: Optional[str] = None


class QualityRequirements(BaseModel):
    """What a smelter company accepts"""
    model_config = ConfigDict(extra="forbid")

    min_ni_content: Optional[float] = Field(default=None, ge=0, le=100)
    max_moisture: Optional[float] = Field(default=None, ge=0, le=100)
    acceptable_size: Optional[str] = None


class ConcessionLocation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    province: str = Field(min_length=1)
    regency: str = Field(min_length=1)
    coordinates: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def _check_coordinates(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 2:
            raise ValueError("coordinates must be 'lat, lon'")
        try:
            lat, lon = float(parts[0]), float(parts[1])
        except ValueError:
            raise ValueError("coordinates must be numeric")
        if not -90 <= lat <= 90 or not -180 <= lon <= 180:
            raise ValueError("coordinates out of range")
        return f"{lat}, {lon}"


# table -> column -> record model
RECORD_FIELDS: Dict[str, Dict[str, Type[BaseModel]]] = {
    "smelter_sales": {"quality_specifications": QualitySpecifications},
    "smelter_companies": {"quality_requirements": QualityRequirements},
    "mining_concessions": {"location": ConcessionLocation},
}


def validate_payload(table: str, payload: Any, *, partial: bool = False,
                     row_id: Optional[str] = None) -> Dict[str, Any]:
    """Validate and normalize a write payload for `table`.

    `partial` marks an update: an `id` in the payload may only repeat the
    target row's id.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError(f"payload for '{table}' must be a mapping, got {type(payload).__name__}", table=table)

    values = dict(payload)
    if partial:
        if "id" in values and row_id is not None and str(values["id"]) != str(row_id):
            raise ValidationError("row id cannot be changed", table=table, row_id=row_id)
        values.pop("id", None)
        if not values:
            raise ValidationError("update payload is empty", table=table, row_id=row_id)

    for column, model in RECORD_FIELDS.get(table, {}).items():
        if column not in values or values[column] is None:
            continue
        raw = values[column]
        try:
            record = raw if isinstance(raw, model) else model.model_validate(raw)
        except PydanticValidationError as e:
            err = classify_error(e)
            raise ValidationError(f"{column}: {err.message}", table=table, row_id=row_id) from e
        values[column] = record.model_dump(exclude_none=True)

    return values
