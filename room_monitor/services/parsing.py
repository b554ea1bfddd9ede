"""Decoding of raw bus payloads into telemetry values and device states."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


class MalformedPayload(ValueError):
    pass


class TelemetryRecord(BaseModel):
    """One telemetry reading.

    Accepted keys: ``temperature``/``t``, ``humidity``/``h``,
    ``illuminance``/``lux``/``lx`` and an optional ``timestamp``/``ts``
    (unix seconds or ISO 8601; naive values are taken as UTC).
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    temperature: float = Field(validation_alias=AliasChoices("temperature", "t"), allow_inf_nan=False)
    humidity: float = Field(validation_alias=AliasChoices("humidity", "h"), allow_inf_nan=False)
    illuminance: float = Field(
        validation_alias=AliasChoices("illuminance", "lux", "lx"), allow_inf_nan=False
    )
    ts_utc: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("timestamp", "ts"))

    @field_validator("temperature", "humidity", "illuminance", mode="before")
    @classmethod
    def reject_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("boolean is not a reading")
        return v

    @field_validator("ts_utc")
    @classmethod
    def as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return None
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


_TRUE_TOKENS = {"1", "on", "true"}
_FALSE_TOKENS = {"0", "off", "false"}


class FeedbackRecord(BaseModel):
    status: bool

    @field_validator("status", mode="before")
    @classmethod
    def token_to_bool(cls, v: Any) -> bool:
        if isinstance(v, bool):
            return v
        if isinstance(v, (int, float)) and v in (0, 1):
            return bool(v)
        token = str(v).strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
        raise ValueError(f"not a boolean token: {v!r}")


_CSV_FIELDS = ("temperature", "humidity", "illuminance")


def _decode(raw: bytes) -> str:
    try:
        return raw.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise MalformedPayload(f"not utf-8: {e}") from e


def parse_telemetry(raw: bytes) -> TelemetryRecord:
    """Accept either a JSON record or a comma-delimited ``t,h,lux`` list."""
    text = _decode(raw)
    if not text:
        raise MalformedPayload("empty payload")

    try:
        if text.startswith("{"):
            return TelemetryRecord.model_validate_json(text)

        parts = [p.strip() for p in text.split(",")]
        if len(parts) < 3:
            raise MalformedPayload(f"expected 3 fields, got {len(parts)}")
        return TelemetryRecord.model_validate(dict(zip(_CSV_FIELDS, parts)))
    except ValidationError as e:
        raise MalformedPayload(f"invalid telemetry: {e.errors(include_url=False)}") from e


def parse_device_state(raw: bytes) -> bool:
    """Accept a bare token ("1", "off", ...) or a JSON ``{"status": ...}`` record."""
    text = _decode(raw)
    try:
        if text.startswith("{"):
            return FeedbackRecord.model_validate_json(text).status
        return FeedbackRecord.model_validate({"status": text}).status
    except ValidationError as e:
        raise MalformedPayload(f"invalid device state: {e.errors(include_url=False)}") from e
