"""
Input validation and decoding using Pydantic v2
Validates lifecycle commands, creation requests and fetched snapshots
"""

import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import DecodeFailure
from .types import COMPETITION_TYPES, CompetitionState

logger = logging.getLogger(__name__)

COMMAND_TYPES = {
    "INVITE_USER",
    "ACCEPT_INVITE",
    "DECLINE_INVITE",
    "SCHEDULE",
    "START",
    "ACTIVATE",
    "FINISH",
    "TERMINATE",
    "UPDATE_SETTINGS",
    "DELETE",
}

# Commands the system issues on its own (timers), no actor required.
AUTOMATIC_COMMANDS = {"ACTIVATE", "FINISH"}

ALLOWED_UNITS = {"miles", "kilometers", "steps"}
ALLOWED_INTERVALS = {"day", "week", "month"}
ALLOWED_WORKOUTS = {"run", "walk"}


# ==================== SNAPSHOT MODELS ====================


class OptionsModel(BaseModel):
    goal: float = Field(0.0, ge=0.0)
    unit: str = "miles"
    interval: Optional[str] = None
    first_to: int = Field(0, ge=0)
    duration_hours: Optional[int] = Field(None, gt=0)
    history: Optional[bool] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("unit")
    @classmethod
    def validate_unit(cls, v: str) -> str:
        if v not in ALLOWED_UNITS:
            raise ValueError(f"unit must be one of {ALLOWED_UNITS}, got {v}")
        return v

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ALLOWED_INTERVALS:
            raise ValueError(f"interval must be one of {ALLOWED_INTERVALS}, got {v}")
        return v


class UserModel(BaseModel):
    user_id: str = Field(..., min_length=1)
    competition_id: Optional[str] = None
    username: Optional[str] = None
    invite_status: str = "pending"
    score: Optional[float] = None
    intervals: Dict[str, float] = Field(default_factory=dict)
    remaining_lives: Optional[int] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("invite_status")
    @classmethod
    def validate_invite_status(cls, v: str) -> str:
        # Older backends stored the owner's row as 'joined'
        if v == "joined":
            return "accepted"
        if v not in {"pending", "accepted", "declined"}:
            raise ValueError(f"invalid invite_status {v}")
        return v

    @field_validator("intervals", mode="before")
    @classmethod
    def default_intervals(cls, v: Any) -> Any:
        return {} if v is None else v


class CompetitionModel(BaseModel):
    competition_id: str = Field(..., min_length=1)
    competition_name: str = ""
    type: str
    owner: str = Field(..., min_length=1)
    status: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    workouts: List[str] = Field(default_factory=lambda: ["run", "walk"])
    options: OptionsModel = Field(default_factory=OptionsModel)
    users: List[UserModel] = Field(default_factory=list)
    version: int = Field(0, ge=0)
    applied_request_ids: List[str] = Field(default_factory=list)
    deleted: bool = False

    model_config = ConfigDict(extra="ignore")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in COMPETITION_TYPES:
            raise ValueError(f"type must be one of {COMPETITION_TYPES}, got {v}")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in {"lobby", "scheduled", "active", "finished"}:
            raise ValueError(f"invalid status {v}")
        return v

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def trim_timestamp(cls, v: Any) -> Any:
        # Backend sometimes serves full timestamps; only the date part is meaningful
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            return v[:10]
        return v


def decode_competition(payload: Any) -> CompetitionState:
    """Decode a fetched/persisted competition into a normalized state dict.

    Raises:
        DecodeFailure: If the payload is malformed
    """
    if isinstance(payload, dict) and "competition" in payload and "competition_id" not in payload:
        payload = payload["competition"]
    try:
        model = CompetitionModel.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Competition decode failed: {e}")
        raise DecodeFailure(f"Malformed competition: {e}") from e

    state: Dict[str, Any] = model.model_dump()
    state["start_date"] = model.start_date.isoformat() if model.start_date else None
    state["end_date"] = model.end_date.isoformat() if model.end_date else None
    if state["status"] is None:
        # Imported lazily: lifecycle imports this module
        from .lifecycle import derive_status

        state["status"] = derive_status(state)
    state["competition_name"] = InputSanitizer.sanitize_name(state["competition_name"])
    return state  # type: ignore[return-value]


# ==================== CREATION REQUEST ====================


def _missing_option_keys(
    competition_type: str, options: Dict[str, Any], end_date: Optional[str]
) -> List[str]:
    """Required option keys per type, as enforced when a competition is created."""
    has_duration = options.get("duration_hours") is not None or end_date is not None
    required = {
        "streaks": ["goal", "unit", "interval"],
        "apex": ["unit", "interval"],
        "clash": ["unit", "interval"],
        "targets": ["goal", "unit", "interval"],
        "race": ["goal", "unit"],
    }[competition_type]
    missing = [key for key in required if options.get(key) is None]
    if competition_type in ("apex", "targets") and not has_duration:
        missing.append("(duration_hours or end_date)")
    elif competition_type == "clash" and not has_duration and not options.get("first_to"):
        missing.append("(first_to or duration_hours)")
    return missing


class CreateCompetitionRequest(BaseModel):
    """Validated payload for creating a competition (always starts in lobby)."""

    competition_name: str = Field(..., min_length=1, max_length=100)
    type: str
    workouts: List[str] = Field(default_factory=lambda: ["run", "walk"])
    goal: Optional[float] = Field(None, gt=0.0, le=1_000_000)
    unit: Optional[str] = None
    first_to: int = Field(0, ge=0, le=1000)
    interval: Optional[str] = None
    duration_hours: Optional[int] = Field(None, gt=0, le=24 * 366)
    history: bool = False
    end_date: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in COMPETITION_TYPES:
            raise ValueError(f"type must be one of {COMPETITION_TYPES}, got {v}")
        return v

    @field_validator("competition_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        cleaned = InputSanitizer.sanitize_name(v)
        if not cleaned:
            raise ValueError("competition_name cannot be empty")
        return cleaned

    @field_validator("workouts")
    @classmethod
    def validate_workouts(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("workouts cannot be empty")
        unknown = [w for w in v if w not in ALLOWED_WORKOUTS]
        if unknown:
            raise ValueError(f"unknown workouts {unknown}")
        # Preserve first-seen order, drop duplicates
        return list(dict.fromkeys(v))

    @field_validator("unit")
    @classmethod
    def validate_unit(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ALLOWED_UNITS:
            raise ValueError(f"unit must be one of {ALLOWED_UNITS}, got {v}")
        return v

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ALLOWED_INTERVALS:
            raise ValueError(f"interval must be one of {ALLOWED_INTERVALS}, got {v}")
        return v

    @model_validator(mode="after")
    def validate_required_keys(self) -> Self:
        missing = _missing_option_keys(self.type, self.option_fields(), self.end_date)
        if missing:
            raise ValueError(f"Missing required key(s): {', '.join(missing)}")
        return self

    def option_fields(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "unit": self.unit,
            "first_to": self.first_to,
            "interval": self.interval,
            "duration_hours": self.duration_hours,
            "history": self.history,
        }

    def to_options(self) -> Dict[str, Any]:
        options = self.option_fields()
        options["goal"] = self.goal or 0.0
        if options["interval"] is None:
            options["interval"] = "day"
        return options


# ==================== COMMANDS ====================


class ValidatedCmd(BaseModel):
    """Lifecycle command with per-type required fields"""

    type: str = Field(..., min_length=1, max_length=50, description="Command type")
    actor_id: Optional[str] = Field(None, min_length=1, max_length=128)
    request_id: Optional[str] = Field(
        None, min_length=1, max_length=64, description="Idempotency token"
    )
    expected_version: Optional[int] = Field(
        None, ge=0, description="Version the client last saw (stale command detection)"
    )

    # INVITE_USER
    user_id: Optional[str] = Field(None, min_length=1, max_length=128)
    username: Optional[str] = Field(None, max_length=64)

    # SCHEDULE
    start_date: Optional[date] = None

    # UPDATE_SETTINGS
    competition_name: Optional[str] = Field(None, min_length=1, max_length=100)
    workouts: Optional[List[str]] = None
    options: Optional[Dict[str, Any]] = None
    competition_type: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in COMMAND_TYPES:
            raise ValueError(f"type must be one of {COMMAND_TYPES}, got {v}")
        return v

    @field_validator("competition_name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        cleaned = InputSanitizer.sanitize_name(v)
        if not cleaned:
            raise ValueError("competition_name cannot be empty")
        return cleaned

    @field_validator("workouts")
    @classmethod
    def validate_workouts(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        if not v or any(w not in ALLOWED_WORKOUTS for w in v):
            raise ValueError(f"workouts must be a non-empty subset of {ALLOWED_WORKOUTS}")
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def validate_command_fields(self) -> Self:
        """Validate required fields based on command type"""
        cmd_type = self.type

        if cmd_type not in AUTOMATIC_COMMANDS and self.actor_id is None:
            raise ValueError(f"{cmd_type} requires actor_id")

        if cmd_type == "INVITE_USER":
            if self.user_id is None:
                raise ValueError("INVITE_USER requires user_id")

        elif cmd_type == "SCHEDULE":
            if self.start_date is None:
                raise ValueError("SCHEDULE requires start_date")

        elif cmd_type == "UPDATE_SETTINGS":
            if self.options is not None:
                # Validate option values, not presence (partial update)
                try:
                    OptionsModel.model_validate(
                        {k: v for k, v in self.options.items() if v is not None}
                    )
                except ValidationError as e:
                    raise ValueError(f"UPDATE_SETTINGS has invalid options: {e}") from e

        return self


class InputSanitizer:
    """Utility class for input sanitization"""

    @staticmethod
    def sanitize_string(value: str, max_length: int = 255) -> str:
        """Sanitize string input"""
        if not isinstance(value, str):
            return str(value)[:max_length]

        value = value.strip()
        value = value[:max_length]
        value = value.replace("\0", "")

        return value

    @staticmethod
    def sanitize_name(name: str) -> str:
        """Sanitize competition/user display names, keeping Unicode letters"""
        name = InputSanitizer.sanitize_string(name, 100)
        dangerous_chars = r'[<>{}[\]\\|;`"\x00-\x1f\x7f]'
        name = re.sub(dangerous_chars, "", name)
        return name.strip()

    @staticmethod
    def validate_cmd(cmd_dict: dict) -> ValidatedCmd:
        """
        Validate command dictionary

        Returns:
            ValidatedCmd: Validated command object

        Raises:
            ValueError: If validation fails
        """
        try:
            return ValidatedCmd(**cmd_dict)
        except ValidationError as e:
            logger.warning(f"Command validation failed: {e}")
            raise ValueError(f"Invalid command: {str(e)}") from e


__all__ = [
    "CompetitionModel",
    "CreateCompetitionRequest",
    "InputSanitizer",
    "OptionsModel",
    "UserModel",
    "ValidatedCmd",
    "decode_competition",
]
