# gate_server/models.py
"""
Data Models
"""
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

LABEL_SEPARATOR = "|"
UNKNOWN_LABEL = "unknown"


class AccessCategory(str, Enum):
    RESIDENT = "RESIDENT"
    EMPLOYEE = "EMPLOYEE"
    GUEST = "GUEST"


class PersonRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    person_id: str  # Slug of the name, made unique on collision
    name: str
    category: AccessCategory = AccessCategory.RESIDENT
    unit: str = ""  # Unit reference, e.g. "101"
    folder: str  # Enrollment folder under the labels directory
    created_at: datetime

    @field_validator("name", "unit")
    @classmethod
    def _no_label_separator(cls, value: str) -> str:
        if LABEL_SEPARATOR in value:
            raise ValueError(f"must not contain '{LABEL_SEPARATOR}'")
        return value

    @property
    def label(self) -> str:
        return compose_label(self.name, self.category.value, self.unit)


def compose_label(name: str, category: str, unit: str) -> str:
    return LABEL_SEPARATOR.join([name, category, unit])


def split_label(label: str) -> tuple:
    """Split a composite label into (name, category, unit)"""
    parts = label.split(LABEL_SEPARATOR)
    parts += [""] * (3 - len(parts))
    return parts[0], parts[1], LABEL_SEPARATOR.join(parts[2:])


class LabeledDescriptorSet(BaseModel):
    """A person's label and the descriptors of their reference images"""
    model_config = ConfigDict(frozen=True)

    label: str
    descriptors: List[List[float]] = []

    @field_validator("label")
    @classmethod
    def _label_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("label must not be blank")
        return value

    @field_validator("descriptors")
    @classmethod
    def _descriptors_well_formed(cls, value: List[List[float]]) -> List[List[float]]:
        if not value:
            return value
        length = len(value[0])
        if length == 0:
            raise ValueError("descriptors must not be empty vectors")
        for descriptor in value:
            if len(descriptor) != length:
                raise ValueError(f"descriptor length {len(descriptor)} != {length}")
            if not all(math.isfinite(x) for x in descriptor):
                raise ValueError("descriptor contains non-finite values")
        return value

    @property
    def descriptor_length(self) -> Optional[int]:
        return len(self.descriptors[0]) if self.descriptors else None

    @classmethod
    def validated(cls, label: str, descriptors, expected_length: Optional[int] = None) -> "LabeledDescriptorSet":
        """Build a set and check every descriptor against expected_length"""
        labeled = cls(label=label, descriptors=[[float(x) for x in d] for d in descriptors])
        if expected_length is not None and labeled.descriptors and labeled.descriptor_length != expected_length:
            raise ValueError(
                f"descriptors for {label} have length {labeled.descriptor_length}, expected {expected_length}"
            )
        return labeled


class CacheEntry(BaseModel):
    key: str
    data: Any = None
    timestamp: float  # Write time, seconds since epoch
    ttl: Optional[float] = None


class RecognitionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return split_label(self.label)[0]


class AccessEvent(BaseModel):
    person_label: str
    access_category: str
    unit_reference: str
    method: str = "FACIAL_RECOGNITION"
    confidence: float
    timestamp: datetime

    @classmethod
    def from_recognition(cls, event: RecognitionEvent) -> "AccessEvent":
        name, category, unit = split_label(event.label)
        return cls(
            person_label=name,
            access_category=category,
            unit_reference=unit,
            confidence=event.confidence,
            timestamp=event.timestamp
        )


class ConnectionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class DeviceConnectionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    baud_rate: int
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: str = ""

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


class CommandKind(str, Enum):
    TOGGLE = "toggle"
    KEYWORD = "keyword"
    RAW = "raw"  # Well-formed but not part of the known grammar


class ActuatorCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    kind: CommandKind
    channel: Optional[int] = None
    state: Optional[bool] = None  # Requested channel state for toggles
    mode: str = "simulated"  # real or simulated


class CommandResult(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    mode: Optional[str] = None
    channels: Dict[int, bool] = {}

    @classmethod
    def ok(cls, message: str, **kwargs) -> "CommandResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failed(cls, error: str, **kwargs) -> "CommandResult":
        return cls(success=False, error=error, **kwargs)


class PortInfo(BaseModel):
    path: str
    manufacturer: Optional[str] = None
    description: Optional[str] = None


class ConnectRequest(BaseModel):
    port: Optional[str] = None
    baud_rate: Optional[int] = None


class CommandRequest(BaseModel):
    command: str


class CacheClearRequest(BaseModel):
    prefix: Optional[str] = None  # None clears every entry
