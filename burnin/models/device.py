"""Device configuration: types, register maps, scan ranges and instances."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Protocol(str, Enum):
    MODBUS_TCP = "modbus-tcp"
    CUSTOM = "custom"


class DataType(str, Enum):
    INT16 = "INT16"
    UINT16 = "UINT16"
    INT32 = "INT32"
    UINT32 = "UINT32"
    FLOAT32 = "FLOAT32"
    ASCII8 = "ASCII8"
    ASCII16 = "ASCII16"
    BOOL = "BOOL"


class RegisterType(str, Enum):
    INPUT = "input"
    HOLDING = "holding"
    COIL = "coil"
    DISCRETE = "discrete"

    @property
    def is_bit(self) -> bool:
        return self in (RegisterType.COIL, RegisterType.DISCRETE)

    @property
    def writable(self) -> bool:
        return self in (RegisterType.COIL, RegisterType.HOLDING)


# fields published by every custom feed device
DEFAULT_CUSTOM_FIELDS: Tuple[str, ...] = (
    "temperature",
    "humidity",
    "battery",
    "rssi",
)


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False, populate_by_name=True)


class RegisterMapping(FrozenModel):
    """How one point is decoded out of the device's registers."""

    name: str = Field(min_length=1)
    address: int = Field(ge=0)
    slave_address: Optional[int] = Field(default=None, alias="slaveAddress")
    data_type: DataType = Field(default=DataType.UINT16, alias="dataType")
    unit: str = ""
    description: str = ""
    scale: float = 1.0
    offset: float = 0.0
    is_important: bool = Field(default=False, alias="isImportant")
    normal_range: Optional[Tuple[float, float]] = Field(default=None, alias="normalRange")
    reverse_endianness: bool = Field(default=False, alias="reverseEndianness")

    @field_validator("data_type", mode="before")
    @classmethod
    def _upper_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("normal_range")
    @classmethod
    def _ordered_range(cls, value: Optional[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
        if value is not None and value[0] > value[1]:
            raise ValueError(f"normal range min {value[0]} greater than max {value[1]}")
        return value

    def in_normal_range(self, value: Any) -> Optional[bool]:
        if self.normal_range is None or not isinstance(value, (int, float)):
            return None
        low, high = self.normal_range
        return low <= value <= high


class RegisterScanConfig(FrozenModel):
    """A register block read on every scan of a device."""

    register_type: RegisterType = Field(default=RegisterType.HOLDING, alias="registerType")
    start_address: int = Field(ge=0, alias="startAddress")
    end_address: int = Field(ge=0, alias="endAddress")
    interval_ms: Optional[int] = Field(default=None, gt=0, alias="scanInterval")

    @model_validator(mode="after")
    def _check_range(self) -> "RegisterScanConfig":
        if self.start_address > self.end_address:
            raise ValueError(
                f"scan start {self.start_address} is after end {self.end_address}"
            )
        return self

    def covers(self, mapping: RegisterMapping, width: int = 1) -> bool:
        return self.start_address <= mapping.address and mapping.address + width - 1 <= self.end_address

    @property
    def count(self) -> int:
        return self.end_address - self.start_address + 1


class DeviceProbeCondition(FrozenModel):
    """Boolean expression over bare point names deciding online/offline."""

    expression: str = ""
    description: str = ""

    @property
    def is_blank(self) -> bool:
        return not self.expression.strip()


class DeviceType(FrozenModel):
    id: str
    name: str
    protocol: Protocol = Protocol.MODBUS_TCP
    description: str = ""
    register_map: List[RegisterMapping] = Field(default_factory=list, alias="registerMap")
    scan_configs: List[RegisterScanConfig] = Field(default_factory=list, alias="scanConfigs")
    probe: Optional[DeviceProbeCondition] = None
    fields: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_protocol_invariants(self) -> "DeviceType":
        if self.protocol is Protocol.CUSTOM:
            if self.register_map or self.scan_configs or self.probe is not None:
                raise ValueError(
                    f"custom device type {self.id!r} cannot define register maps, "
                    "scan configs or probe conditions"
                )
        else:
            seen = set()
            for mapping in self.register_map:
                if mapping.name in seen:
                    raise ValueError(
                        f"duplicate register mapping {mapping.name!r} in device type {self.id!r}"
                    )
                seen.add(mapping.name)
            if self.fields:
                raise ValueError(f"modbus-tcp device type {self.id!r} cannot declare custom fields")
        return self

    @property
    def is_custom(self) -> bool:
        return self.protocol is Protocol.CUSTOM

    def point_names(self) -> List[str]:
        if self.is_custom:
            return list(self.fields or DEFAULT_CUSTOM_FIELDS)
        return [m.name for m in self.register_map]

    def important_points(self) -> List[str]:
        if self.is_custom:
            return self.point_names()
        return [m.name for m in self.register_map if m.is_important]

    def mapping(self, name: str) -> Optional[RegisterMapping]:
        for mapping in self.register_map:
            if mapping.name == name:
                return mapping
        return None


class DeviceInstance(FrozenModel):
    """A device type bound to a concrete connection."""

    id: str
    device_type_id: str = Field(alias="deviceTypeId")
    name: str = ""
    ip: Optional[str] = None
    port: int = 502
    slave_id: int = Field(default=1, ge=0, le=255, alias="slaveId")
    timeout_ms: Optional[int] = Field(default=None, gt=0, alias="timeoutMs")
    other_attrs: Dict[str, Any] = Field(default_factory=dict, alias="otherAttrs")
    simulated: bool = False


__all__ = [
    "DEFAULT_CUSTOM_FIELDS",
    "DataType",
    "DeviceInstance",
    "DeviceProbeCondition",
    "DeviceType",
    "Protocol",
    "RegisterMapping",
    "RegisterScanConfig",
    "RegisterType",
]
