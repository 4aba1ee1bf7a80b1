# burnin/models/__init__.py
from burnin.models.device import (
    DataType,
    DeviceInstance,
    DeviceProbeCondition,
    DeviceType,
    Protocol,
    RegisterMapping,
    RegisterScanConfig,
    RegisterType,
)
from burnin.models.process import (
    AgingProcess,
    ConditionRule,
    GlobalCheck,
    MesReportingConfig,
    ProcessDevice,
    ProcessMode,
    ProcessState,
    RecordingConfig,
)
from burnin.models.workstation import LogEntry, Run, RunStatus, WorkstationConfig

__all__ = [
    "AgingProcess",
    "ConditionRule",
    "DataType",
    "DeviceInstance",
    "DeviceProbeCondition",
    "DeviceType",
    "GlobalCheck",
    "LogEntry",
    "MesReportingConfig",
    "ProcessDevice",
    "ProcessMode",
    "ProcessState",
    "Protocol",
    "RecordingConfig",
    "RegisterMapping",
    "RegisterScanConfig",
    "RegisterType",
    "Run",
    "RunStatus",
    "WorkstationConfig",
]
