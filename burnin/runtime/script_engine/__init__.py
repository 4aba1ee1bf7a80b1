"""Sandboxed evaluation of process scripts and conditions."""

from .bindings import (
    DeviceHandle,
    HttpClient,
    SystemContext,
    SystemNamespace,
    TransitionRequest,
    build_bindings,
)
from .condition import ConditionProgram, evaluate_condition
from .sandbox import ScriptProgram, run_program
from .service import ScriptEngine

__all__ = [
    "ConditionProgram",
    "DeviceHandle",
    "HttpClient",
    "ScriptEngine",
    "ScriptProgram",
    "SystemContext",
    "SystemNamespace",
    "TransitionRequest",
    "build_bindings",
    "evaluate_condition",
    "run_program",
]
