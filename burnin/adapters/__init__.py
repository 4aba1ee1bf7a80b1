"""Coleção de transports de comunicação com dispositivos."""

from .base_adapters import BaseTransport, ConnectionState
from .custom_adapter import CustomFeedTransport, custom_feeds
from .factory import get_transport
from .modbus_adapter import ModbusTransport

__all__ = [
    "BaseTransport",
    "ConnectionState",
    "CustomFeedTransport",
    "ModbusTransport",
    "custom_feeds",
    "get_transport",
]
