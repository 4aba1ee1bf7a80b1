"""Factory utilitária para instanciar transports por protocolo."""

from __future__ import annotations

from typing import Callable, Dict, Optional, Type

from burnin.adapters.base_adapters import BaseTransport
from burnin.adapters.custom_adapter import CustomFeedTransport
from burnin.adapters.modbus_adapter import ModbusTransport
from burnin.app.settings import PollingSettings
from burnin.errors import ConfigError
from burnin.models.device import DeviceInstance, DeviceType, Protocol

TransportsMap = Dict[Protocol, Type[BaseTransport]]


def _default_transports() -> TransportsMap:
    return {
        Protocol.MODBUS_TCP: ModbusTransport,
        Protocol.CUSTOM: CustomFeedTransport,
    }


def get_transport(
    device_type: DeviceType,
    instance: DeviceInstance,
    settings: Optional[PollingSettings] = None,
    *,
    registry_factory: Callable[[], TransportsMap] = _default_transports,
) -> BaseTransport:
    """Return a transport instance for the device's protocol."""

    if instance.device_type_id != device_type.id:
        raise ConfigError(
            f"Device {instance.id!r} is bound to type {instance.device_type_id!r}, not {device_type.id!r}"
        )

    registry = registry_factory()
    transport_cls = registry.get(device_type.protocol)
    if transport_cls is None:
        supported = ", ".join(sorted(p.value for p in registry))
        raise ConfigError(f"Protocol {device_type.protocol!r} not supported. Options: {supported}")

    polling = settings or PollingSettings()
    timeout_ms = instance.timeout_ms or polling.request_timeout_ms
    return transport_cls(
        device_type,
        instance,
        timeout_s=timeout_ms / 1000.0,
        backoff_initial_s=polling.backoff_initial_s,
        backoff_max_s=polling.backoff_max_s,
    )
