"""Transport implementation for Modbus TCP devices."""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Sequence

from pymodbus.client import AsyncModbusTcpClient

from burnin.adapters.base_adapters import BaseTransport
from burnin.errors import TransportError
from burnin.models.device import DeviceInstance, DeviceType, RegisterType
from burnin.simulations.runtime import simulation_registry
from burnin.utils.logs import logger


class ModbusTransport(BaseTransport):
    """Async Modbus TCP transport built on top of :mod:`pymodbus`."""

    def __init__(self, device_type: DeviceType, instance: DeviceInstance, **kwargs: Any):
        super().__init__(device_type, instance, **kwargs)
        self.ip_address = instance.ip
        self.port = instance.port or 502
        self.client: Optional[AsyncModbusTcpClient] = None

    async def _open(self) -> None:
        if self.in_simulation():
            return
        if not self.ip_address:
            raise TransportError(f"{self.key}: no IP address configured")

        self.client = AsyncModbusTcpClient(
            host=self.ip_address,
            port=self.port,
            timeout=self.timeout,
            retries=0,
        )
        connected = await self.client.connect()
        if not connected or not getattr(self.client, "connected", True):
            raise TransportError(f"cannot reach {self.ip_address}:{self.port}")
        logger.debug("Modbus connection open %s:%s", self.ip_address, self.port)

    async def _close(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        close_fn = getattr(client, "close", None)
        if asyncio.iscoroutinefunction(close_fn):
            await close_fn()
        elif callable(close_fn):
            close_fn()

    async def _read(self, register_type: RegisterType, offset: int, count: int, slave: int) -> List[Any]:
        if self.in_simulation():
            return simulation_registry.read_words(self.key, register_type, offset, count)

        if self.client is None:
            raise TransportError(f"{self.key}: read without an open connection")

        if register_type is RegisterType.HOLDING:
            response = await self.client.read_holding_registers(offset, count=count, device_id=slave)
        elif register_type is RegisterType.INPUT:
            response = await self.client.read_input_registers(offset, count=count, device_id=slave)
        elif register_type is RegisterType.COIL:
            response = await self.client.read_coils(offset, count=count, device_id=slave)
        else:
            response = await self.client.read_discrete_inputs(offset, count=count, device_id=slave)

        if response is None or (hasattr(response, "isError") and response.isError()):
            raise TransportError(f"{self.key}: error response {response}")

        if register_type.is_bit:
            return [bool(bit) for bit in list(getattr(response, "bits", []) or [])[:count]]
        return list(getattr(response, "registers", []) or [])

    async def _write(self, register_type: RegisterType, offset: int, values: Sequence[Any], slave: int) -> None:
        if self.in_simulation():
            simulation_registry.write_words(self.key, register_type, offset, values)
            return

        if self.client is None:
            raise TransportError(f"{self.key}: write without an open connection")

        if register_type is RegisterType.COIL:
            response = await self.client.write_coil(offset, bool(values[0]), device_id=slave)
        elif len(values) == 1:
            response = await self.client.write_register(offset, int(values[0]), device_id=slave)
        else:
            response = await self.client.write_registers(offset, [int(v) for v in values], device_id=slave)

        if response is None or (hasattr(response, "isError") and response.isError()):
            raise TransportError(f"{self.key}: write rejected {response}")


__all__ = ["ModbusTransport"]
