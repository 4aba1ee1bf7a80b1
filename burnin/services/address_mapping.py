"""Normalisation of Modbus reference numbers into protocol offsets."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional, Union

from burnin.models.device import RegisterType


class AddressMappingEngine:
    """Translate configured addresses (``40001``, ``"3x0010"``...) to offsets.

    Five and six digit reference numbers carry the table in their first digit
    (0 coil, 1 discrete input, 3 input register, 4 holding register) and are
    one-based.  Anything below 10000 is taken as a zero-based offset already.
    """

    _PREFIXED_REGEX = re.compile(r"^(?P<table>[0134])x(?P<address>\d+)$", re.IGNORECASE)

    _TABLES = {
        0: RegisterType.COIL,
        1: RegisterType.DISCRETE,
        3: RegisterType.INPUT,
        4: RegisterType.HOLDING,
    }

    def normalize(self, address: Union[int, str]) -> Dict[str, Any]:
        if address is None or address == "":
            raise ValueError("Address is required for normalisation")

        if isinstance(address, str):
            text = address.strip()
            match = self._PREFIXED_REGEX.match(text)
            if match:
                table = int(match.group("table"))
                return {
                    "register_type": self._TABLES[table],
                    "offset": max(int(match.group("address")) - 1, 0),
                }
            if not text.isdigit():
                raise ValueError(f"Invalid Modbus address: {address}")
            number = int(text)
        else:
            number = int(address)

        if number < 0:
            raise ValueError(f"Invalid Modbus address: {address}")
        if number < 10000:
            return {"register_type": None, "offset": number}

        digits = str(number)
        table = int(digits[0])
        if table not in self._TABLES:
            raise ValueError(f"Invalid Modbus table in address: {address}")
        reference = int(digits[1:])
        if reference == 0:
            raise ValueError(f"Modbus reference numbers are one-based: {address}")
        return {"register_type": self._TABLES[table], "offset": reference - 1}

    def offset(self, address: Union[int, str]) -> int:
        return self.normalize(address)["offset"]

    def table(self, address: Union[int, str]) -> Optional[RegisterType]:
        return self.normalize(address)["register_type"]


address_mapping = AddressMappingEngine()

__all__ = ["AddressMappingEngine", "address_mapping"]
