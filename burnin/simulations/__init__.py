"""Simulated device feeds."""

from .runtime import SimulationRegistry, simulation_registry

__all__ = ["SimulationRegistry", "simulation_registry"]
