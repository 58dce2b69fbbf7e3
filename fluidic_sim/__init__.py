"""Fluidic network droplet transport simulator and device event generator.

Public entrypoints:
- simulate / TransportSimulator (from fluidic_sim.sim)
- Config (from fluidic_sim.config)
- clean_and_sort_event_list (from fluidic_sim.events)
- build_device_messages (from fluidic_sim.hardware)
"""
from .sim import TransportSimulator, simulate
from .config import Config, SimulationConfig
from .events import clean_and_sort_event_list
from .hardware import build_device_messages
from .models import DropletParameter, DropletSpec, Event, EventType, SimulationResult
