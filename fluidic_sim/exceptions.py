class FluidicSimError(Exception):
    """Base class for every failure raised by the simulator."""
    def __init__(self, message="Fluidic simulation failed."):
        super().__init__(message)


class TopologyError(FluidicSimError):
    """Node/edge graph cannot be turned into a single main line."""
    def __init__(self, message="Invalid fluidic topology."):
        super().__init__(message)


class DropletSpecificationError(FluidicSimError):
    """Droplet parameters are missing or out of range."""
    def __init__(self, message="Invalid droplet specification."):
        super().__init__(message)


class ConfigurationError(FluidicSimError):
    """Scenario file or device properties failed validation."""
    def __init__(self, message="Invalid configuration."):
        super().__init__(message)


class SimulationError(FluidicSimError):
    """Transport loop reached an inconsistent state."""
    def __init__(self, message="Simulation entered an invalid state."):
        super().__init__(message)


class SimulationStallError(SimulationError):
    """No droplet boundary can move but droplets remain in the network."""
    def __init__(self, message="Simulation stalled before all droplets exited."):
        super().__init__(message)


class SimulationDivergenceError(SimulationError):
    """Iteration budget exhausted before all droplets exited."""
    def __init__(self, message="Simulation did not finish within the iteration budget."):
        super().__init__(message)
