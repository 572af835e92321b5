# Order execution and settlement
from .executor import ExecutionCoordinator, ExecutionOutcome
from .simulation import SimulatedOrderClient, SimulatedSettlement

__all__ = [
    "ExecutionCoordinator",
    "ExecutionOutcome",
    "SimulatedOrderClient",
    "SimulatedSettlement",
]
