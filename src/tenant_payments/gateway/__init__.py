"""Payment gateway clients."""

from .base import GatewayClientBase, compute_signature, parse_gateway_notification
from .backend_gateway import BackendGatewayClient
from .simulator import (
    SimulatorGatewayClient,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedGatewayTransaction,
)

__all__ = [
    "GatewayClientBase",
    "compute_signature",
    "parse_gateway_notification",
    "BackendGatewayClient",
    "SimulatorGatewayClient",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedGatewayTransaction",
]
