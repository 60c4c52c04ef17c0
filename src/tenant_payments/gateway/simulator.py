"""Simulator gateway for exercising payment flows without a real gateway."""

import asyncio
import json
import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

from ..errors import GatewayRejected, NetworkError, NotFound
from ..models import GatewayNotification, GatewayStatus, PaymentIntent, RedirectSession
from .base import GatewayClientBase, compute_signature, parse_gateway_notification

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined test scenarios for the simulator."""
    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRE = "expire"
    PENDING_FOREVER = "pending_forever"
    NETWORK_ERROR = "network_error"
    REJECTED = "rejected"


@dataclass
class SimulatedGatewayTransaction:
    """In-memory representation of a simulated gateway order."""
    order_id: str
    invoice_id: int
    amount: int
    status: str = "pending"
    created_at: datetime = field(default_factory=datetime.utcnow)
    script: Deque[str] = field(default_factory=deque)
    checks: int = 0


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    scenario: SimulatorScenario = SimulatorScenario.SUCCESS
    pending_checks: int = 2  # Status checks answered with "pending" before the outcome
    delay_ms: int = 0  # Simulated response delay in ms
    network_error_rate: float = 0.0  # Rate of transient network failures
    server_key: Optional[str] = None
    seed: Optional[int] = None  # Random seed for reproducibility
    base_url: str = "https://simulator.local/pay"


_SCENARIO_OUTCOMES = {
    SimulatorScenario.SUCCESS: "settlement",
    SimulatorScenario.FAILURE: "deny",
    SimulatorScenario.EXPIRE: "expire",
}


class SimulatorGatewayClient(GatewayClientBase):
    """
    Simulator gateway keeping orders in memory.

    Features:
    - Scenario-driven status sequences (pending N times, then the outcome)
    - Per-order scripted statuses via ``script()``
    - Transient network failures at a configurable rate
    - Signed webhook bodies via ``build_notification()``
    """

    def __init__(self, config: Optional[SimulatorConfig] = None):
        """Initialize the simulator with optional configuration."""
        self.config = config or SimulatorConfig()
        self._transactions: Dict[str, SimulatedGatewayTransaction] = {}
        self._rng = random.Random(self.config.seed)
        self.status_calls: List[str] = []
        logger.info("SimulatorGatewayClient initialized")

    def _generate_id(self) -> str:
        return f"sim-{uuid.uuid4().hex[:20]}"

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    def _default_script(self) -> Deque[str]:
        statuses = ["pending"] * max(self.config.pending_checks, 0)
        outcome = _SCENARIO_OUTCOMES.get(self.config.scenario)
        if outcome is not None:
            statuses.append(outcome)
        return deque(statuses or ["pending"])

    async def create_redirect(self, intent: PaymentIntent) -> RedirectSession:
        await self._apply_delay()
        if self.config.scenario == SimulatorScenario.REJECTED:
            raise GatewayRejected(
                f"Simulated rejection for invoice {intent.invoice_id}",
                {"invoice_id": intent.invoice_id, "simulator": True},
            )
        order_id = self._generate_id()
        self._transactions[order_id] = SimulatedGatewayTransaction(
            order_id=order_id,
            invoice_id=intent.invoice_id,
            amount=intent.amount,
            script=self._default_script(),
        )
        return RedirectSession(
            redirect_url=f"{self.config.base_url}/{order_id}",
            external_reference=order_id,
        )

    async def check_status(self, external_reference: str) -> GatewayStatus:
        await self._apply_delay()
        self.status_calls.append(external_reference)
        if self.config.scenario == SimulatorScenario.NETWORK_ERROR:
            raise NetworkError("Simulated network failure")
        if self._rng.random() < self.config.network_error_rate:
            raise NetworkError("Simulated network failure")

        txn = self._transactions.get(external_reference)
        if txn is None:
            raise NotFound(f"Order {external_reference} not found", {"simulator": True})

        txn.checks += 1
        if txn.script:
            txn.status = txn.script.popleft() if len(txn.script) > 1 else txn.script[0]
        return GatewayStatus(status=txn.status, amount=txn.amount, payment_type="simulator")

    def parse_notification(self, headers: Dict[str, str], body: bytes) -> GatewayNotification:
        return parse_gateway_notification(body, self.config.server_key)

    # ------------------------------------------------------------------
    # Simulator-specific helpers
    # ------------------------------------------------------------------

    def register(self, order_id: str, invoice_id: int, amount: int, statuses: Iterable[str] = ()) -> None:
        """Register an order created elsewhere (for testing)."""
        self._transactions[order_id] = SimulatedGatewayTransaction(
            order_id=order_id,
            invoice_id=invoice_id,
            amount=amount,
            script=deque(statuses),
        )

    def script(self, order_id: str, statuses: Iterable[str]) -> None:
        """Replace the statuses returned by the next checks of an order.

        The last status repeats once the script is exhausted.
        """
        txn = self._transactions.get(order_id)
        if txn is None:
            raise KeyError(order_id)
        txn.script = deque(statuses)

    def build_notification(self, order_id: str, status: str, status_code: str = "200") -> bytes:
        """Build a webhook body for an order, signed when a server key is configured."""
        txn = self._transactions.get(order_id)
        gross_amount = f"{txn.amount}.00" if txn is not None else "0.00"
        payload: Dict[str, Any] = {
            "order_id": order_id,
            "transaction_status": status,
            "status_code": status_code,
            "gross_amount": gross_amount,
            "payment_type": "simulator",
        }
        if self.config.server_key:
            payload["signature_key"] = compute_signature(order_id, status_code, gross_amount, self.config.server_key)
        if txn is not None:
            txn.status = status
            txn.script = deque([status])
        return json.dumps(payload).encode("utf-8")

    def get_transaction(self, order_id: str) -> Optional[SimulatedGatewayTransaction]:
        """Get a transaction from in-memory storage (for testing)."""
        return self._transactions.get(order_id)

    def clear_transactions(self) -> None:
        """Clear all stored transactions (for test cleanup)."""
        self._transactions.clear()
        self.status_calls.clear()

    def health_check(self) -> Dict[str, Any]:
        """Return health status of the simulator."""
        return {
            "ok": True,
            "provider": "simulator",
            "transaction_count": len(self._transactions),
            "config": {
                "scenario": self.config.scenario.value,
                "pending_checks": self.config.pending_checks,
                "delay_ms": self.config.delay_ms,
                "network_error_rate": self.config.network_error_rate,
            },
        }
