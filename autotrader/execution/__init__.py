"""Execution layer for the autotrader.

This package turns a validated signal into broker orders for every
subscribed user and keeps each user's position book consistent with what
was actually filled. It also owns the two safety controls that can act
outside a signal: the emergency stop and broker-side reconciliation.

Broker outcomes are values, not exceptions. A transient error is retried
with backoff, anything else fails the execution immediately, and no user's
failure ever aborts another user's order.

Modules:
    gateway          -- Broker contract, result variants, paper gateway
    charges          -- Brokerage and statutory charges per fill
    options          -- Option contract selection and premium sizing
    orchestrator     -- Signal fan-out, per-user submission, system exits
    position_manager -- Position state machine and P&L
    retry            -- Retry policy for transient broker errors
    sizing           -- Allocation-based order sizing
    emergency_stop   -- Global / per-bot trading halt
    reconciliation   -- Local vs broker position validation
"""

from autotrader.execution.emergency_stop import EmergencyStopController, StopReport
from autotrader.execution.gateway import (
    BrokerGateway,
    BrokerPosition,
    OptionContract,
    OrderAck,
    OrderRejected,
    OrderRequest,
    PaperGateway,
    PermanentBrokerError,
    PositionNotFound,
    TransientBrokerError,
)
from autotrader.execution.charges import ChargeBreakdown, ChargeSchedule
from autotrader.execution.options import OptionSelector
from autotrader.execution.orchestrator import TradeOrchestrator
from autotrader.execution.position_manager import PositionLifecycleManager
from autotrader.execution.reconciliation import ReconciliationValidator, ValidationResult
from autotrader.execution.retry import RetryPolicy

__all__ = [
    "BrokerGateway",
    "BrokerPosition",
    "ChargeBreakdown",
    "ChargeSchedule",
    "EmergencyStopController",
    "OptionContract",
    "OptionSelector",
    "OrderAck",
    "OrderRejected",
    "OrderRequest",
    "PaperGateway",
    "PermanentBrokerError",
    "PositionLifecycleManager",
    "PositionNotFound",
    "ReconciliationValidator",
    "RetryPolicy",
    "StopReport",
    "TradeOrchestrator",
    "TransientBrokerError",
    "ValidationResult",
]
