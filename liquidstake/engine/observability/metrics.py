# MIT License
# Copyright (c) 2025 Hashborn

"""
Prometheus Metrics Exporter

Exports staking-core metrics in Prometheus format.

Metrics:
- Principal pool scalars (total, undelegated, delegated, unbonding, escrow)
- Rewards, fee liability, slashing
- Receipt supply and exchange rate
- Withdrawal queue
- Operation and failure counters
"""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest
import logging

logger = logging.getLogger(__name__)

# Create registry for metrics
metrics_registry = CollectorRegistry()

# ═══════════════════════════════════════════════════════════════════
# LEDGER METRICS
# ═══════════════════════════════════════════════════════════════════

total_principal = Gauge(
    'liquidstake_total_principal',
    'Net deposited principal (minimal units)',
    registry=metrics_registry
)

undelegated_principal = Gauge(
    'liquidstake_undelegated_principal',
    'Principal held locally as redemption buffer',
    registry=metrics_registry
)

delegated_principal = Gauge(
    'liquidstake_delegated_principal',
    'Principal held by the staking delegate (last known)',
    registry=metrics_registry
)

unbonding_principal = Gauge(
    'liquidstake_unbonding_principal',
    'Pool funds in flight back from the delegate',
    registry=metrics_registry
)

escrowed_liquidity = Gauge(
    'liquidstake_escrowed_liquidity',
    'Local funds reserved for pending withdrawals',
    registry=metrics_registry
)

accrued_rewards = Gauge(
    'liquidstake_accrued_rewards',
    'Recognized rewards still in the pool',
    registry=metrics_registry
)

accrued_fees = Gauge(
    'liquidstake_accrued_fees',
    'Fee liability not yet minted to treasury',
    registry=metrics_registry
)

total_managed_assets = Gauge(
    'liquidstake_total_managed_assets',
    'Assets backing the receipt supply',
    registry=metrics_registry
)

total_slashed = Gauge(
    'liquidstake_total_slashed',
    'Cumulative loss absorbed from slashing',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# RECEIPT TOKEN METRICS
# ═══════════════════════════════════════════════════════════════════

receipt_supply = Gauge(
    'liquidstake_receipt_supply',
    'Receipt token total supply',
    registry=metrics_registry
)

exchange_rate = Gauge(
    'liquidstake_exchange_rate',
    'Base-asset units per receipt unit',
    registry=metrics_registry
)

fee_receipts_minted_total = Gauge(
    'liquidstake_fee_receipts_minted_total',
    'Receipts minted to the treasury as fees',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# WITHDRAWAL METRICS
# ═══════════════════════════════════════════════════════════════════

withdrawals_open = Gauge(
    'liquidstake_withdrawals_open',
    'Withdrawal requests by state',
    ['state'],
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# OPERATION METRICS
# ═══════════════════════════════════════════════════════════════════

operations_total = Counter(
    'liquidstake_operations_total',
    'Committed operations',
    ['operation'],
    registry=metrics_registry
)

operation_failures_total = Counter(
    'liquidstake_operation_failures_total',
    'Aborted operations by error code',
    ['operation', 'error'],
    registry=metrics_registry
)

events_emitted_total = Counter(
    'liquidstake_events_emitted_total',
    'Events emitted on the core event bus',
    ['event'],
    registry=metrics_registry
)


# ═══════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════

def record_operation(operation: str):
    operations_total.labels(operation=operation).inc()


def record_failure(operation: str, error_code: str):
    operation_failures_total.labels(operation=operation, error=error_code).inc()


def update_metrics(core):
    """
    Update all gauges from the staking core's committed state.

    Args:
        core: StakingCore instance
    """
    from ...protocol.types.common import WithdrawalState

    ledger = core.ledger()

    total_principal.set(ledger.total_principal)
    undelegated_principal.set(ledger.undelegated_principal)
    delegated_principal.set(ledger.delegated_principal)
    unbonding_principal.set(ledger.unbonding_principal)
    escrowed_liquidity.set(ledger.escrowed_liquidity)
    accrued_rewards.set(ledger.accrued_rewards)
    accrued_fees.set(ledger.accrued_fees)
    total_managed_assets.set(ledger.total_managed_assets())
    total_slashed.set(ledger.total_slashed)
    fee_receipts_minted_total.set(ledger.total_fee_receipts_minted)

    receipt_supply.set(core.token.total_supply())
    exchange_rate.set(float(core.exchange_rate()))

    counts = {state: 0 for state in WithdrawalState}
    for req in core.list_withdrawals():
        counts[req.state] += 1
    for state, count in counts.items():
        withdrawals_open.labels(state=state.value).set(count)


def render_metrics() -> bytes:
    """Prometheus text exposition of the registry."""
    return generate_latest(metrics_registry)
