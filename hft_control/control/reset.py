# hft_control/control/reset.py
"""Destructive reset of historical trading data."""

import logging
from typing import Any, Dict, Optional

from hft_control.core.errors import StateError
from hft_control.core.models import AuditEvent
from hft_control.core.repository import ControlStore

logger = logging.getLogger(__name__)

CONFIRMATION = "RESET_ALL_DATA"

# Historical tables only. Credentials, provider configuration, failover
# entries and exchange connections are never in this list.
RESET_ALLOWLIST = (
    "trading_journal",
    "strategy_trades",
    "orders",
    "positions",
    "trade_copies",
    "trade_execution_metrics",
    "balance_history",
    "portfolio_snapshots",
    "backtest_results",
    "api_request_logs",
    "audit_logs",
    "alert_history",
    "ai_trade_decisions",
    "ai_provider_performance",
    "deployment_logs",
    "failover_events",
    "health_check_results",
    "vps_metrics",
    "exchange_latency_history",
    "cost_analysis",
    "cost_optimization_reports",
    "cost_recommendations",
    "security_scores",
    "trading_sessions",
    "system_notifications",
)


def reset_trading_data(store: ControlStore, confirm: Optional[str], actor: str = "operator") -> Dict[str, Any]:
    """
    Truncate the allowlisted tables and reset counters and caches.

    Raises:
        StateError("bad_confirmation"): ``confirm`` is not the literal sentinel
    """
    if confirm != CONFIRMATION:
        logger.warning(f"[reset] Refused reset from {actor}: confirmation missing")
        raise StateError("bad_confirmation", f'Confirmation required. Send {{"confirm": "{CONFIRMATION}"}}')

    logger.warning(f"[reset] ⚠️ System-wide data reset requested by {actor}")
    results = store.reset_trading_data(RESET_ALLOWLIST)

    cleared = sum(1 for v in results.values() if v == "cleared")
    reset = sum(1 for v in results.values() if "reset" in v)
    warnings = sum(1 for v in results.values() if v.startswith("warning"))
    logger.info(f"[reset] Complete: {cleared} tables cleared, {reset} reset, {warnings} warnings")

    # written after the truncate so the reset itself stays on record
    store.append_audit_event(AuditEvent(
        actor=actor,
        action="reset_trading_data",
        before={},
        after={"tables_cleared": cleared, "tables_reset": reset},
    ))

    return {
        "success": True,
        "message": "System-wide data reset complete",
        "summary": {"tables_cleared": cleared, "tables_reset": reset, "warnings": warnings},
        "details": results,
    }
