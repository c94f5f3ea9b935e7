"""
Dashboard statistics derived from raw Trading212 positions and account summaries.
"""
from typing import Any, Dict, Iterable, List, Optional


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def _pct_over_invested(pnl: float, value: float) -> float:
    """P/L as a percentage of invested capital (value minus P/L)."""
    if value <= 0:
        return 0.0
    invested = value - pnl
    if invested == 0:
        return 0.0
    return (pnl / invested) * 100


def calculate_stats(positions: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Summarize positions.

    Returns:
        active_positions, total_pnl, total_pnl_percent, total_value
    """
    rows: List[Dict[str, Any]] = [p for p in (positions or []) if isinstance(p, dict)]
    total_pnl = sum(_number(p.get("ppl")) for p in rows)
    total_value = sum(_number(p.get("quantity")) * _number(p.get("currentPrice")) for p in rows)
    return {
        "active_positions": len(rows),
        "total_pnl": total_pnl,
        "total_pnl_percent": _pct_over_invested(total_pnl, total_value),
        "total_value": total_value,
    }


def apply_today_pnl(stats: Dict[str, Any], account: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Add today's P/L from the account summary's `result` field."""
    today_pnl = 0.0
    if isinstance(account, dict):
        today_pnl = _number(account.get("result"))
    total_value = _number(stats.get("total_value"))
    stats["today_pnl"] = today_pnl
    stats["today_pnl_percent"] = _pct_over_invested(today_pnl, total_value)
    return stats


def empty_stats() -> Dict[str, Any]:
    return {
        "active_positions": 0,
        "total_pnl": 0.0,
        "total_pnl_percent": 0.0,
        "total_value": 0.0,
        "today_pnl": 0.0,
        "today_pnl_percent": 0.0,
    }


def aggregate_account_stats(results: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Sum per-account stats over successful results.

    Each result is a dict with `data` (account data or None) and `error`.
    """
    totals = empty_stats()
    totals["connected_accounts"] = 0
    totals["total_cash"] = 0.0
    for result in results:
        data = result.get("data")
        if not data or result.get("error"):
            continue
        stats = data.get("stats") or {}
        totals["active_positions"] += int(_number(stats.get("active_positions")))
        totals["total_pnl"] += _number(stats.get("total_pnl"))
        totals["total_value"] += _number(stats.get("total_value"))
        totals["today_pnl"] += _number(stats.get("today_pnl"))
        account = data.get("account")
        if isinstance(account, dict):
            totals["total_cash"] += _number(account.get("cash"))
        totals["connected_accounts"] += 1
    totals["total_pnl_percent"] = _pct_over_invested(totals["total_pnl"], totals["total_value"])
    totals["today_pnl_percent"] = _pct_over_invested(totals["today_pnl"], totals["total_value"])
    return totals
