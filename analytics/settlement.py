"""
Virtual Energy Trader — Bid Settlement & P&L Engine
Executes virtual bids against the day-ahead clearing price and settles them
against the real-time average for the same hour.

Execution rule (inclusive)
--------------------------
    buy   executes iff  bid_price ≥ DA clearing price
    sell  executes iff  bid_price ≤ DA clearing price

Executed bids always fill at the clearing price, never at the bid price.

Profit & loss
-------------
    settlement = mean(RT interval prices for the bid's hour)

    buy  (long DA, short RT):  profit = (settlement − clearing) × quantity
    sell (short DA, long RT):  profit = (clearing − settlement) × quantity

A bid whose hour has no DA or RT entry is not executed; the rest of the batch
is unaffected.  ``settle`` is a pure function: identical inputs produce
identical outputs and the inputs are never mutated.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from loguru import logger

from analytics.errors import ComputationError, InvalidBid, InvalidInput
from analytics.reconstruction import HourlyDayAheadEntry, HourlyRealTimeEntry

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SIDE_BUY = "buy"
SIDE_SELL = "sell"

NO_MARKET_DATA_REASON = "no market data for hour"
VAR_PERCENTILE: float = 0.05


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Bid:
    """One virtual bid.  Wire name for ``side`` is ``type``."""

    id: str
    hour: int            # 0–23, same timezone as the reconstructed series
    side: str            # "buy" | "sell"
    price: float         # $/MWh, ≥ 0
    quantity: float      # MWh, > 0

    @classmethod
    def from_dict(cls, data: dict) -> "Bid":
        side = data.get("side", data.get("type"))
        if side not in (SIDE_BUY, SIDE_SELL):
            raise InvalidInput(f"Bid {data.get('id')!r}: side must be 'buy' or 'sell', got {side!r}")
        return cls(
            id=str(data["id"]),
            hour=int(data["hour"]),
            side=side,
            price=float(data["price"]),
            quantity=float(data["quantity"]),
        )

    def to_dict(self) -> dict:
        return {
            "id":       self.id,
            "hour":     self.hour,
            "type":     self.side,
            "price":    self.price,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class TradeResult:
    bid: Bid
    executed: bool
    profit: float = 0.0
    execution_price: Optional[float] = None     # DA clearing price
    settlement_price: Optional[float] = None    # RT hourly average
    reason: Optional[str] = None                # set when not executed

    @property
    def profit_per_mwh(self) -> Optional[float]:
        if not self.executed:
            return None
        return self.profit / self.bid.quantity

    def to_dict(self) -> dict:
        out = self.bid.to_dict()
        out.update({"executed": self.executed, "profit": self.profit})
        if self.executed:
            out.update({
                "executionPrice":   self.execution_price,
                "settlementPrice":  self.settlement_price,
                "profitPerMWh":     self.profit_per_mwh,
            })
        else:
            out["reason"] = self.reason
        return out


@dataclass(frozen=True)
class SettlementSummary:
    total_bids: int
    executed_trades: int
    success_rate: float              # executed / total, 0–1
    avg_profit_per_trade: float

    def to_dict(self) -> dict:
        return {
            "totalBids":         self.total_bids,
            "executedTrades":    self.executed_trades,
            "successRate":       self.success_rate,
            "avgProfitPerTrade": self.avg_profit_per_trade,
        }


@dataclass(frozen=True)
class SettlementResult:
    trades: tuple[TradeResult, ...]
    total_profit: float
    summary: SettlementSummary

    def to_dict(self) -> dict:
        return {
            "trades":      [t.to_dict() for t in self.trades],
            "totalProfit": self.total_profit,
            "summary":     self.summary.to_dict(),
        }


@dataclass(frozen=True)
class RiskMetrics:
    """Portfolio risk over executed trades."""

    var95: float
    max_drawdown: float
    sharpe_ratio: float
    volatility: float
    avg_profit: float
    total_profit: float

    def to_dict(self) -> dict:
        return {
            "var95":       self.var95,
            "maxDrawdown": self.max_drawdown,
            "sharpeRatio": self.sharpe_ratio,
            "volatility":  self.volatility,
            "avgProfit":   self.avg_profit,
            "totalProfit": self.total_profit,
        }


# ---------------------------------------------------------------------------
# Per-bid processing
# ---------------------------------------------------------------------------


def _market_for_hour(
    hour: int,
    day_ahead: dict[int, HourlyDayAheadEntry],
    real_time: dict[int, HourlyRealTimeEntry],
) -> tuple[float, float]:
    """(clearing price, settlement price) for *hour*.  Raises ``InvalidBid``."""
    da = day_ahead.get(hour)
    rt = real_time.get(hour)
    if da is None or rt is None or not rt.intervals:
        raise InvalidBid(NO_MARKET_DATA_REASON)
    return da.price, rt.average_price


def _settle_bid(
    bid: Bid,
    day_ahead: dict[int, HourlyDayAheadEntry],
    real_time: dict[int, HourlyRealTimeEntry],
) -> TradeResult:
    try:
        clearing, settlement = _market_for_hour(bid.hour, day_ahead, real_time)
    except InvalidBid as exc:
        logger.warning("Bid {}: {} {}", bid.id, exc.message, bid.hour)
        return TradeResult(bid=bid, executed=False, reason=exc.message)

    if bid.side == SIDE_BUY and bid.price >= clearing:
        profit = (settlement - clearing) * bid.quantity
    elif bid.side == SIDE_SELL and bid.price <= clearing:
        profit = (clearing - settlement) * bid.quantity
    else:
        side = "below" if bid.side == SIDE_BUY else "above"
        return TradeResult(
            bid=bid,
            executed=False,
            reason=f"Bid price ${bid.price:.2f} {side} clearing price ${clearing:.2f}",
        )

    return TradeResult(
        bid=bid,
        executed=True,
        profit=profit,
        execution_price=clearing,
        settlement_price=settlement,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def settle(
    bids: Sequence[Bid],
    day_ahead: Sequence[HourlyDayAheadEntry],
    real_time: Sequence[HourlyRealTimeEntry],
) -> SettlementResult:
    """
    Execute and settle every bid against the reconstructed market.

    Parameters
    ----------
    bids:
        Bids to process, in order.  The ≤ 10 bids-per-hour limit is the
        caller's to enforce.
    day_ahead / real_time:
        Reconstructed series; entries are matched on ``hour``.

    Returns
    -------
    SettlementResult
        One ``TradeResult`` per bid (same order), total profit over executed
        trades, and a summary.
    """
    da_by_hour = {e.hour: e for e in day_ahead}
    rt_by_hour = {e.hour: e for e in real_time}

    try:
        trades = tuple(_settle_bid(bid, da_by_hour, rt_by_hour) for bid in bids)
        executed = [t for t in trades if t.executed]
        total_profit = sum(t.profit for t in executed)
        summary = SettlementSummary(
            total_bids=len(trades),
            executed_trades=len(executed),
            success_rate=len(executed) / len(trades) if trades else 0.0,
            avg_profit_per_trade=total_profit / len(executed) if executed else 0.0,
        )
    except (ArithmeticError, TypeError) as exc:
        logger.error("Trading simulation execution failed: {}", exc)
        raise ComputationError("Failed to execute trading simulation", str(exc)) from exc

    logger.info(
        "Settlement complete: {}/{} trades executed | total P&L ${:.2f}",
        summary.executed_trades, summary.total_bids, total_profit,
    )
    return SettlementResult(trades=trades, total_profit=total_profit, summary=summary)


def risk_metrics(trades: Sequence[TradeResult]) -> RiskMetrics:
    """
    Risk profile of the executed trades, in bid order.

    var95        : profit at the 5th percentile (sorted[floor(n × 0.05)])
    max_drawdown : largest fall of cumulative profit from its running peak
    sharpe_ratio : mean / volatility (risk-free rate 0; 0 when volatility is 0)
    """
    profits = [t.profit for t in trades if t.executed]
    if not profits:
        return RiskMetrics(0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

    n = len(profits)
    total = sum(profits)
    mean = total / n
    volatility = math.sqrt(sum((p - mean) ** 2 for p in profits) / n)
    var95 = sorted(profits)[math.floor(n * VAR_PERCENTILE)]

    peak = profits[0]
    cumulative = 0.0
    max_drawdown = 0.0
    for profit in profits:
        cumulative += profit
        peak = max(peak, cumulative)
        max_drawdown = max(max_drawdown, peak - cumulative)

    return RiskMetrics(
        var95=var95,
        max_drawdown=max_drawdown,
        sharpe_ratio=mean / volatility if volatility > 0 else 0.0,
        volatility=volatility,
        avg_profit=mean,
        total_profit=total,
    )


# ---------------------------------------------------------------------------
# Smoke test  (python -m analytics.settlement)
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    import sys

    from analytics.reconstruction import IntervalPrice

    logger.remove()
    logger.add(sys.stderr, level="INFO")

    logger.info("=== Settlement Smoke Test ===")

    da = [HourlyDayAheadEntry(h, 40.0 + h, "actual", 1, h) for h in range(24)]
    rt = [
        HourlyRealTimeEntry(
            h, "actual", 4, h,
            tuple(IntervalPrice(i, 40.0 + h + (5 if h >= 17 else -3), "actual") for i in range(4)),
        )
        for h in range(24)
    ]
    sample_bids = [
        Bid("b1", 8, SIDE_BUY, 50.0, 10.0),
        Bid("b2", 8, SIDE_SELL, 45.0, 5.0),
        Bid("b3", 18, SIDE_BUY, 60.0, 2.0),
        Bid("b4", 18, SIDE_BUY, 40.0, 2.0),
    ]

    result = settle(sample_bids, da, rt)
    print(f"\n{'Bid':<5} {'Hour':>4} {'Side':<5} {'Exec':<6} {'P&L':>9}  Reason")
    print("-" * 60)
    for t in result.trades:
        print(f"{t.bid.id:<5} {t.bid.hour:>4} {t.bid.side:<5} {str(t.executed):<6} ${t.profit:>8.2f}  {t.reason or ''}")

    risk = risk_metrics(result.trades)
    print(f"\nTotal P&L ${result.total_profit:.2f} | success {result.summary.success_rate:.0%} | "
          f"Sharpe {risk.sharpe_ratio:.2f} | max DD ${risk.max_drawdown:.2f}")
    logger.success("Smoke test complete.")
