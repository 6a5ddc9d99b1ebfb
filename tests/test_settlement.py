"""Tests for virtual bid execution, settlement and portfolio risk."""

from __future__ import annotations

import math

import pytest

from analytics.errors import InvalidInput
from analytics.settlement import (
    NO_MARKET_DATA_REASON,
    Bid,
    TradeResult,
    risk_metrics,
    settle,
)


class TestExecutionRule:
    """Buys execute at or above the clearing price, sells at or below."""

    def test_long_position_profits_from_higher_real_time(self, flat_market):
        result = settle([Bid("b1", 8, "buy", 50.0, 10.0)], *flat_market)
        trade = result.trades[0]

        assert trade.executed
        assert trade.execution_price == 50.0
        assert trade.settlement_price == 60.0
        assert trade.profit == pytest.approx(100.0)
        assert trade.profit_per_mwh == pytest.approx(10.0)

    def test_short_position_profits_from_lower_real_time(self, flat_market):
        result = settle([Bid("s1", 14, "sell", 45.0, 5.0)], *flat_market)
        trade = result.trades[0]

        assert trade.executed
        assert trade.execution_price == 50.0
        assert trade.profit == pytest.approx(25.0)

    def test_sell_at_clearing_price_executes(self, flat_market):
        assert settle([Bid("s1", 14, "sell", 50.0, 1.0)], *flat_market).trades[0].executed

    @pytest.mark.parametrize(
        "bid, fragment",
        [
            (Bid("b1", 8, "buy", 49.99, 10.0), "below"),
            (Bid("s1", 8, "sell", 50.01, 10.0), "above"),
        ],
    )
    def test_out_of_the_money_bids_rejected(self, flat_market, bid, fragment):
        trade = settle([bid], *flat_market).trades[0]

        assert not trade.executed
        assert trade.profit == 0.0
        assert fragment in trade.reason
        assert "$50.00" in trade.reason


class TestBatchBehaviour:
    def test_missing_hour_fails_only_that_bid(self, flat_market):
        day_ahead, real_time = flat_market
        day_ahead = tuple(e for e in day_ahead if e.hour != 17)
        bids = [
            Bid("b1", 8, "buy", 60.0, 10.0),
            Bid("b2", 17, "buy", 60.0, 10.0),
            Bid("b3", 14, "sell", 40.0, 2.0),
        ]
        result = settle(bids, day_ahead, real_time)

        assert [t.executed for t in result.trades] == [True, False, True]
        assert result.trades[1].reason == NO_MARKET_DATA_REASON
        assert result.total_profit == pytest.approx(100.0 + 10.0)
        assert result.summary.executed_trades == 2
        assert result.summary.success_rate == pytest.approx(2 / 3)
        assert result.summary.avg_profit_per_trade == pytest.approx(55.0)

    def test_no_bids(self, flat_market):
        result = settle([], *flat_market)
        assert result.trades == ()
        assert result.total_profit == 0
        assert result.summary.success_rate == 0.0

    def test_deterministic_and_non_mutating(self, flat_market):
        day_ahead, real_time = list(flat_market[0]), list(flat_market[1])
        snapshot = (list(day_ahead), list(real_time))
        bids = [Bid("b1", 8, "buy", 60.0, 10.0), Bid("s1", 20, "sell", 30.0, 3.0)]

        first = settle(bids, day_ahead, real_time)
        second = settle(bids, day_ahead, real_time)

        assert first == second
        assert (day_ahead, real_time) == snapshot

    def test_wire_format(self, flat_market):
        payload = settle(
            [Bid("b1", 8, "buy", 60.0, 10.0), Bid("b2", 8, "buy", 1.0, 10.0)], *flat_market,
        ).to_dict()

        executed, rejected = payload["trades"]
        assert executed["type"] == "buy"
        assert executed["executionPrice"] == 50.0
        assert executed["profitPerMWh"] == pytest.approx(10.0)
        assert "reason" not in executed
        assert rejected["executed"] is False
        assert "executionPrice" not in rejected
        assert payload["summary"]["totalBids"] == 2

    def test_bid_from_dict_accepts_type_alias(self):
        bid = Bid.from_dict({"id": "x", "hour": "3", "type": "sell", "price": "40", "quantity": 2})
        assert bid == Bid("x", 3, "sell", 40.0, 2.0)

    @pytest.mark.parametrize("side", [None, "hold"])
    def test_bid_from_dict_rejects_missing_or_unknown_side(self, side):
        data = {"id": "x", "hour": 3, "price": 40, "quantity": 2}
        if side is not None:
            data["type"] = side
        with pytest.raises(InvalidInput):
            Bid.from_dict(data)


class TestRiskMetrics:
    def _trade(self, profit: float, executed: bool = True) -> TradeResult:
        return TradeResult(bid=Bid("t", 0, "buy", 50.0, 1.0), executed=executed, profit=profit)

    def test_profile(self):
        trades = [self._trade(100.0), self._trade(-50.0), self._trade(0.0, executed=False), self._trade(25.0)]
        risk = risk_metrics(trades)

        volatility = math.sqrt((75.0 ** 2 + 75.0 ** 2 + 0.0) / 3)
        assert risk.total_profit == pytest.approx(75.0)
        assert risk.avg_profit == pytest.approx(25.0)
        assert risk.var95 == pytest.approx(-50.0)
        assert risk.max_drawdown == pytest.approx(50.0)
        assert risk.volatility == pytest.approx(volatility)
        assert risk.sharpe_ratio == pytest.approx(25.0 / volatility)

    def test_nothing_executed(self):
        risk = risk_metrics([self._trade(0.0, executed=False)])
        assert risk.to_dict() == {
            "var95": 0.0,
            "maxDrawdown": 0.0,
            "sharpeRatio": 0.0,
            "volatility": 0.0,
            "avgProfit": 0.0,
            "totalProfit": 0.0,
        }

    def test_zero_volatility_sharpe(self):
        risk = risk_metrics([self._trade(10.0), self._trade(10.0)])
        assert risk.sharpe_ratio == 0.0
