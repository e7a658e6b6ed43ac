"""
Tests for OpportunityScorer: sizing, confidence and filtering.
"""

import math

import pytest

from arbloop.graph import detect_opportunities


class TestSpreadScenario:
    """X at 100.00 on alpha and 101.50 on beta, 1M liquidity each."""

    def test_profit_and_size(self, spread_opportunity):
        opp = spread_opportunity()
        assert opp.profit_percent == pytest.approx(0.015)
        assert opp.trade_size == pytest.approx(5_000.0)
        assert opp.estimated_profit == pytest.approx(75.0)

    def test_legs_and_assets(self, spread_opportunity):
        opp = spread_opportunity()
        assert opp.legs == 2
        assert opp.strategy == "spread"
        assert opp.id.startswith("spread-")
        assert opp.assets == ["SOL"]
        assert opp.buy_venue == "alpha"
        assert opp.sell_venue == "beta"

    def test_confidence(self, spread_opportunity):
        # 0.5 base + 0.12 profit + 0.2 liquidity cap, fresh quotes
        opp = spread_opportunity()
        assert opp.confidence == pytest.approx(0.82)

    def test_passes_filter(self, scorer, spread_opportunity):
        assert scorer.passes(spread_opportunity())

    def test_trade_size_capped_by_max(self, spread_opportunity):
        opp = spread_opportunity(liquidity=100_000_000.0)
        assert opp.trade_size == pytest.approx(10_000.0)

    def test_mismatched_symbols(self, scorer, make_sample):
        with pytest.raises(ValueError):
            scorer.score_spread(make_sample("SOL/USDC", "alpha", 100.0), make_sample("ETH/USDC", "beta", 2000.0))


class TestConfidence:
    """Tests for confidence bounds and inputs."""

    def test_unknown_liquidity_uses_default(self, scorer, make_sample):
        opp = scorer.score_spread(make_sample("SOL/USDC", "alpha", 100.0, liquidity=None),
                                  make_sample("SOL/USDC", "beta", 101.5, liquidity=None))
        assert opp.trade_size == pytest.approx(10_000.0 * 0.005)
        assert opp.confidence == pytest.approx(0.62)

    def test_stale_quotes_lower_confidence(self, scorer, make_sample):
        fresh = scorer.score_spread(make_sample("SOL/USDC", "alpha", 100.0),
                                    make_sample("SOL/USDC", "beta", 101.5))
        aged = scorer.score_spread(make_sample("SOL/USDC", "alpha", 100.0, age=4.0),
                                   make_sample("SOL/USDC", "beta", 101.5, age=4.0))
        assert aged.confidence == pytest.approx(fresh.confidence - 0.2)

    @pytest.mark.parametrize("sell_price,liquidity,age", [
        (100.01, 0.0, 100.0),
        (150.0, 1e12, 0.0),
        (101.5, 1.0, 3.0),
    ])
    def test_bounded(self, scorer, make_sample, sell_price, liquidity, age):
        opp = scorer.score_spread(make_sample("SOL/USDC", "alpha", 100.0, liquidity, age),
                                  make_sample("SOL/USDC", "beta", sell_price, liquidity, age))
        assert 0.0 <= opp.confidence <= 1.0

    def test_triangle_base_is_lower(self, scorer, make_sample):
        snapshot = {s.key: s for s in (
            make_sample("SOL/USDC", "alpha", 100.0),
            make_sample("ETH/USDC", "alpha", 2000.0),
            make_sample("SOL/ETH", "alpha", 0.05 * math.exp(0.03)),
            make_sample("BTC/USDC", "alpha", 30000.0),
            make_sample("BTC/USDC", "beta", 30000.0),
        )}
        [cycle] = detect_opportunities(snapshot, numeraire="USDC")
        opp = scorer.score(cycle)
        assert opp.strategy == "triangular"
        # 0.4 base + 0.24 profit + 0.2 liquidity cap
        assert opp.confidence == pytest.approx(0.4 + (math.exp(0.03) - 1) * 8 + 0.2)
        assert sorted(opp.assets) == ["ETH", "SOL"]


class TestFilter:
    """Tests for threshold filtering and ranking."""

    def test_below_profit_threshold_dropped(self, scorer, spread_opportunity):
        assert scorer.filter([spread_opportunity(sell_price=100.5)]) == []

    def test_below_confidence_dropped(self, scorer, spread_opportunity):
        # no liquidity bonus: 0.5 + 0.08
        opp = spread_opportunity(sell_price=101.0, liquidity=0.0)
        assert opp.confidence < scorer.cfg.min_confidence
        assert scorer.filter([opp]) == []

    def test_ranked_by_profit_times_confidence(self, scorer, spread_opportunity):
        small = spread_opportunity(sell_price=101.5)
        large = spread_opportunity(sell_price=103.0)
        ranked = scorer.filter([small, large])
        assert [o.id for o in ranked] == [large.id, small.id]
