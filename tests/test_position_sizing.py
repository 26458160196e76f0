from __future__ import annotations

import math
import unittest

from trading.models import PositionSizingRequest, SymbolFilters, TradeCandidate
from trading.position_sizing import (
    PositionSizeGate,
    fixed_conviction_notional,
    floor_to_step,
    volatility_adjusted_notional,
)


class PositionSizeGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = PositionSizeGate(min_trade_value=10.0)

    def _evaluate(self, **kwargs: object):
        base = {"available_funds": 1000.0, "proposed_notional": 50.0}
        base.update(kwargs)
        return self.gate.evaluate(PositionSizingRequest(**base))

    def test_rejects_non_numeric_and_non_positive_notional(self) -> None:
        for value in (math.nan, math.inf, 0.0, -5.0):
            with self.subTest(value=value):
                result = self._evaluate(proposed_notional=value)
                self.assertFalse(result.accepted)
                self.assertEqual(result.reason, "invalid_number")

    def test_rejects_below_minimum_trade_value(self) -> None:
        result = self._evaluate(proposed_notional=5.0)
        self.assertEqual((result.accepted, result.reason), (False, "below_minimum"))

    def test_risk_multiplier_scales_proposed_notional(self) -> None:
        result = self._evaluate(available_funds=1000.0, proposed_notional=100.0, risk_multiplier=50.0)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 50.0)

        gate = PositionSizeGate(min_trade_value=1.0)
        result = gate.evaluate(PositionSizingRequest(available_funds=1000.0, proposed_notional=100.0, risk_multiplier=5.0))
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 5.0)

    def test_balance_check_uses_scaled_notional_against_available_funds(self) -> None:
        result = self._evaluate(available_funds=60.0, proposed_notional=100.0, risk_multiplier=50.0)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 50.0)

        result = self._evaluate(available_funds=40.0, proposed_notional=100.0, risk_multiplier=50.0)
        self.assertEqual((result.accepted, result.reason), (False, "insufficient_balance"))

    def test_small_multiplier_can_push_size_below_minimum(self) -> None:
        result = self._evaluate(available_funds=1000.0, proposed_notional=100.0, risk_multiplier=5.0)
        self.assertEqual((result.accepted, result.reason), (False, "below_minimum"))
        result = self._evaluate(available_funds=1000.0, proposed_notional=400.0, risk_multiplier=5.0)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 20.0)

    def test_rejects_below_exchange_min_notional(self) -> None:
        result = self._evaluate(proposed_notional=15.0, instrument_min_notional=20.0)
        self.assertEqual((result.accepted, result.reason), (False, "exchange_min_notional"))

    def test_floors_to_step_and_rechecks_minimum(self) -> None:
        result = self._evaluate(proposed_notional=55.0, price=10.0, instrument_step_size=1.0)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 50.0)

        result = self._evaluate(proposed_notional=12.0, price=7.0, instrument_step_size=1.0)
        self.assertEqual((result.accepted, result.reason), (False, "below_minimum"))

    def test_identical_inputs_give_identical_results(self) -> None:
        request = PositionSizingRequest(
            available_funds=500.0,
            proposed_notional=123.45,
            instrument_min_notional=5.0,
            instrument_step_size=0.001,
            risk_multiplier=80.0,
            price=321.0,
        )
        self.assertEqual(self.gate.evaluate(request), self.gate.evaluate(request))


class SizingStrategyTests(unittest.TestCase):
    def test_floor_to_step(self) -> None:
        self.assertAlmostEqual(floor_to_step(5.5, 1.0), 5.0)
        self.assertAlmostEqual(floor_to_step(0.12345, 0.001), 0.123)
        self.assertEqual(floor_to_step(3.3, 0.0), 3.3)

    def test_volatility_adjusted_treats_values_above_one_as_percent(self) -> None:
        as_percent = volatility_adjusted_notional(balance=1000.0, risk_percent=2.0, atr=50.0, stop_multiplier=2.5, price=30000.0)
        as_fraction = volatility_adjusted_notional(balance=1000.0, risk_percent=0.02, atr=50.0, stop_multiplier=2.5, price=30000.0)
        self.assertAlmostEqual(as_percent, 4800.0)
        self.assertAlmostEqual(as_fraction, 4800.0)
        self.assertIsNone(volatility_adjusted_notional(balance=1000.0, risk_percent=2.0, atr=None, stop_multiplier=2.5, price=1.0))

    def test_fixed_conviction_clamps_and_defaults(self) -> None:
        self.assertEqual(fixed_conviction_notional(base_size=100.0, conviction=None), 100.0)
        self.assertEqual(fixed_conviction_notional(base_size=100.0, conviction=0.4), 40.0)
        self.assertEqual(fixed_conviction_notional(base_size=100.0, conviction=3.0), 100.0)
        self.assertIsNone(fixed_conviction_notional(base_size=0.0, conviction=0.5))

    def test_size_candidate_reports_calculation_error(self) -> None:
        gate = PositionSizeGate(min_trade_value=10.0, strategy="volatility_adjusted")
        candidate = TradeCandidate(candidate_id="c1", symbol="BTCUSDT", strategy="s", price=100.0, atr=None)
        request, result = gate.size_candidate(candidate, available_funds=1000.0, risk_multiplier=100.0)
        self.assertIsNone(request)
        self.assertEqual((result.accepted, result.reason), (False, "calculation_error"))

    def test_size_candidate_applies_symbol_filters(self) -> None:
        gate = PositionSizeGate(min_trade_value=10.0, strategy="fixed_conviction", base_position_size=100.0)
        candidate = TradeCandidate(candidate_id="c1", symbol="ETHUSDT", strategy="s", price=30.0, conviction=0.5)
        filters = SymbolFilters(symbol="ETHUSDT", min_notional=5.0, step_size=1.0)
        request, result = gate.size_candidate(candidate, available_funds=1000.0, risk_multiplier=100.0, filters=filters)
        self.assertEqual(request.proposed_notional, 50.0)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 30.0)

    def test_size_candidate_scales_strategy_output_by_risk_multiplier(self) -> None:
        gate = PositionSizeGate(min_trade_value=10.0, strategy="fixed_conviction", base_position_size=100.0)
        candidate = TradeCandidate(candidate_id="c1", symbol="BTCUSDT", strategy="s", price=100.0, conviction=1.0)
        request, result = gate.size_candidate(candidate, available_funds=1000.0, risk_multiplier=50.0)
        self.assertEqual(request.proposed_notional, 100.0)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.adjusted_notional, 50.0)


if __name__ == "__main__":
    unittest.main()
