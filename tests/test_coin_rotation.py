"""
test_coin_rotation.py - Tests for active-universe rotation
"""

import numpy as np
import pytest

from ai.coin_rotation import CoinRotationSelector
from core.state import PerformanceBook, PerformanceRecord


def geometric(rate, n=60):
    return 100.0 * (1.0 + rate) ** np.arange(n)


class TestCoinRotation:
    """Scoring and selection of the active set."""

    def test_schedule(self):
        selector = CoinRotationSelector(max_active=2, interval=24)
        assert not selector.due(0)
        assert not selector.due(23)
        assert selector.due(24)
        assert selector.due(48)

    def test_initial_active_is_first_k(self):
        selector = CoinRotationSelector(max_active=2)
        assert selector.initial_active(["A", "B", "C"]) == ["A", "B"]

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            CoinRotationSelector(max_active=0)

    def test_neutral_symbol_score(self):
        score = CoinRotationSelector().score_symbol("A", np.full(30, 100.0), PerformanceRecord())
        assert score.score == pytest.approx(0.5 / 1.15)
        assert score.adjustment == 1.0

    def test_losers_are_penalized_and_winners_boosted(self):
        selector = CoinRotationSelector()
        losers, winners = PerformanceRecord(), PerformanceRecord()
        for _ in range(3):
            losers.record(-10.0, -0.01)
        for _ in range(5):
            winners.record(10.0, 0.01)

        assert selector.score_symbol("A", None, losers).adjustment == 0.5
        assert selector.score_symbol("A", None, winners).adjustment == 1.2

    def test_rotate_ranks_and_demotes(self):
        selector = CoinRotationSelector(max_active=2, interval=24)
        book = PerformanceBook()
        for _ in range(3):
            book.record_close("D", -10.0, -0.01)
        prices = {"A": geometric(0.01), "B": np.full(60, 100.0), "C": geometric(-0.01), "D": np.full(60, 100.0)}

        plan = selector.rotate(24, ["A", "B", "C", "D"], prices, book, current_active=["C", "D"], held=["D"])

        assert plan.active == ["A", "B"]
        assert plan.added == ["A", "B"]
        assert plan.removed == ["C", "D"]
        assert plan.demoted == ["D"]
        assert plan.changed
        assert list(selector.history) == [plan]

    def test_unchanged_rotation(self):
        selector = CoinRotationSelector(max_active=2)
        prices = {"A": geometric(0.01), "B": geometric(0.005)}
        plan = selector.rotate(24, ["A", "B"], prices, PerformanceBook(), current_active=["A", "B"])
        assert not plan.changed
        assert plan.demoted == []

    def test_history_is_bounded(self):
        selector = CoinRotationSelector(max_active=1, interval=1, history_size=3)
        prices = {"A": geometric(0.01), "B": geometric(0.005)}
        for step in range(1, 6):
            selector.rotate(step, ["A", "B"], prices, PerformanceBook(), current_active=["A"])

        assert len(selector.history) == 3
        assert [plan.step for plan in selector.history] == [3, 4, 5]
