"""Tests for loss-triggered strategy switching."""

import pytest

from zentrade.clock import ManualClock
from zentrade.models.trade_config import SwitchingPolicy
from zentrade.risk.switching import (
    REASON_ADAPTIVE,
    REASON_CUSTOM,
    REASON_MANUAL,
    REASON_PERFORMANCE,
    REASON_RESET_ON_WIN,
    REASON_ROTATION,
    StrategySwitchController,
)


class FakeSignals:
    """Fixed market signals for the adaptive policy."""

    def __init__(self, volatility: float = 0.3, trend: float = 0.0, digit: int = 5) -> None:
        self._volatility = volatility
        self._trend = trend
        self._digit = digit

    def volatility(self) -> float:
        return self._volatility

    def trend(self) -> float:
        return self._trend

    def last_digit(self) -> int:
        return self._digit


def _make_controller(signals=None, clock=None, **policy) -> StrategySwitchController:
    events = []
    controller = StrategySwitchController(
        SwitchingPolicy(**policy),
        clock or ManualClock(start=1000.0),
        signals or FakeSignals(),
        on_switch=events.append,
    )
    controller.events = events
    return controller


class TestRotation:
    def test_three_losses_switch_even_to_odd(self):
        switcher = _make_controller(strategies=("Even", "Odd"))
        assert switcher.maybe_switch("Even", 2, threshold=3) is None

        event = switcher.maybe_switch("Even", 3, threshold=3)

        assert event.from_strategy == "Even"
        assert event.to_strategy == "Odd"
        assert event.reason == REASON_ROTATION
        assert event.consecutive_losses == 3
        assert switcher.switches_this_session == 1
        assert switcher.events == [event]

    def test_rotation_wraps_and_skips_excluded(self):
        switcher = _make_controller(
            strategies=("Even", "Odd", "Over"), excluded_strategies=("Odd",)
        )
        assert switcher.select_next("Even") == ("Over", REASON_ROTATION)
        assert switcher.select_next("Over") == ("Even", REASON_ROTATION)

    def test_budget_exhausted(self):
        switcher = _make_controller(strategies=("Even", "Odd"), max_switches=1)
        assert switcher.maybe_switch("Even", 3, threshold=3) is not None
        assert switcher.budget_exhausted
        assert switcher.maybe_switch("Odd", 3, threshold=3) is None

    def test_zero_budget_is_unlimited(self):
        switcher = _make_controller(strategies=("Even", "Odd"), max_switches=0)
        for i in range(15):
            current = "Even" if i % 2 == 0 else "Odd"
            assert switcher.maybe_switch(current, 3, threshold=3) is not None
        assert switcher.switches_this_session == 15


class TestCooldown:
    @pytest.mark.asyncio
    async def test_cooldown_blocks_manual_and_automatic(self):
        clock = ManualClock(start=0.0)
        switcher = _make_controller(
            clock=clock, strategies=("Even", "Odd"), cooldown_minutes=60
        )
        assert switcher.maybe_switch("Even", 3, threshold=3) is not None

        assert switcher.maybe_switch("Odd", 3, threshold=3) is None
        assert switcher.manual_switch("Odd", "Even", 0) is None
        assert switcher.switches_this_session == 1
        assert switcher.stats()["current_switch_cooldown"] == 60

        await clock.advance(3600)
        assert not switcher.cooldown_active
        assert switcher.manual_switch("Odd", "Even", 0) is not None


class TestPolicies:
    def test_performance_picks_best_recent_excluding_current(self):
        switcher = _make_controller(mode="performance")
        for won in (True, True, True):
            switcher.record_performance("Odd", won, 0.95)
        for won in (True, False, False):
            switcher.record_performance("Over", won, 0.5)
        for won in (True, True, True, True):
            switcher.record_performance("Even", won, 0.95)

        assert switcher.select_next("Even") == ("Odd", REASON_PERFORMANCE)

    def test_performance_falls_back_to_rotation(self):
        switcher = _make_controller(mode="performance")
        switcher.record_performance("Odd", True, 0.95)
        assert switcher.select_next("Even") == ("Odd", REASON_ROTATION)

    @pytest.mark.parametrize("volatility,trend,digit,expected", [
        (0.8, 0.01, 3, "Rise"),
        (0.8, -0.01, 3, "Fall"),
        (0.1, 0.0, 4, "Even"),
        (0.1, 0.0, 7, "Odd"),
        (0.3, 0.0, 8, "Under"),
        (0.3, 0.0, 5, "Over"),
    ])
    def test_adaptive(self, volatility, trend, digit, expected):
        switcher = _make_controller(
            signals=FakeSignals(volatility, trend, digit), mode="adaptive"
        )
        assert switcher.select_next("Matches") == (expected, REASON_ADAPTIVE)

    def test_custom_sequence(self):
        switcher = _make_controller(mode="custom", custom_sequence=("Rise", "Fall", "Even"))
        assert switcher.select_next("Fall") == ("Even", REASON_CUSTOM)
        assert switcher.select_next("Even") == ("Rise", REASON_CUSTOM)
        assert switcher.select_next("Odd") == ("Rise", REASON_CUSTOM)

    def test_custom_without_sequence_rotates(self):
        switcher = _make_controller(mode="custom", strategies=("Even", "Odd"))
        assert switcher.select_next("Even") == ("Odd", REASON_ROTATION)


class TestManualAndRevert:
    def test_manual_switch(self):
        switcher = _make_controller(strategies=("Even", "Odd", "Over"))
        event = switcher.manual_switch("Even", None, 1)
        assert event.to_strategy == "Odd"
        assert event.reason == REASON_MANUAL
        assert switcher.manual_switch("Odd", "Rise", 0).to_strategy == "Rise"

    def test_manual_switch_unknown_target(self):
        switcher = _make_controller()
        with pytest.raises(ValueError):
            switcher.manual_switch("Even", "Sideways", 0)

    def test_manual_switch_to_current_is_noop(self):
        switcher = _make_controller()
        assert switcher.manual_switch("Even", "Even", 0) is None

    def test_revert_on_win(self):
        switcher = _make_controller()
        assert switcher.revert_on_win("Even", "Even", 0) is None
        event = switcher.revert_on_win("Odd", "Even", 0)
        assert event.to_strategy == "Even"
        assert event.reason == REASON_RESET_ON_WIN

    def test_revert_disabled(self):
        switcher = _make_controller(reset_on_win=False)
        assert switcher.revert_on_win("Odd", "Even", 0) is None


class TestStats:
    def test_reset_session_keeps_performance(self):
        switcher = _make_controller(strategies=("Even", "Odd"))
        switcher.record_performance("Even", False, -1.0)
        switcher.maybe_switch("Even", 3, threshold=3)

        switcher.reset_session()

        stats = switcher.stats()
        assert stats["switches_this_session"] == 0
        assert stats["switch_history"] == []
        assert stats["last_switch_time"] is None
        assert stats["performance_by_contract"]["Even"]["total_trades"] == 1

    def test_best_performing_and_reset(self):
        switcher = _make_controller()
        for _ in range(3):
            switcher.record_performance("Differs", True, 0.1)
        assert switcher.best_performing() == "Differs"
        switcher.reset_performance()
        assert switcher.best_performing() is None
        assert switcher.performance("Differs").total_trades == 0

    def test_update_policy_validates(self):
        switcher = _make_controller()
        assert switcher.update_policy(mode="adaptive").mode == "adaptive"
        with pytest.raises(ValueError):
            switcher.update_policy(mode="random")
