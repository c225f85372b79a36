import time

from flowguard.config import Settings
from flowguard.service.resources import ResourceGovernor, weighted_tokens


class TestTracking:
    def test_accumulates_usage(self):
        governor = ResourceGovernor()
        governor.track_resource("tokens", 100)
        governor.track_resource("tokens", 150)
        assert governor.get_current_usage()["tokens"] == 250

    def test_usage_snapshot_is_a_copy(self):
        governor = ResourceGovernor()
        governor.track_resource("api_calls", 1)
        snapshot = governor.get_current_usage()
        snapshot["api_calls"] = 99
        assert governor.get_current_usage()["api_calls"] == 1

    def test_reset_clears_everything(self):
        governor = ResourceGovernor()
        governor.track_resource("tokens", 10)
        governor.reset_usage()
        assert governor.get_current_usage() == {}

    def test_load_usage_restores_counters(self):
        governor = ResourceGovernor(limits={"tokens": 100})
        governor.load_usage({"tokens": 90})
        governor.track_resource("tokens", 20)
        assert governor.get_current_usage() == {"tokens": 110.0}
        assert governor.check_limits() is True


class TestLimits:
    def test_breach_over_limit(self):
        governor = ResourceGovernor(limits={"tokens": 1000})
        governor.track_resource("tokens", 800)
        assert governor.check_limits() is False
        governor.track_resource("tokens", 300)
        assert governor.check_limits() is True

    def test_exactly_at_limit_is_not_a_breach(self):
        governor = ResourceGovernor(limits={"tokens": 1000})
        governor.track_resource("tokens", 1000)
        assert governor.check_limits() is False

    def test_unlimited_resources_never_breach(self):
        governor = ResourceGovernor(limits={"tokens": 10})
        governor.track_resource("api_calls", 10_000)
        assert governor.check_limits() is False

    def test_exceeded_reports_usage_and_limit(self):
        governor = ResourceGovernor(limits={"tokens": 10, "api_calls": 5})
        governor.track_resource("tokens", 11)
        governor.track_resource("api_calls", 5)
        assert governor.exceeded() == {"tokens": (11.0, 10)}

    def test_callback_fires_on_every_positive_check(self):
        calls = []
        governor = ResourceGovernor(limits={"tokens": 1}, on_limit_exceeded=calls.append)
        governor.track_resource("tokens", 5)
        governor.check_limits()
        governor.check_limits()
        assert calls == [{"tokens": 5.0}, {"tokens": 5.0}]

    def test_callback_not_called_without_breach(self):
        calls = []
        governor = ResourceGovernor(limits={"tokens": 10}, on_limit_exceeded=calls.append)
        governor.track_resource("tokens", 5)
        governor.check_limits()
        assert calls == []


class TestDerivedResources:
    def test_tracking_function_receives_source_amount_and_usage(self):
        seen = []

        def _derived(resource, amount, usage):
            seen.append((resource, amount, usage))
            return usage.get("total", 0) + amount

        governor = ResourceGovernor(tracking_functions={"total": _derived})
        governor.track_resource("prompt_tokens", 10)
        governor.track_resource("completion_tokens", 5)
        usage = governor.get_current_usage()
        assert usage["total"] == 15
        assert usage["prompt_tokens"] == 10
        assert usage["completion_tokens"] == 5
        assert seen[1] == ("completion_tokens", 5, {"total": 10.0, "prompt_tokens": 10.0})

    def test_weighted_tokens(self):
        governor = ResourceGovernor(
            limits={"weighted_tokens": 100},
            tracking_functions={
                "weighted_tokens": weighted_tokens({"prompt_tokens": 1.0, "completion_tokens": 1.5})
            },
        )
        governor.track_resource("prompt_tokens", 40)
        governor.track_resource("completion_tokens", 40)
        assert governor.get_current_usage()["weighted_tokens"] == 100
        assert governor.check_limits() is False
        governor.track_resource("completion_tokens", 2)
        assert governor.check_limits() is True

    def test_derived_name_is_not_accumulated_directly(self):
        governor = ResourceGovernor(
            tracking_functions={"weighted_tokens": weighted_tokens({"tokens": 2.0})}
        )
        governor.track_resource("tokens", 5)
        governor.track_resource("weighted_tokens", 1000)
        assert governor.get_current_usage()["weighted_tokens"] == 10


class TestElapsedTime:
    def test_elapsed_time_is_tracked_as_time_resource(self):
        governor = ResourceGovernor(limits={"time": 0})
        governor.start_timer()
        time.sleep(0.01)
        elapsed = governor.track_elapsed()
        assert elapsed > 0
        assert governor.get_current_usage()["time"] == elapsed
        assert governor.check_limits() is True

    def test_track_elapsed_without_timer_starts_one(self):
        governor = ResourceGovernor()
        assert governor.track_elapsed() == 0.0
        assert "time" not in governor.get_current_usage()


def test_from_settings_maps_limits():
    settings = Settings(max_tokens=10, max_api_calls=2, max_runtime_ms=500)
    governor = ResourceGovernor.from_settings(settings)
    assert governor.limits == {"tokens": 10.0, "api_calls": 2.0, "time": 500.0}
