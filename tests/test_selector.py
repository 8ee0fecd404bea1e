"""Unit tests for Selector: eligibility and strategy dispatch under the state lock."""

from __future__ import annotations

import asyncio
import random

from webhook_balancer.proxy import BackendRegistry, BalancerState, HealthTracker, Selector
from tests.conftest import make_registry, run_async


def make_selector(registry: BackendRegistry, strategy: str = "round_robin", **kwargs) -> Selector:
    health = HealthTracker(BalancerState.for_registry(registry))
    return Selector(registry, health, strategy=strategy, **kwargs)


class TestEligibility:

    def test_backend_without_service_is_never_selected(self):
        registry = make_registry({
            "alice": {"slack_app": "https://alice.example"},
            "bob": {"slack_oauth": "https://bob-oauth.example"},
            "charlie": {},
        })

        async def do_test():
            for strategy in ("round_robin", "least_connections", "random", "weighted", "sticky"):
                selector = make_selector(registry, strategy, rng=random.Random(0))
                for i in range(10):
                    assert await selector.select("slack_app", affinity_key=f"k{i}") == "alice"

        run_async(do_test())

    def test_empty_url_is_not_eligible(self):
        registry = make_registry({
            "alice": {"slack_app": ""},
            "bob": {"slack_app": "https://bob.example"},
        })
        selector = make_selector(registry)

        async def do_test():
            assert await selector.select("slack_app") == "bob"
            assert await selector.select("slack_app") == "bob"

        run_async(do_test())

    def test_empty_eligible_set_returns_none(self):
        registry = make_registry({"alice": {"slack_app": "https://alice.example"}})

        async def do_test():
            for strategy in ("round_robin", "least_connections", "random", "weighted", "sticky"):
                selector = make_selector(registry, strategy)
                assert await selector.select("google_sheets") is None
                assert await selector.select("google_sheets", affinity_key="abc") is None

        run_async(do_test())

    def test_empty_registry_returns_none(self):
        selector = make_selector(BackendRegistry())
        assert run_async(selector.select("slack_app")) is None

    def test_service_lookup_is_case_insensitive(self, three_developers):
        selector = make_selector(three_developers)
        assert run_async(selector.select("SLACK_APP")) == "alice"


class TestScenarios:

    def test_round_robin_sequence(self, three_developers):
        selector = make_selector(three_developers)

        async def do_test():
            return [await selector.select("slack_app") for _ in range(4)]

        assert run_async(do_test()) == ["alice", "bob", "charlie", "alice"]

    def test_round_robin_covers_every_member_per_cycle(self, three_developers):
        selector = make_selector(three_developers)

        async def do_test():
            picks = [await selector.select("slack_app") for _ in range(9)]
            for i in range(0, 9, 3):
                assert picks[i:i + 3] == ["alice", "bob", "charlie"]

        run_async(do_test())

    def test_cursor_is_shared_across_services(self):
        registry = make_registry({
            "alice": {"slack_app": "https://a", "slack_oauth": "https://a-oauth"},
            "bob": {"slack_app": "https://b", "slack_oauth": "https://b-oauth"},
        })
        selector = make_selector(registry)

        async def do_test():
            assert await selector.select("slack_app") == "alice"
            assert await selector.select("slack_oauth") == "bob"
            assert await selector.select("slack_app") == "alice"

        run_async(do_test())

    def test_least_connections_tie(self, three_developers):
        selector = make_selector(three_developers, "least_connections")
        selector.state.request_counts.update({"alice": 5, "bob": 2, "charlie": 2})
        assert run_async(selector.select("slack_app")) == "bob"

    def test_least_connections_never_above_minimum(self, three_developers):
        selector = make_selector(three_developers, "least_connections")

        async def do_test():
            for _ in range(12):
                chosen = await selector.select("slack_app")
                counts = selector.state.request_counts
                assert counts[chosen] == min(counts.values())
                await selector.health.report_success(chosen)

        run_async(do_test())

    def test_unhealthy_backend_is_excluded(self, three_developers):
        selector = make_selector(three_developers)

        async def do_test():
            for _ in range(3):
                await selector.health.report_failure("alice", transient=True)
            picks = {await selector.select("slack_app") for _ in range(6)}
            assert picks == {"bob", "charlie"}

        run_async(do_test())

    def test_sticky_stable_while_set_unchanged(self, three_developers):
        selector = make_selector(three_developers, "sticky")

        async def do_test():
            first = await selector.select("slack_app", affinity_key="v0=a1b2c3")
            for _ in range(5):
                # interleave keyless picks that move the cursor
                await selector.select("slack_app")
                assert await selector.select("slack_app", affinity_key="v0=a1b2c3") == first

        run_async(do_test())

    def test_weighted_uses_configured_weights(self, three_developers):
        selector = make_selector(
            three_developers, "weighted",
            weights={"ALICE": 100, "bob": 1, "charlie": 1},
            rng=random.Random(11),
        )

        async def do_test():
            picks = [await selector.select("slack_app") for _ in range(200)]
            assert picks.count("alice") > 150

        run_async(do_test())


def test_concurrent_round_robin_loses_no_updates(three_developers):
    selector = make_selector(three_developers)

    async def do_test():
        picks = await asyncio.gather(*(selector.select("slack_app") for _ in range(300)))
        return picks

    picks = run_async(do_test())
    assert picks.count("alice") == picks.count("bob") == picks.count("charlie") == 100


def test_mixed_case_failure_report_excludes_backend():
    registry = make_registry({
        "alice": {"slack_app": "https://alice.example"},
        "bob": {"slack_app": "https://bob.example"},
    })
    health = HealthTracker(BalancerState.for_registry(registry))
    selector = Selector(registry, health)

    async def do_test():
        await health.report_failure("Alice", transient=False)
        return [await selector.select("slack_app") for _ in range(4)]

    assert run_async(do_test()) == ["bob"] * 4
    assert health.health_status() == {"alice": "unhealthy", "bob": "healthy"}
