"""Tests for the agent orchestrator."""

import threading
from typing import Any, Dict, Iterator
from unittest.mock import ANY, MagicMock

import pytest

from switchboard.agents.base import BaseAgent
from switchboard.agents.registry import AgentRegistry
from switchboard.config import OrchestratorSettings
from switchboard.observability.logging import get_correlation_id
from switchboard.orchestration.context import ContextManager, ContextScope
from switchboard.orchestration.orchestrator import AgentOrchestrator


@pytest.fixture
def orchestrator_factory(context_manager: ContextManager) -> Iterator[Any]:
    """Build orchestrators over the shared context manager and close them afterwards."""
    created = []

    def build(registry: Any, **kwargs: Any) -> AgentOrchestrator:
        orchestrator = AgentOrchestrator(registry, kwargs.pop("context_manager", context_manager), **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield build

    for orchestrator in created:
        orchestrator.close()


class FixedScoreAgent(BaseAgent):
    """Registry-backed agent with a preset score."""

    def __init__(self, name: str, score: float) -> None:
        self.name = name
        self._score = score
        super().__init__()

    def calculate_intent_match_score(self, request: Dict[str, Any]) -> float:
        return self._score

    def process_request(self, request: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        return self.success_response(f"{self.name} answered", data={"agent": self.name})


def _delegating(agent: str, to: str, reason: str = "Needs specialist") -> Dict[str, Any]:
    return {
        "status": "delegating",
        "message": f"{agent} delegates",
        "agent": agent,
        "delegate_to": to,
        "delegation_reason": reason,
    }


class TestRequestValidation:
    """Tests for malformed requests."""

    @pytest.mark.parametrize("request_data", [{}, {"message": ""}, {"message": None}, {"text": "hi"}])
    def test_missing_message_returns_error(self, orchestrator_factory, registry_builder, request_data) -> None:
        """Requests without a message should produce an error envelope."""
        registry = registry_builder({})
        orchestrator = orchestrator_factory(registry)

        response = orchestrator.process_user_request(request_data)

        assert response["status"] == "error"
        assert "Error processing request" in response["message"]
        registry.find_agents_by_specialization.assert_not_called()

    def test_non_mapping_request_returns_error(self, orchestrator_factory, registry_builder) -> None:
        """A request that is not a mapping should not raise."""
        orchestrator = orchestrator_factory(registry_builder({}))

        response = orchestrator.process_user_request(["message"])  # type: ignore[arg-type]

        assert response["status"] == "error"
        assert "Error processing request" in response["message"]


class TestCandidateDiscovery:
    """Tests for discovery and selection."""

    def test_no_candidates_returns_fixed_error(self, orchestrator_factory, registry_builder) -> None:
        """An empty registry lookup should produce the exact no-agent envelope."""
        orchestrator = orchestrator_factory(registry_builder({}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response == {"status": "error", "message": "No suitable agent found for this request"}

    def test_registry_is_asked_with_zero_minimum(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """Discovery should ask for every candidate with a minimum score of 0."""
        registry = registry_builder({"Agent1": (agent_builder("Agent1"), 10.0)})
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "Help me"})

        registry.find_agents_by_specialization.assert_called_once_with(ANY, 0.0)

    def test_highest_score_wins(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """The best scoring agent should handle the request."""
        low, high = agent_builder("Low"), agent_builder("High")
        orchestrator = orchestrator_factory(registry_builder({"Low": (low, 20.0), "High": (high, 80.0)}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["agent"] == "High"
        high.process_request.assert_called_once()
        low.process_request.assert_not_called()

    def test_ties_keep_registry_order(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """Equal scores should resolve to the first agent the registry returned."""
        first, second = agent_builder("First"), agent_builder("Second")
        orchestrator = orchestrator_factory(
            registry_builder({"First": (first, 50.0), "Second": (second, 50.0)})
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["agent"] == "First"

    def test_agent_response_passed_through_unchanged(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """An agent's own payload, including errors, should be returned as is."""
        payload = {"status": "error", "message": "Quota exceeded", "agent": "Agent1", "retry_after": None}
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent_builder("Agent1", payload), 50.0)}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response == payload

    def test_entity_capability_multiplier_changes_winner(
        self, orchestrator_factory, registry_builder, agent_builder, context_manager
    ) -> None:
        """An agent whose capability matches a conversation entity type should be boosted."""
        member_agent = agent_builder("MemberAgent", capabilities={"membership": {}})
        content_agent = agent_builder("ContentAgent")
        context_manager.track_entity("membership", "42", {"name": "Pro"}, "conv_1")
        orchestrator = orchestrator_factory(
            registry_builder({"ContentAgent": (content_agent, 55.0), "MemberAgent": (member_agent, 50.0)})
        )

        response = orchestrator.process_user_request({"message": "Upgrade"}, "conv_1")

        assert response["agent"] == "MemberAgent"
        assert orchestrator.get_agent_selection_history()[-1]["score"] == pytest.approx(60.0)

    def test_history_weights_favour_recent_agent(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """The previously selected agent should get continuity and history bonuses."""
        first, second = agent_builder("First"), agent_builder("Second")
        registry = registry_builder({"First": (first, 50.0), "Second": (second, 48.0)})
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "first question"})
        registry.find_agents_by_specialization.return_value = {
            "Second": {"agent": second, "score": 52.0},
            "First": {"agent": first, "score": 50.0},
        }
        response = orchestrator.process_user_request({"message": "second question"})

        # First: 50 * 1.1 continuity + 2 frequency + 5 recency = 62
        assert response["agent"] == "First"
        assert orchestrator.get_agent_selection_history()[-1]["score"] == pytest.approx(62.0)

    def test_clear_winner_terminates_scoring_early(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """With three or more candidates, a clear leader should skip history weights."""
        agents = {name: agent_builder(name) for name in ("A", "B", "C")}
        orchestrator = orchestrator_factory(
            registry_builder({"A": (agents["A"], 90.0), "B": (agents["B"], 20.0), "C": (agents["C"], 10.0)})
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["agent"] == "A"
        metrics = orchestrator.get_performance_metrics()
        assert metrics["early_terminations"] == 1
        assert metrics["early_termination_rate"] == pytest.approx(0.5)

    def test_pattern_cache_reuses_clear_winner(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A repeated request with a clear winner should skip the registry."""
        winner, other = agent_builder("Winner"), agent_builder("Other")
        registry = registry_builder({"Winner": (winner, 90.0), "Other": (other, 10.0)})
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "Same question"})
        response = orchestrator.process_user_request({"message": "Same question"})

        assert response["agent"] == "Winner"
        assert registry.find_agents_by_specialization.call_count == 1
        metrics = orchestrator.get_performance_metrics()
        assert metrics["pattern_cache_hits"] == 1
        assert metrics["pattern_cache_misses"] == 1
        assert metrics["pattern_cache_hit_rate"] == pytest.approx(0.5)

    def test_pattern_cache_not_used_without_clear_winner(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """Close scores should not be cached."""
        registry = registry_builder({"A": (agent_builder("A"), 50.0), "B": (agent_builder("B"), 45.0)})
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "Same question"})
        orchestrator.process_user_request({"message": "Same question"})

        assert registry.find_agents_by_specialization.call_count == 2

    def test_stale_pattern_cache_entry_is_dropped(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A cached selection whose agent is gone should fall back to the registry."""
        registry = registry_builder({"Winner": (agent_builder("Winner"), 90.0), "Other": (agent_builder("Other"), 10.0)})
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "Same question"})
        registry.get_agent.side_effect = lambda name: None
        orchestrator.process_user_request({"message": "Same question"})

        assert registry.find_agents_by_specialization.call_count == 2

    def test_pattern_cache_disabled_by_settings(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A cache size of zero should disable the fast path."""
        registry = registry_builder({"Winner": (agent_builder("Winner"), 90.0), "Other": (agent_builder("Other"), 10.0)})
        orchestrator = orchestrator_factory(registry, settings=OrchestratorSettings(pattern_cache_size=0))

        orchestrator.process_user_request({"message": "Same question"})
        orchestrator.process_user_request({"message": "Same question"})

        assert registry.find_agents_by_specialization.call_count == 2


    def test_clear_pattern_cache_forces_registry_lookup(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """After clearing the cache a repeated request should be scored again."""
        registry = registry_builder({"Winner": (agent_builder("Winner"), 90.0), "Other": (agent_builder("Other"), 10.0)})
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "Same question"})
        orchestrator.clear_pattern_cache()
        orchestrator.process_user_request({"message": "Same question"})

        assert registry.find_agents_by_specialization.call_count == 2
        assert orchestrator.get_performance_metrics()["pattern_cache_hits"] == 0

    def test_newly_registered_agent_invalidates_cache(self, orchestrator_factory) -> None:
        """Registering an agent should make cached selections consult the registry again."""
        registry = AgentRegistry()
        registry.register(FixedScoreAgent("Winner", 50.0))
        registry.register(FixedScoreAgent("Other", 10.0))
        orchestrator = orchestrator_factory(registry)

        orchestrator.process_user_request({"message": "Same question"})
        cached = orchestrator.process_user_request({"message": "Same question"})
        registry.register(FixedScoreAgent("Newcomer", 100.0))
        response = orchestrator.process_user_request({"message": "Same question"})

        assert cached["agent"] == "Winner"
        assert response["agent"] == "Newcomer"
        metrics = orchestrator.get_performance_metrics()
        assert metrics["pattern_cache_hits"] == 1
        assert metrics["pattern_cache_misses"] == 2

    def test_newly_registered_agent_joins_cached_aggregation(self, orchestrator_factory) -> None:
        """Aggregation over a previously cached pattern should include a new agent."""
        registry = AgentRegistry()
        registry.register(FixedScoreAgent("Winner", 50.0))
        registry.register(FixedScoreAgent("Other", 10.0))
        orchestrator = orchestrator_factory(registry)
        request = {"message": "Summarise", "aggregate_results": True}

        orchestrator.process_user_request(dict(request))
        registry.register(FixedScoreAgent("Late", 5.0))
        response = orchestrator.process_user_request(dict(request))

        assert set(response["individual_responses"]) == {"Winner", "Other", "Late"}


class TestAgentInvocation:
    """Tests for agent calls and failures."""

    def test_agent_receives_enriched_request_and_context(
        self, orchestrator_factory, registry_builder, agent_builder, context_manager
    ) -> None:
        """Agents should see conversation data, entities and history."""
        agent = agent_builder("Agent1")
        context_manager.add_context("conversation_data", {"plan": "pro"}, ContextScope.CONVERSATION, "conv_1")
        context_manager.track_entity("member", "7", {}, "conv_1")
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent, 50.0)}))

        orchestrator.process_user_request({"message": "Help me"}, "conv_1")

        request, context = agent.process_request.call_args.args
        assert request["message"] == "Help me"
        assert request["conversation_id"] == "conv_1"
        assert request["context"]["conversation"] == {"plan": "pro"}
        assert [e["id"] for e in request["context"]["entities"]] == ["7"]
        assert request["context"]["history"] == []
        assert request["context"]["previous_agents"] == []
        assert context["conversation_id"] == "conv_1"
        assert context["request_id"].startswith("req_")

    def test_agent_exception_becomes_error_envelope(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """An agent raising should not escape process_user_request."""
        agent = agent_builder("Agent1")
        agent.process_request.side_effect = RuntimeError("database offline")
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent, 50.0)}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["status"] == "error"
        assert response["message"] == "Error processing request: database offline"

    def test_registry_exception_becomes_error_envelope(self, orchestrator_factory) -> None:
        """A failing registry should not escape process_user_request."""
        registry = MagicMock()
        registry.find_agents_by_specialization.side_effect = ValueError("registry down")
        orchestrator = orchestrator_factory(registry)

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response == {"status": "error", "message": "Error processing request: registry down"}

    def test_non_dict_agent_response_is_rejected(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """Agents must answer with a dict."""
        agent = agent_builder("Agent1")
        agent.process_request.return_value = "plain text"
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent, 50.0)}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["status"] == "error"
        assert "returned an invalid response" in response["message"]

    def test_slow_agent_times_out(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """An agent exceeding the bounded wait should produce a timeout envelope."""
        release = threading.Event()
        agent = agent_builder("Slow")
        agent.process_request.side_effect = lambda request, context: release.wait(5) or {}
        orchestrator = orchestrator_factory(
            registry_builder({"Slow": (agent, 50.0)}),
            settings=OrchestratorSettings(agent_timeout_seconds=0.05),
        )

        try:
            response = orchestrator.process_user_request({"message": "Help me"})
        finally:
            release.set()

        assert response["status"] == "error"
        assert response["agent"] == "Slow"
        assert response["code"] == "agent_timeout"
        assert "timed out" in response["message"]

    def test_correlation_id_is_request_id_during_call(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """Agents should run with the request id as correlation id, cleared afterwards."""
        seen: Dict[str, Any] = {}
        agent = agent_builder("Agent1")

        def process(request: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
            seen["correlation_id"] = get_correlation_id()
            seen["request_id"] = context["request_id"]
            return {"status": "success", "message": "ok", "agent": "Agent1"}

        agent.process_request.side_effect = process
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent, 50.0)}))

        orchestrator.process_user_request({"message": "Help me"})

        assert seen["correlation_id"] == seen["request_id"]
        assert get_correlation_id() is None

    def test_custom_logger_receives_events(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """A caller-supplied logger should receive keyword-style events."""
        logger = MagicMock()
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent_builder("Agent1"), 50.0)}), logger=logger
        )

        orchestrator.process_user_request({"message": "Help me"}, "conv_1")

        logger.info.assert_any_call("processing_user_request", conversation_id="conv_1", request_id=ANY)


class TestDelegation:
    """Tests for delegation handling."""

    def test_single_hop_delegation(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """The delegate's response should be returned with delegation metadata."""
        agent1 = agent_builder("Agent1", _delegating("Agent1", "Agent2", "Agent2 handles billing"))
        agent2 = agent_builder(
            "Agent2", {"status": "success", "message": "Billing done", "agent": "Agent2", "data": {"ok": True}}
        )
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent1, 75.0), "Agent2": (agent2, 50.0)})
        )

        response = orchestrator.process_user_request({"message": "Refund my order"})

        assert response["status"] == "success"
        assert response["agent"] == "Agent2"
        assert response["delegated_from"] == "Agent1"
        assert response["delegation_reason"] == "Agent2 handles billing"
        assert response["data"] == {"ok": True}

        delegate_request, delegate_context = agent2.process_request.call_args.args
        assert delegate_request["delegation_message"]["type"] == "delegation"
        assert delegate_request["delegation_message"]["recipient"] == "Agent2"
        assert delegate_context["is_delegation"] is True

        stack = orchestrator.get_statistics()["delegation_stack"]
        assert [(hop["from"], hop["to"]) for hop in stack] == [("Agent1", "Agent2")]

    def test_missing_delegate_returns_error(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """Delegating to an unknown agent should produce an error envelope."""
        delegating = _delegating("Agent1", "Ghost")
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent_builder("Agent1", delegating), 75.0)})
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response == {
            "status": "error",
            "message": "Agent 'Ghost' not found for delegation",
            "original_response": delegating,
        }

    def test_factory_fallback_builds_delegate(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """An unregistered delegate should be built through the agent factory."""
        helper = agent_builder("Helper")
        factory = MagicMock()
        factory.create_and_register_agent.return_value = helper
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent_builder("Agent1", _delegating("Agent1", "Helper")), 75.0)}),
            agent_factory=factory,
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        factory.create_and_register_agent.assert_called_once_with("Helper")
        assert response["agent"] == "Helper"
        assert response["delegated_from"] == "Agent1"

    def test_factory_failure_reports_missing_delegate(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A factory that cannot build the delegate should yield the not-found envelope."""
        factory = MagicMock()
        factory.create_and_register_agent.side_effect = KeyError("Helper")
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent_builder("Agent1", _delegating("Agent1", "Helper")), 75.0)}),
            agent_factory=factory,
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["message"] == "Agent 'Helper' not found for delegation"

    def test_chained_delegation_is_followed(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """A delegate that delegates again should be followed to the final agent."""
        a = agent_builder("A", _delegating("A", "B", "first reason"))
        b = agent_builder("B", _delegating("B", "C", "second reason"))
        c = agent_builder("C")
        orchestrator = orchestrator_factory(registry_builder({"A": (a, 80.0)}, extra_agents={"B": b, "C": c}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["agent"] == "C"
        assert response["delegated_from"] == "A"
        assert response["delegation_reason"] == "first reason"
        assert response["delegation_chain"] == ["A", "B", "C"]
        assert len(orchestrator.get_statistics()["delegation_stack"]) == 2

    def test_delegation_depth_is_capped(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """Chains longer than max_delegation_depth should stop with an error."""
        agents = {
            "A": agent_builder("A", _delegating("A", "B")),
            "B": agent_builder("B", _delegating("B", "C")),
            "C": agent_builder("C", _delegating("C", "D")),
            "D": agent_builder("D"),
        }
        orchestrator = orchestrator_factory(
            registry_builder({"A": (agents["A"], 80.0)}, extra_agents=agents),
            settings=OrchestratorSettings(max_delegation_depth=2),
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["status"] == "error"
        assert response["message"] == "Maximum delegation depth reached"
        assert response["original_response"]["agent"] == "C"
        agents["D"].process_request.assert_not_called()

    def test_delegation_cycle_is_detected(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """A delegate handing back to an earlier agent should stop with an error."""
        a = agent_builder("A", _delegating("A", "B"))
        b = agent_builder("B", _delegating("B", "A"))
        orchestrator = orchestrator_factory(registry_builder({"A": (a, 80.0)}, extra_agents={"B": b}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["status"] == "error"
        assert "cycle" in response["message"]
        assert a.process_request.call_count == 1

    def test_delegation_without_target_is_an_error(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A delegating response without delegate_to should not be followed."""
        delegating = {"status": "delegating", "message": "hand off", "agent": "A"}
        orchestrator = orchestrator_factory(registry_builder({"A": (agent_builder("A", delegating), 80.0)}))

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["status"] == "error"
        assert response["original_response"] == delegating


class TestAggregation:
    """Tests for aggregate_results requests."""

    def test_aggregates_data_from_every_candidate(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """Every candidate's data should be collected under its name."""
        agent1 = agent_builder(
            "Agent1", {"status": "success", "message": "one", "agent": "Agent1", "data": {"key1": "value1"}}
        )
        agent2 = agent_builder(
            "Agent2", {"status": "success", "message": "two", "agent": "Agent2", "data": {"key2": "value2"}}
        )
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent1, 75.0), "Agent2": (agent2, 50.0)})
        )

        response = orchestrator.process_user_request({"message": "Summarise", "aggregate_results": True})

        assert response["status"] == "success"
        assert response["agent"] == "orchestrator"
        assert response["message"] == "Aggregated response from multiple agents"
        assert response["aggregated_data"] == {"Agent1": {"key1": "value1"}, "Agent2": {"key2": "value2"}}
        assert list(response["individual_responses"]) == ["Agent1", "Agent2"]
        agent1.process_request.assert_called_once()
        agent2.process_request.assert_called_once()
        assert agent2.process_request.call_args.args[1]["is_aggregation"] is True

    def test_aggregation_requires_literal_true(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """Truthy values other than True should not aggregate."""
        agent1, agent2 = agent_builder("Agent1"), agent_builder("Agent2")
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent1, 75.0), "Agent2": (agent2, 50.0)})
        )

        response = orchestrator.process_user_request({"message": "Summarise", "aggregate_results": "yes"})

        assert response["agent"] == "Agent1"
        agent2.process_request.assert_not_called()

    def test_failed_agent_is_excluded_from_aggregated_data(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A failing agent should appear in individual_responses only."""
        agent1 = agent_builder(
            "Agent1", {"status": "success", "message": "one", "agent": "Agent1", "data": {"key1": "value1"}}
        )
        agent2 = agent_builder("Agent2")
        agent2.process_request.side_effect = RuntimeError("boom")
        agent3 = agent_builder(
            "Agent3", {"status": "error", "message": "no data", "agent": "Agent3", "data": {"partial": 1}}
        )
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent1, 75.0), "Agent2": (agent2, 60.0), "Agent3": (agent3, 55.0)})
        )

        response = orchestrator.process_user_request({"message": "Summarise", "aggregate_results": True})

        assert response["aggregated_data"] == {"Agent1": {"key1": "value1"}}
        assert response["individual_responses"]["Agent2"]["status"] == "error"
        assert response["individual_responses"]["Agent2"]["message"] == "boom"
        assert response["individual_responses"]["Agent3"]["status"] == "error"

    def test_max_aggregate_agents_limits_fan_out(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """Only the best max_aggregate_agents candidates should be consulted."""
        agents = {name: agent_builder(name) for name in ("A", "B", "C")}
        orchestrator = orchestrator_factory(
            registry_builder({"A": (agents["A"], 60.0), "B": (agents["B"], 55.0), "C": (agents["C"], 50.0)}),
            settings=OrchestratorSettings(max_aggregate_agents=2),
        )

        response = orchestrator.process_user_request({"message": "Summarise", "aggregate_results": True})

        assert list(response["individual_responses"]) == ["A", "B"]
        agents["C"].process_request.assert_not_called()

    def test_delegation_takes_precedence_over_aggregation(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A delegating top agent should be resolved as a delegation."""
        agent1 = agent_builder("Agent1", _delegating("Agent1", "Agent2"))
        agent2 = agent_builder("Agent2")
        orchestrator = orchestrator_factory(
            registry_builder({"Agent1": (agent1, 75.0), "Agent2": (agent2, 50.0)})
        )

        response = orchestrator.process_user_request({"message": "Summarise", "aggregate_results": True})

        assert response["delegated_from"] == "Agent1"
        assert "aggregated_data" not in response


class TestProcessRequestOnlyAgents:
    """Tests with agents that implement nothing but process_request."""

    def test_selection_with_entities_in_context(
        self, orchestrator_factory, registry_builder, plain_agent_builder, context_manager
    ) -> None:
        """Entity-aware scoring should not need get_capabilities."""
        first, second = plain_agent_builder("First"), plain_agent_builder("Second")
        context_manager.track_entity("membership", "42", {"name": "Pro"}, "conv_1")
        orchestrator = orchestrator_factory(registry_builder({"First": (first, 55.0), "Second": (second, 50.0)}))

        response = orchestrator.process_user_request({"message": "Upgrade"}, "conv_1")

        assert response == {"status": "success", "message": "First handled it", "agent": "First"}
        assert len(first.calls) == 1
        assert second.calls == []
        assert orchestrator.get_agent_selection_history()[-1]["score"] == pytest.approx(55.0)

    def test_delegation_between_plain_agents(
        self, orchestrator_factory, registry_builder, plain_agent_builder
    ) -> None:
        """A delegate resolved by name should be invoked through process_request alone."""
        first = plain_agent_builder("First", _delegating("First", "Second", "Second knows billing"))
        second = plain_agent_builder("Second")
        orchestrator = orchestrator_factory(registry_builder({"First": (first, 75.0)}, extra_agents={"Second": second}))

        response = orchestrator.process_user_request({"message": "Refund my order"})

        assert response["agent"] == "Second"
        assert response["delegated_from"] == "First"
        assert response["delegation_reason"] == "Second knows billing"
        assert second.calls[0][1]["is_delegation"] is True

    def test_aggregation_across_plain_agents(
        self, orchestrator_factory, registry_builder, plain_agent_builder
    ) -> None:
        """Aggregation should collect data from agents without extra methods."""
        first = plain_agent_builder("First", {"status": "success", "message": "one", "agent": "First", "data": [1]})
        second = plain_agent_builder("Second", {"status": "success", "message": "two", "agent": "Second", "data": [2]})
        orchestrator = orchestrator_factory(registry_builder({"First": (first, 75.0), "Second": (second, 50.0)}))

        response = orchestrator.process_user_request({"message": "Summarise", "aggregate_results": True})

        assert response["aggregated_data"] == {"First": [1], "Second": [2]}
        assert len(first.calls) == 1
        assert second.calls[0][1]["is_aggregation"] is True

    def test_delegating_response_without_message_is_followed(
        self, orchestrator_factory, registry_builder, plain_agent_builder
    ) -> None:
        """A delegating status with a null message should still hand off."""
        delegating = {
            "status": "delegating",
            "message": None,
            "agent": "First",
            "delegate_to": "Second",
            "delegation_reason": "billing",
        }
        first = plain_agent_builder("First", delegating)
        second = plain_agent_builder("Second")
        orchestrator = orchestrator_factory(registry_builder({"First": (first, 75.0)}, extra_agents={"Second": second}))

        response = orchestrator.process_user_request({"message": "Refund my order"})

        assert response["status"] == "success"
        assert response["agent"] == "Second"
        assert response["delegated_from"] == "First"
        assert len(second.calls) == 1

    def test_delegating_response_with_structured_reason_is_followed(
        self, orchestrator_factory, registry_builder, plain_agent_builder
    ) -> None:
        """Loosely typed agent and reason fields should not stop the hand-off."""
        delegating = {
            "status": "delegating",
            "message": "over to billing",
            "agent": 7,
            "delegate_to": "Second",
            "delegation_reason": {"topic": "billing"},
        }
        second = plain_agent_builder("Second")
        orchestrator = orchestrator_factory(
            registry_builder({"First": (plain_agent_builder("First", delegating), 75.0)}, extra_agents={"Second": second})
        )

        response = orchestrator.process_user_request({"message": "Refund my order"})

        assert response["agent"] == "Second"
        assert response["delegation_reason"] == {"topic": "billing"}
        assert orchestrator.get_statistics()["delegation_stack"][0]["from"] == "7"

    def test_non_string_delegate_target_is_an_error(
        self, orchestrator_factory, registry_builder, plain_agent_builder
    ) -> None:
        """A delegate_to that is not a name should produce an error envelope."""
        delegating = {"status": "delegating", "message": "hand off", "agent": "First", "delegate_to": {"name": "Second"}}
        second = plain_agent_builder("Second")
        orchestrator = orchestrator_factory(
            registry_builder({"First": (plain_agent_builder("First", delegating), 75.0)}, extra_agents={"Second": second})
        )

        response = orchestrator.process_user_request({"message": "Help me"})

        assert response["status"] == "error"
        assert response["original_response"] == delegating
        assert second.calls == []


class TestContextUpdates:
    """Tests for writing responses back to the context manager."""

    def test_response_entities_and_updates_are_stored(
        self, orchestrator_factory, registry_builder, agent_builder, context_manager
    ) -> None:
        """Entities, context updates and the exchange should be recorded."""
        agent = agent_builder(
            "MemberAgent",
            {
                "status": "success",
                "message": "Upgraded",
                "agent": "MemberAgent",
                "entities": [{"type": "membership", "id": "42", "metadata": {"name": "Pro"}}, {"type": "bad"}],
                "context_updates": {"last_plan": "pro"},
            },
        )
        orchestrator = orchestrator_factory(registry_builder({"MemberAgent": (agent, 50.0)}))

        orchestrator.process_user_request({"message": "Upgrade me"}, "conv_1")

        entity = context_manager.get_entity("membership", "42")
        assert entity is not None
        assert entity.conversation_ids == ["conv_1"]
        assert context_manager.get_context("last_plan", ContextScope.CONVERSATION, "conv_1") == "pro"

        history = context_manager.get_conversation_history("conv_1")
        assert [item["type"] for item in history] == ["request", "response"]
        assert history[0]["content"] == "Upgrade me"
        assert history[1]["content"] == "Upgraded"
        assert history[1]["sender"] == "MemberAgent"
        assert history[1]["references"]["request_id"] == history[0]["metadata"]["request_id"]

    def test_validation_failure_does_not_touch_history(
        self, orchestrator_factory, registry_builder, context_manager
    ) -> None:
        """Rejected requests should leave the conversation untouched."""
        orchestrator = orchestrator_factory(registry_builder({}))

        orchestrator.process_user_request({}, "conv_1")

        assert context_manager.get_conversation_history("conv_1") == []

    def test_history_feeds_following_requests(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """The next request should see the previous exchange in its context."""
        agent = agent_builder("Agent1")
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent, 50.0)}))

        orchestrator.process_user_request({"message": "first"}, "conv_1")
        orchestrator.process_user_request({"message": "second"}, "conv_1")

        request = agent.process_request.call_args.args[0]
        assert [item["content"] for item in request["context"]["history"]][0] == "first"
        assert request["context"]["previous_agents"][0]["agent"] == "Agent1"


class TestConversationLifecycle:
    """Tests for conversation helpers and statistics."""

    def test_conversation_id_is_generated_and_kept(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A conversation should be started once and reused."""
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent_builder("Agent1"), 50.0)}))

        orchestrator.process_user_request({"message": "one"})
        conversation_id = orchestrator.get_conversation_id()
        orchestrator.process_user_request({"message": "two"})

        assert conversation_id is not None
        assert conversation_id.startswith("conv_")
        assert orchestrator.get_conversation_id() == conversation_id

    def test_create_new_conversation_resets_bookkeeping(
        self, orchestrator_factory, registry_builder, agent_builder
    ) -> None:
        """A new conversation should have a fresh id and empty history."""
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent_builder("Agent1"), 50.0)}))
        orchestrator.process_user_request({"message": "one"})
        previous = orchestrator.get_conversation_id()

        new_id = orchestrator.create_new_conversation()

        assert new_id != previous
        assert orchestrator.get_conversation_id() == new_id
        assert orchestrator.get_agent_selection_history() == []

    def test_set_conversation_id(self, orchestrator_factory, registry_builder) -> None:
        """set_conversation_id should activate the given conversation."""
        orchestrator = orchestrator_factory(registry_builder({}))
        orchestrator.set_conversation_id("conv_custom")
        assert orchestrator.get_conversation_id() == "conv_custom"

    def test_clear_conversation_delegates_to_context_manager(
        self, orchestrator_factory, registry_builder, agent_builder, context_manager
    ) -> None:
        """clear_conversation should clear context and reset selections."""
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent_builder("Agent1"), 50.0)}))
        orchestrator.process_user_request({"message": "one"}, "conv_1")

        assert orchestrator.clear_conversation() is True
        assert context_manager.get_conversation_history("conv_1") == []
        assert orchestrator.get_agent_selection_history() == []

    def test_clear_conversation_without_active_conversation(
        self, orchestrator_factory, registry_builder
    ) -> None:
        """Clearing with no active conversation should return False."""
        assert orchestrator_factory(registry_builder({})).clear_conversation() is False

    def test_get_statistics(self, orchestrator_factory, registry_builder, agent_builder, context_manager) -> None:
        """Statistics should bundle bookkeeping and the context manager's stats."""
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent_builder("Agent1"), 50.0)}))
        orchestrator.process_user_request({"message": "one"}, "conv_1")

        stats = orchestrator.get_statistics()

        assert stats["conversation_id"] == "conv_1"
        assert [s["agent"] for s in stats["agent_selection_history"]] == ["Agent1"]
        assert stats["delegation_stack"] == []
        assert stats["context_stats"] == context_manager.get_context_stats()
        assert stats["performance_metrics"]["full_calculations"] == 1
        assert "avg_selection_time" in stats["performance_metrics"]

    def test_reset_performance_metrics(self, orchestrator_factory, registry_builder, agent_builder) -> None:
        """Resetting should zero every counter."""
        orchestrator = orchestrator_factory(registry_builder({"Agent1": (agent_builder("Agent1"), 50.0)}))
        orchestrator.process_user_request({"message": "one"})

        metrics = orchestrator.reset_performance_metrics().get_performance_metrics()

        assert metrics["full_calculations"] == 0
        assert metrics["selection_times"] == []
        assert metrics["pattern_cache_hit_rate"] == 0.0

    def test_confidence_threshold_is_clamped(self, orchestrator_factory, registry_builder) -> None:
        """Thresholds below 1.0 should be raised to 1.0."""
        orchestrator = orchestrator_factory(registry_builder({}))

        assert orchestrator.set_confidence_threshold(0.5).get_confidence_threshold() == 1.0
        assert orchestrator.set_confidence_threshold(2.0).get_confidence_threshold() == 2.0

    def test_get_context_manager(self, orchestrator_factory, registry_builder, context_manager) -> None:
        """The orchestrator should expose its context manager."""
        assert orchestrator_factory(registry_builder({})).get_context_manager() is context_manager
