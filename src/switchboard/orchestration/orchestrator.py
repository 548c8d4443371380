"""Agent orchestrator: routes one request to one normalized response.

The orchestrator validates a request, assembles conversation context, asks
the registry for scored candidates, refines the scores, invokes the best
agent under a bounded wait and then resolves delegation or aggregation.
Everything it learns from the final response (entities, context updates,
the exchange itself) is written back to the ContextManager.
"""

import contextvars
import hashlib
import json
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from switchboard.config import OrchestratorSettings, get_default_settings
from switchboard.core.protocols import Agent, AgentBuilder, AgentLookup, OrchestrationLogger
from switchboard.observability.logging import correlation_scope, get_logger
from switchboard.observability.metrics import get_metrics_collector
from switchboard.orchestration.context import ContextManager, ContextScope
from switchboard.orchestration.errors import (
    AgentTimeoutError,
    DelegationError,
    NoSuitableAgentError,
    OrchestrationError,
    RequestValidationError,
)
from switchboard.orchestration.protocol import Message
from switchboard.orchestration.responses import (
    ORCHESTRATOR_AGENT,
    SuccessResponse,
    error_envelope,
    to_envelope,
)

ENTITY_CAPABILITY_MULTIPLIER = 1.2
CONTINUITY_MULTIPLIER = 1.1
MAX_FREQUENCY_WEIGHT = 10.0
FREQUENCY_WEIGHT_PER_SELECTION = 2.0
RECENCY_WEIGHT = 5.0
# Scores within 1% of the top count as tied for first
TIE_TOLERANCE = 0.99
DELEGATING_STATUS = "delegating"


def _is_delegating(response: Mapping[str, Any]) -> bool:
    return response.get("status") == DELEGATING_STATUS


def _agent_capabilities(agent: Any) -> Any:
    """Return the agent's capability names, or an empty dict if it declares none."""
    get_capabilities = getattr(agent, "get_capabilities", None)
    if not callable(get_capabilities):
        return {}
    return get_capabilities() or {}


@dataclass
class AgentCandidate:
    """A scored agent under consideration for one request.

    Attributes:
        name: Registry name of the agent
        agent: The agent itself
        score: Current score, after any multipliers and weights
        context_multiplier: Product of the context multipliers applied
        history_weight: Points added from selection history
    """

    name: str
    agent: Agent
    score: float
    context_multiplier: float = 1.0
    history_weight: float = 0.0


class AgentOrchestrator:
    """Route requests to registered agents.

    One orchestrator tracks one active conversation at a time; the
    ContextManager it is given may be shared with other orchestrators.

    Example:
        >>> orchestrator = AgentOrchestrator(registry, ContextManager())
        >>> response = orchestrator.process_user_request({"message": "List my plans"})
        >>> response["status"]
        'success'
    """

    def __init__(
        self,
        agent_registry: AgentLookup,
        context_manager: ContextManager,
        logger: Optional[OrchestrationLogger] = None,
        agent_factory: Optional[AgentBuilder] = None,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            agent_registry: Source of scored candidates and delegates
            context_manager: Shared context store
            logger: Logger with info/warning/error taking keyword fields;
                defaults to a structlog logger
            agent_factory: Optional fallback used to build unregistered
                delegation targets
            settings: Orchestrator settings (defaults if omitted)
        """
        self._registry = agent_registry
        self._context_manager = context_manager
        self._logger = logger if logger is not None else get_logger(__name__)
        self._agent_factory = agent_factory
        self._settings = settings or get_default_settings()
        self._metrics = get_metrics_collector()

        self._conversation_id: Optional[str] = None
        self._agent_selection_history: List[Dict[str, Any]] = []
        self._delegation_stack: List[Dict[str, Any]] = []
        self._pattern_cache: "OrderedDict[str, List[Tuple[str, float]]]" = OrderedDict()
        self._cached_registry_version: Any = getattr(agent_registry, "version", None)
        self._confidence_threshold = self._settings.confidence_threshold
        self._performance_metrics: Dict[str, Any] = {}
        self._state_lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=self._settings.max_workers,
            thread_name_prefix="switchboard-agent",
        )
        self.reset_performance_metrics()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def process_user_request(
        self, request: Mapping[str, Any], conversation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Turn one request into exactly one response envelope.

        Args:
            request: Caller request; must carry a non-empty ``message``.
                ``aggregate_results=True`` asks for every candidate's data.
            conversation_id: Conversation to use; keeps the active one (or
                starts a new one) when omitted

        Returns:
            The selected agent's response, a delegate's response annotated
            with ``delegated_from``/``delegation_reason``, an aggregated
            envelope, or an error envelope. Never raises.
        """
        if conversation_id:
            self._conversation_id = conversation_id
        elif self._conversation_id is None:
            self._conversation_id = self._generate_conversation_id()

        request_id = self._generate_request_id()

        with correlation_scope(request_id, self._conversation_id):
            self._logger.info(
                "processing_user_request",
                conversation_id=self._conversation_id,
                request_id=request_id,
            )
            try:
                self._validate_request(request)
                enriched = self._enrich_request_with_context(request)
                candidates = self._select_agents_for_request(enriched)
                response = self._route_request_to_agents(enriched, candidates, request_id)
                self._update_context_from_response(request, response, request_id)
            except RequestValidationError as exc:
                self._logger.warning("invalid_request", reason=exc.reason)
                response = error_envelope(f"Error processing request: {exc.message}")
            except NoSuitableAgentError as exc:
                self._logger.warning("no_suitable_agent", conversation_id=self._conversation_id)
                response = error_envelope(exc.message)
            except Exception as exc:
                self._logger.error(
                    "request_processing_failed",
                    error=str(exc),
                    conversation_id=self._conversation_id,
                    exc_info=True,
                )
                response = error_envelope(f"Error processing request: {exc}")

        self._metrics.record_request(str(response.get("status", "unknown")))
        return response

    def _validate_request(self, request: Any) -> None:
        if not isinstance(request, Mapping):
            raise RequestValidationError("Request must be a mapping")
        if not request.get("message"):
            raise RequestValidationError("Request must include a message")

    def _enrich_request_with_context(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        conversation_id = self._conversation_id
        conversation_data = self._context_manager.get_context(
            "conversation_data",
            ContextScope.CONVERSATION,
            conversation_id,
            default={},
        )
        entities = [
            entity.to_dict()
            for entity in self._context_manager.get_entities_by_conversation(conversation_id)  # type: ignore[arg-type]
        ]
        history = self._context_manager.get_conversation_history(conversation_id)  # type: ignore[arg-type]

        enriched = dict(request)
        enriched["context"] = {
            "conversation": conversation_data,
            "entities": entities,
            "history": history,
            "previous_agents": self.get_agent_selection_history(),
        }
        enriched["conversation_id"] = conversation_id
        return enriched

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _select_agents_for_request(self, request: Dict[str, Any]) -> List[AgentCandidate]:
        """Return candidates best first.

        A pattern cache hit skips the registry's scoring. The whole cache is
        dropped when the registry's ``version`` changes, so agents added
        later are considered again (aggregation included). Registries
        without a ``version`` keep their entries until
        :meth:`clear_pattern_cache` is called or the entry is evicted.

        Raises:
            NoSuitableAgentError: If the registry has no candidate
        """
        start = time.perf_counter()
        pattern = self._extract_request_pattern(request)

        cached = self._try_fast_path_selection(pattern)
        if cached is not None:
            elapsed = time.perf_counter() - start
            with self._state_lock:
                self._performance_metrics["pattern_cache_hits"] += 1
                self._performance_metrics["selection_times"].append(elapsed)
            self._metrics.record_selection("fast_path", elapsed)
            self._logger.info("fast_path_agent_selection", agent=cached[0].name)
            return cached

        with self._state_lock:
            self._performance_metrics["pattern_cache_misses"] += 1

        raw = self._registry.find_agents_by_specialization(
            request, self._settings.min_candidate_score
        )
        candidates = self._normalize_candidates(raw)
        if not candidates:
            raise NoSuitableAgentError()

        candidates = self._apply_progressive_scoring(candidates, request)
        # Stable sort: equal scores keep registry order
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)

        self._cache_pattern_selection(pattern, candidates)

        elapsed = time.perf_counter() - start
        with self._state_lock:
            self._performance_metrics["full_calculations"] += 1
            self._performance_metrics["selection_times"].append(elapsed)
        self._metrics.record_selection("full", elapsed)

        self._logger.info(
            "agent_selection_results",
            agents=[{"name": c.name, "score": c.score} for c in candidates],
            conversation_id=self._conversation_id,
        )
        return candidates

    @staticmethod
    def _normalize_candidates(raw: Any) -> List[AgentCandidate]:
        candidates = []
        for name, entry in (raw or {}).items():
            if isinstance(entry, Mapping):
                agent, score = entry.get("agent"), entry.get("score", 0.0)
            else:
                agent, score = getattr(entry, "agent", None), getattr(entry, "score", 0.0)
            if agent is None:
                continue
            candidates.append(AgentCandidate(name=str(name), agent=agent, score=float(score)))
        return candidates

    def _extract_request_pattern(self, request: Mapping[str, Any]) -> str:
        entity_types = sorted(
            {
                entity.get("type", "")
                for entity in request.get("context", {}).get("entities", [])
                if isinstance(entity, Mapping)
            }
        )
        signature = {
            "message": hashlib.sha256(str(request.get("message", "")).encode("utf-8")).hexdigest()[:16],
            "entity_types": entity_types,
        }
        return hashlib.sha256(json.dumps(signature, sort_keys=True).encode("utf-8")).hexdigest()

    def _try_fast_path_selection(self, pattern: str) -> Optional[List[AgentCandidate]]:
        with self._state_lock:
            registry_version = getattr(self._registry, "version", None)
            if registry_version != self._cached_registry_version:
                # Agents were added or removed since the entries were cached
                self._pattern_cache.clear()
                self._cached_registry_version = registry_version

            cached = self._pattern_cache.get(pattern)
            if cached is None:
                return None

            candidates = []
            for name, score in cached:
                agent = self._registry.get_agent(name)
                if agent is None:
                    # A cached agent is gone; the whole entry is stale
                    del self._pattern_cache[pattern]
                    return None
                candidates.append(AgentCandidate(name=name, agent=agent, score=score))
            self._pattern_cache.move_to_end(pattern)
            return candidates

    def _has_clear_winner(self, ranked: List[AgentCandidate]) -> bool:
        if len(ranked) < 2:
            return False
        return ranked[0].score > ranked[1].score * self._confidence_threshold

    def _cache_pattern_selection(self, pattern: str, ranked: List[AgentCandidate]) -> None:
        size = self._settings.pattern_cache_size
        if size <= 0 or not self._has_clear_winner(ranked):
            return

        with self._state_lock:
            self._pattern_cache[pattern] = [(c.name, c.score) for c in ranked]
            self._pattern_cache.move_to_end(pattern)
            while len(self._pattern_cache) > size:
                self._pattern_cache.popitem(last=False)

    def _apply_progressive_scoring(
        self, candidates: List[AgentCandidate], request: Mapping[str, Any]
    ) -> List[AgentCandidate]:
        """Apply context multipliers, then history weights unless there is a clear winner.

        With more than two candidates, a candidate that already leads the
        runner-up by ``confidence_threshold`` after the context multipliers
        ends scoring early and history weights are skipped.
        """
        candidates = self._apply_context_multipliers(candidates, request)

        if len(candidates) > 2:
            ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
            if self._has_clear_winner(ranked):
                top_score = ranked[0].score
                with self._state_lock:
                    self._performance_metrics["early_terminations"] += 1
                self._logger.info(
                    "clear_winner_selected",
                    winners=[c.name for c in ranked if c.score >= top_score * TIE_TOLERANCE],
                )
                return ranked

        return self._apply_history_weights(candidates, request)

    def _apply_context_multipliers(
        self, candidates: List[AgentCandidate], request: Mapping[str, Any]
    ) -> List[AgentCandidate]:
        entity_types = {
            entity.get("type")
            for entity in request.get("context", {}).get("entities", [])
            if isinstance(entity, Mapping) and entity.get("type")
        }
        with self._state_lock:
            last_agent = (
                self._agent_selection_history[-1]["agent"] if self._agent_selection_history else None
            )

        for candidate in candidates:
            multiplier = 1.0
            for capability in _agent_capabilities(candidate.agent):
                if capability in entity_types:
                    multiplier *= ENTITY_CAPABILITY_MULTIPLIER
            if last_agent == candidate.name:
                multiplier *= CONTINUITY_MULTIPLIER
            candidate.score *= multiplier
            candidate.context_multiplier = multiplier
        return candidates

    def _apply_history_weights(
        self, candidates: List[AgentCandidate], request: Mapping[str, Any]
    ) -> List[AgentCandidate]:
        previous = [
            selection.get("agent")
            for selection in request.get("context", {}).get("previous_agents", [])
            if isinstance(selection, Mapping)
        ]
        if not previous:
            return candidates

        frequency: Dict[str, int] = {}
        for name in previous:
            frequency[name] = frequency.get(name, 0) + 1
        most_recent = list(reversed(previous))

        for candidate in candidates:
            weight = min(MAX_FREQUENCY_WEIGHT, frequency.get(candidate.name, 0) * FREQUENCY_WEIGHT_PER_SELECTION)
            if candidate.name in most_recent:
                weight += RECENCY_WEIGHT / (1 + most_recent.index(candidate.name))
            candidate.score += weight
            candidate.history_weight = weight
        return candidates

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _call_context(self, request_id: str, **extra: Any) -> Dict[str, Any]:
        context = {
            "conversation_id": self._conversation_id,
            "request_id": request_id,
            "timestamp": int(time.time()),
        }
        context.update(extra)
        return context

    def _submit(self, agent: Agent, request: Dict[str, Any], context: Dict[str, Any]) -> "Future[Any]":
        # Carry the correlation id into the worker thread
        return self._executor.submit(
            contextvars.copy_context().run, agent.process_request, request, context
        )

    def _await_response(self, agent_name: str, future: "Future[Any]", started: float) -> Dict[str, Any]:
        """Wait for an agent call within the configured timeout.

        Raises:
            AgentTimeoutError: If the agent does not answer in time
            OrchestrationError: If the agent returns something other than a dict
        """
        timeout = self._settings.agent_timeout_seconds
        try:
            response = future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            self._metrics.record_agent_invocation(agent_name, "timeout", time.perf_counter() - started)
            self._logger.error("agent_timeout", agent=agent_name, timeout_seconds=timeout)
            raise AgentTimeoutError(agent_name, timeout)
        except Exception:
            self._metrics.record_agent_invocation(agent_name, "exception", time.perf_counter() - started)
            raise

        if not isinstance(response, dict):
            self._metrics.record_agent_invocation(agent_name, "invalid", time.perf_counter() - started)
            raise OrchestrationError(
                f"Agent '{agent_name}' returned an invalid response",
                code="invalid_agent_response",
            )

        self._metrics.record_agent_invocation(
            agent_name, str(response.get("status", "unknown")), time.perf_counter() - started
        )
        return response

    def _invoke(
        self, agent_name: str, agent: Agent, request: Dict[str, Any], context: Dict[str, Any]
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        return self._await_response(agent_name, self._submit(agent, request, context), started)

    def _record_selection(self, candidate: AgentCandidate) -> None:
        with self._state_lock:
            self._agent_selection_history.append(
                {"agent": candidate.name, "score": candidate.score, "timestamp": int(time.time())}
            )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _route_request_to_agents(
        self, request: Dict[str, Any], candidates: List[AgentCandidate], request_id: str
    ) -> Dict[str, Any]:
        top = candidates[0]
        self._record_selection(top)

        try:
            response = self._invoke(top.name, top.agent, request, self._call_context(request_id))
        except AgentTimeoutError as exc:
            return error_envelope(exc.message, agent=top.name, code=exc.code)

        if _is_delegating(response):
            return self._handle_delegation(request, response, top.name, request_id)

        if request.get("aggregate_results") is True:
            return self._aggregate_results(request, candidates, response, request_id)

        return response

    def _resolve_delegate(self, agent_name: str) -> Optional[Agent]:
        agent = self._registry.get_agent(agent_name)
        if agent is not None or self._agent_factory is None:
            return agent

        try:
            agent = self._agent_factory.create_and_register_agent(agent_name)
        except Exception as exc:
            self._logger.warning("delegate_factory_failed", agent=agent_name, error=str(exc))
            return None

        self._logger.info("delegate_created_by_factory", agent=agent_name)
        return agent

    def _handle_delegation(
        self,
        request: Dict[str, Any],
        response: Dict[str, Any],
        origin: str,
        request_id: str,
    ) -> Dict[str, Any]:
        """Follow delegation hops until an agent answers without delegating.

        Returns:
            The final agent's response with ``delegated_from`` (the originally
            selected agent) and ``delegation_reason`` (the first hop's reason),
            or an error envelope carrying the response that could not be
            followed as ``original_response``
        """
        chain = [origin]
        current = response
        first_reason: Any = None

        try:
            while True:
                from_agent = str(current.get("agent") or chain[-1])
                to_agent = current.get("delegate_to")
                if not isinstance(to_agent, str):
                    to_agent = None
                reason = current.get("delegation_reason") or "Not specified"
                if first_reason is None:
                    first_reason = reason

                if not to_agent:
                    raise DelegationError(
                        f"Agent '{from_agent}' requested delegation without a target",
                        from_agent=from_agent,
                        original_response=current,
                        code="delegation_target_missing",
                    )
                if len(chain) - 1 >= self._settings.max_delegation_depth:
                    self._logger.warning("max_delegation_depth_reached", chain=chain)
                    raise DelegationError(
                        "Maximum delegation depth reached",
                        from_agent=from_agent,
                        to_agent=to_agent,
                        original_response=current,
                        code="delegation_depth_exceeded",
                    )
                if to_agent in chain:
                    raise DelegationError(
                        f"Delegation cycle detected at agent '{to_agent}'",
                        from_agent=from_agent,
                        to_agent=to_agent,
                        original_response=current,
                        code="delegation_cycle",
                    )

                delegate = self._resolve_delegate(to_agent)
                if delegate is None:
                    raise DelegationError(
                        f"Agent '{to_agent}' not found for delegation",
                        from_agent=from_agent,
                        to_agent=to_agent,
                        original_response=current,
                        code="delegate_not_found",
                    )

                hop = {"from": from_agent, "to": to_agent, "reason": reason, "timestamp": int(time.time())}
                with self._state_lock:
                    self._delegation_stack.append(hop)
                    stack_snapshot = list(self._delegation_stack)

                chain.append(to_agent)
                message = Message.create_delegation(
                    from_agent,
                    to_agent,
                    current.get("delegate_data", request.get("message")),
                    {
                        "original_request": request.get("message"),
                        "delegation_reason": reason,
                        "delegation_chain": list(chain),
                    },
                )
                self._logger.info("delegating_request", from_agent=from_agent, to_agent=to_agent, reason=reason)

                delegate_request = dict(request)
                delegate_request["delegation_message"] = message.to_dict()
                context = self._call_context(
                    request_id,
                    is_delegation=True,
                    delegation_depth=len(chain) - 1,
                    delegation_stack=stack_snapshot,
                )
                current = self._invoke(to_agent, delegate, delegate_request, context)
                self._metrics.record_delegation(from_agent, to_agent, "success")

                if not _is_delegating(current):
                    break
        except DelegationError as exc:
            self._metrics.record_delegation(exc.from_agent or origin, exc.to_agent or "", exc.code)
            return error_envelope(exc.message, original_response=exc.original_response)
        except AgentTimeoutError as exc:
            self._metrics.record_delegation(chain[-2] if len(chain) > 1 else origin, exc.agent_name, exc.code)
            return error_envelope(exc.message, agent=exc.agent_name, code=exc.code, delegated_from=origin)

        final = dict(current)
        final["delegated_from"] = origin
        final["delegation_reason"] = first_reason
        if len(chain) > 2:
            final["delegation_chain"] = chain
        return final

    def _aggregate_results(
        self,
        request: Dict[str, Any],
        candidates: List[AgentCandidate],
        first_response: Dict[str, Any],
        request_id: str,
    ) -> Dict[str, Any]:
        """Collect data from every candidate, best first.

        The top candidate's response is reused; the rest are called
        concurrently with ``is_aggregation`` set in their context. A failing
        or timed-out agent contributes an error entry to
        ``individual_responses`` and nothing to ``aggregated_data``.
        """
        limit = self._settings.max_aggregate_agents
        selected = candidates[:limit] if limit else candidates

        started = time.perf_counter()
        pending = [
            (
                candidate,
                self._submit(
                    candidate.agent,
                    request,
                    self._call_context(request_id, is_aggregation=True),
                ),
            )
            for candidate in selected[1:]
        ]

        responses: Dict[str, Dict[str, Any]] = {selected[0].name: first_response}
        for candidate, future in pending:
            try:
                responses[candidate.name] = self._await_response(candidate.name, future, started)
            except OrchestrationError as exc:
                responses[candidate.name] = error_envelope(exc.message, agent=candidate.name, code=exc.code)
            except Exception as exc:
                self._logger.error("aggregation_agent_failed", agent=candidate.name, error=str(exc))
                responses[candidate.name] = error_envelope(str(exc), agent=candidate.name)

        aggregated_data = {
            name: response["data"]
            for name, response in responses.items()
            if response.get("status", "success") == "success" and "data" in response
        }

        self._logger.info("results_aggregated", agents=list(responses), with_data=list(aggregated_data))
        return to_envelope(
            SuccessResponse(
                message="Aggregated response from multiple agents",
                agent=ORCHESTRATOR_AGENT,
                aggregated_data=aggregated_data,
                individual_responses=responses,
            )
        )

    def _update_context_from_response(
        self, request: Mapping[str, Any], response: Dict[str, Any], request_id: str
    ) -> None:
        conversation_id = self._conversation_id
        if not conversation_id:
            return

        entities = response.get("entities")
        if isinstance(entities, list):
            for entity in entities:
                if isinstance(entity, Mapping) and entity.get("type") and entity.get("id"):
                    self._context_manager.track_entity(
                        entity["type"],
                        entity["id"],
                        entity.get("metadata") or {},
                        conversation_id,
                    )

        updates = response.get("context_updates")
        if isinstance(updates, Mapping):
            for key, value in updates.items():
                self._context_manager.add_context(
                    key, value, ContextScope.CONVERSATION, conversation_id
                )

        agent_name = str(response.get("agent") or ORCHESTRATOR_AGENT)
        user_message = Message.create_request(
            "user", agent_name, request.get("message"), {"request_id": request_id}
        )
        reply = Message.create_response(
            agent_name,
            "user",
            response.get("message") or response,
            request_id,
            {"status": response.get("status")},
        )
        self._context_manager.add_message_to_history(user_message, conversation_id)
        self._context_manager.add_message_to_history(reply, conversation_id)

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_conversation_id() -> str:
        return f"conv_{uuid4().hex}"

    @staticmethod
    def _generate_request_id() -> str:
        return f"req_{uuid4().hex}"

    def create_new_conversation(self) -> str:
        """Start and activate a new conversation, resetting selection bookkeeping."""
        with self._state_lock:
            self._conversation_id = self._generate_conversation_id()
            self._agent_selection_history = []
            self._delegation_stack = []
        return self._conversation_id

    def set_conversation_id(self, conversation_id: str) -> None:
        self._conversation_id = conversation_id

    def get_conversation_id(self) -> Optional[str]:
        return self._conversation_id

    def clear_conversation(self) -> bool:
        """Clear the active conversation's context and selection bookkeeping.

        Returns:
            The ContextManager's result, or False if no conversation is active
        """
        if not self._conversation_id:
            return False
        with self._state_lock:
            self._agent_selection_history = []
            self._delegation_stack = []
        return self._context_manager.clear_conversation_context(self._conversation_id)

    def get_agent_selection_history(self) -> List[Dict[str, Any]]:
        with self._state_lock:
            return [dict(selection) for selection in self._agent_selection_history]

    def get_context_manager(self) -> ContextManager:
        return self._context_manager

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        with self._state_lock:
            delegation_stack = [dict(hop) for hop in self._delegation_stack]
        return {
            "conversation_id": self._conversation_id,
            "agent_selection_history": self.get_agent_selection_history(),
            "delegation_stack": delegation_stack,
            "context_stats": self._context_manager.get_context_stats(),
            "performance_metrics": self.get_performance_metrics(),
        }

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Return selection counters plus derived averages and rates."""
        with self._state_lock:
            metrics = dict(self._performance_metrics)
            times = list(metrics["selection_times"])
        metrics["selection_times"] = times

        if times:
            metrics["avg_selection_time"] = sum(times) / len(times)
            metrics["max_selection_time"] = max(times)
            metrics["min_selection_time"] = min(times)

        cache_attempts = metrics["pattern_cache_hits"] + metrics["pattern_cache_misses"]
        metrics["pattern_cache_hit_rate"] = (
            metrics["pattern_cache_hits"] / cache_attempts if cache_attempts else 0.0
        )
        calculations = metrics["early_terminations"] + metrics["full_calculations"]
        metrics["early_termination_rate"] = (
            metrics["early_terminations"] / calculations if calculations else 0.0
        )
        return metrics

    def reset_performance_metrics(self) -> "AgentOrchestrator":
        with self._state_lock:
            self._performance_metrics = {
                "pattern_cache_hits": 0,
                "pattern_cache_misses": 0,
                "early_terminations": 0,
                "full_calculations": 0,
                "selection_times": [],
            }
        return self

    def clear_pattern_cache(self) -> "AgentOrchestrator":
        """Forget every cached clear-winner selection."""
        with self._state_lock:
            self._pattern_cache.clear()
        return self

    def set_confidence_threshold(self, threshold: float) -> "AgentOrchestrator":
        """Set the clear-winner ratio; values below 1.0 are raised to 1.0."""
        self._confidence_threshold = max(1.0, float(threshold))
        return self

    def get_confidence_threshold(self) -> float:
        return self._confidence_threshold

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop the agent call thread pool without waiting for hung agents."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "AgentOrchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
