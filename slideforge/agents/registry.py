from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping

from ..orchestration.errors import RegistryError
from ..orchestration.graph import TaskGraph
from ..schemas.agents import AgentMetadata
from .base import BaseAgent
from .contracts import AgentContract
from .enhancers import DataVizPlannerAgent, LiveWidgetPlannerAgent, MediaFinderAgent, SpeakerNotesAgent
from .finalization import AudienceAdapterAgent, ExecutiveSummaryAgent
from .research import ResearcherAgent
from .slidewriter import SlidewriterAgent
from .structure import StructurerAgent
from .validators import AccessibilityLinterAgent, CopyTightenerAgent, FactCheckerAgent, ReadabilityAnalyzerAgent


class AgentRegistry:
    """Immutable mapping from task-node id to agent and contract.

    Instances are fully built in the constructor; nothing can be registered
    afterwards.
    """

    def __init__(self, agents: Iterable[BaseAgent]) -> None:
        agent_map: dict[str, BaseAgent] = {}
        contracts: dict[str, AgentContract] = {}
        for agent in agents:
            if agent.name in agent_map:
                raise RegistryError(f"Agent {agent.name} registered twice")
            agent_map[agent.name] = agent
            contracts[agent.name] = AgentContract(
                metadata=AgentMetadata(
                    name=agent.name,
                    description=agent.description,
                ),
                input_model=agent.input_model,
                output_model=agent.output_model,
            )
        self._agents: Mapping[str, BaseAgent] = MappingProxyType(agent_map)
        self._contracts: Mapping[str, AgentContract] = MappingProxyType(contracts)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._agents

    @property
    def agents(self) -> Mapping[str, BaseAgent]:
        return self._agents

    def get(self, node_id: str) -> BaseAgent:
        try:
            return self._agents[node_id]
        except KeyError as exc:
            raise RegistryError(f"No agent registered for node {node_id}") from exc

    def contract(self, node_id: str) -> AgentContract:
        try:
            return self._contracts[node_id]
        except KeyError as exc:
            raise RegistryError(f"No contract registered for node {node_id}") from exc

    def verify(self, graph: TaskGraph) -> None:
        """Require a one-to-one match between registered agents and graph nodes."""
        missing = [node_id for node_id in graph.node_ids if node_id not in self._agents]
        if missing:
            raise RegistryError(f"Registry does not cover task nodes: {', '.join(missing)}")
        extra = sorted(name for name in self._agents if name not in graph)
        if extra:
            raise RegistryError(f"Registry holds agents with no task node: {', '.join(extra)}")

    def describe(self) -> dict[str, str]:
        return {name: agent.description for name, agent in self._agents.items()}


def default_agents() -> list[BaseAgent]:
    return [
        ResearcherAgent(),
        StructurerAgent(),
        SlidewriterAgent(),
        FactCheckerAgent(),
        AccessibilityLinterAgent(),
        ReadabilityAnalyzerAgent(),
        CopyTightenerAgent(),
        DataVizPlannerAgent(),
        MediaFinderAgent(),
        SpeakerNotesAgent(),
        LiveWidgetPlannerAgent(),
        ExecutiveSummaryAgent(),
        AudienceAdapterAgent(),
    ]


def default_registry() -> AgentRegistry:
    return AgentRegistry(default_agents())
