"""
Generation Providers

A provider supplies new concepts, cross connections and (optionally) insights
for a growing graph. Providers are registered on the expansion engine under a
string id; no provider is registered by default.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional, Set

from openai import AsyncOpenAI

from config import settings
from knowledge_graph.errors import ValidationError, ProviderError
from knowledge_graph.models import Graph, Node, Edge, normalize_name
from knowledge_graph.prompts import SYSTEM_PROMPT, CONCEPTS_PROMPT, CONNECTIONS_PROMPT, INSIGHTS_PROMPT

logger = logging.getLogger(__name__)

REQUIRED_CAPABILITIES = ("generate_concepts", "generate_connections")


@dataclass
class ConceptCandidate:
    name: str
    confidence: Optional[float] = None
    statement: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionCandidate:
    source: str
    target: str
    weight: Optional[float] = None
    statement: Optional[str] = None


@dataclass
class Insight:
    type: str
    description: str
    concepts: List[str] = field(default_factory=list)
    depth: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationContext:
    """What the engine knows when it asks a provider for more"""
    depth: int
    strategy: str = "balanced"
    parent: Optional[Node] = None
    exclude_names: Set[str] = field(default_factory=set)
    new_nodes: List[Node] = field(default_factory=list)
    new_edges: List[Edge] = field(default_factory=list)
    job_id: Optional[str] = None


class GenerationProvider(ABC):
    """Base class for generation backends"""

    @abstractmethod
    async def generate_concepts(self, graph: Graph, count: int, context: GenerationContext) -> List[ConceptCandidate]:
        """Up to count new concepts related to context.parent"""

    @abstractmethod
    async def generate_connections(self, graph: Graph, count: int, context: GenerationContext) -> List[ConnectionCandidate]:
        """Up to count edges touching context.new_nodes"""

    async def generate_insights(self, graph: Graph, context: GenerationContext) -> List[Insight]:
        return []


def validate_provider(provider: Any) -> None:
    """Raise ValidationError unless provider exposes every required capability"""
    missing = [name for name in REQUIRED_CAPABILITIES if not callable(getattr(provider, name, None))]
    if missing:
        raise ValidationError(f"Provider is missing required capabilities: {', '.join(missing)}")


class MockGenerationProvider(GenerationProvider):
    """
    Deterministic provider for development and tests.

    For a parent named X it proposes "X Analysis", "X Theory" and
    "X Framework" with descending confidence.
    """

    SUFFIXES = ("Analysis", "Theory", "Framework")
    CONFIDENCES = (0.9, 0.8, 0.7)

    async def generate_concepts(self, graph: Graph, count: int, context: GenerationContext) -> List[ConceptCandidate]:
        if context.parent is None or count <= 0:
            return []

        candidates = []
        for suffix, confidence in zip(self.SUFFIXES, self.CONFIDENCES):
            name = f"{context.parent.name} {suffix}"
            if normalize_name(name) in context.exclude_names:
                continue
            candidates.append(ConceptCandidate(
                name=name,
                confidence=confidence,
                statement=f"{name} extends {context.parent.name}",
            ))
        return candidates[:count]

    async def generate_connections(self, graph: Graph, count: int, context: GenerationContext) -> List[ConnectionCandidate]:
        # Chain the new nodes in creation order
        links = []
        for left, right in zip(context.new_nodes, context.new_nodes[1:]):
            if len(links) >= count:
                break
            links.append(ConnectionCandidate(source=left.id, target=right.id, weight=0.5))
        return links

    async def generate_insights(self, graph: Graph, context: GenerationContext) -> List[Insight]:
        if not context.new_nodes:
            return []

        names = [node.name for node in context.new_nodes]
        return [
            Insight(
                type="cluster",
                description=f"{len(names)} related concepts emerged at depth {context.depth}",
                concepts=names[:5],
                depth=context.depth,
            ),
            Insight(
                type="gap",
                description=f"Potential gap between '{names[0]}' and '{names[-1]}'",
                concepts=[names[0], names[-1]],
                depth=context.depth,
            ),
        ]


def _clean_json_response(response: str) -> str:
    """Strip markdown fences from a model response"""
    response = response.strip()
    if response.startswith("```json"):
        response = response[7:].strip()
    if response.startswith("```"):
        response = response[3:].strip()
    if response.endswith("```"):
        response = response[:-3].strip()
    return response


def _clamp_unit(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, number))


class OpenAIGenerationProvider(GenerationProvider):
    """
    Chat-model backed provider.

    Every call asks for a JSON object and tolerates malformed items by
    dropping them; a malformed response as a whole raises ProviderError.
    """

    MAX_LISTED_CONCEPTS = 60

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        temperature: float = 0.7,
    ):
        self.model = model or settings.GENERATION_MODEL
        self.client = client or AsyncOpenAI(api_key=api_key or settings.OPENAI_API_KEY)
        self.temperature = temperature

    async def _complete_json(self, prompt: str) -> Dict[str, Any]:
        logger.debug(f"Requesting {self.model} completion ({len(prompt)} prompt chars)")
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT.strip()},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=self.temperature,
        )
        content = response.choices[0].message.content or "{}"
        try:
            result = json.loads(_clean_json_response(content))
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Model returned invalid JSON: {exc}", provider_id="openai") from exc
        if not isinstance(result, dict):
            raise ProviderError("Model returned a non-object JSON payload", provider_id="openai")
        return result

    def _listing(self, nodes) -> str:
        nodes = list(nodes)[: self.MAX_LISTED_CONCEPTS]
        return "\n".join(f"- {node.id}: {node.name}" for node in nodes) or "- (none)"

    async def generate_concepts(self, graph: Graph, count: int, context: GenerationContext) -> List[ConceptCandidate]:
        if context.parent is None or count <= 0:
            return []

        existing = "\n".join(f"- {name}" for name in graph.node_names()[: self.MAX_LISTED_CONCEPTS])
        prompt = CONCEPTS_PROMPT.format(
            existing_concepts=existing or "- (none)",
            count=count,
            parent_name=context.parent.name,
            strategy=context.strategy,
        )
        result = await self._complete_json(prompt)

        candidates = []
        for item in result.get("concepts", []):
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                continue
            name = " ".join(str(item["name"]).split())
            if normalize_name(name) in context.exclude_names:
                continue
            candidates.append(ConceptCandidate(
                name=name,
                confidence=_clamp_unit(item.get("confidence")),
                statement=item.get("statement"),
            ))
        return candidates[:count]

    async def generate_connections(self, graph: Graph, count: int, context: GenerationContext) -> List[ConnectionCandidate]:
        if count <= 0 or not context.new_nodes:
            return []

        new_ids = {node.id for node in context.new_nodes}
        prompt = CONNECTIONS_PROMPT.format(
            new_concepts=self._listing(context.new_nodes),
            existing_concepts=self._listing(n for n in graph.nodes.values() if n.id not in new_ids),
            count=count,
        )
        result = await self._complete_json(prompt)

        links = []
        for item in result.get("connections", []):
            if not isinstance(item, dict):
                continue
            source, target = str(item.get("source", "")), str(item.get("target", ""))
            if source not in graph or target not in graph:
                continue
            links.append(ConnectionCandidate(
                source=source,
                target=target,
                weight=_clamp_unit(item.get("weight")),
                statement=item.get("statement"),
            ))
        return links[:count]

    async def generate_insights(self, graph: Graph, context: GenerationContext) -> List[Insight]:
        if not context.new_nodes:
            return []

        prompt = INSIGHTS_PROMPT.format(
            depth=context.depth,
            new_concepts="\n".join(f"- {node.name}" for node in context.new_nodes[: self.MAX_LISTED_CONCEPTS]),
        )
        result = await self._complete_json(prompt)

        insights = []
        for item in result.get("insights", []):
            if not isinstance(item, dict) or not item.get("description"):
                continue
            insights.append(Insight(
                type=str(item.get("type") or "observation"),
                description=str(item["description"]),
                concepts=[str(c) for c in item.get("concepts") or []],
                depth=context.depth,
            ))
        return insights
