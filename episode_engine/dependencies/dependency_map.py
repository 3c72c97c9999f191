"""
Dependency Map
==============

Static declarations of which qualification facts each artifact kind
depends on, plus the upstream document graph between artifact kinds.

GRAPH DIRECTION:
================
Edges point from an upstream kind to the kind built on top of it, so
nx.descendants() answers "what is affected downstream".

Malformed declarations fail fast at construction.
"""

from __future__ import annotations
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
import hashlib
import json
import networkx as nx

from ..qualifications.resolver import (
    FACT_KEYS, UNIT_COUNT, UNIT_DURATION, RUNTIME_LOW, RUNTIME_HIGH
)


_COUNT_AND_DURATION = (UNIT_COUNT, UNIT_DURATION)
_RUNTIME = (RUNTIME_LOW, RUNTIME_HIGH)

DEFAULT_FACT_DEPENDENCIES: Dict[str, Tuple[str, ...]] = {
    "pitch_document": _COUNT_AND_DURATION,
    "season_arc": _COUNT_AND_DURATION,
    "unit_grid": _COUNT_AND_DURATION,
    "vertical_market_sheet": _COUNT_AND_DURATION,
    "season_scripts_bundle": _COUNT_AND_DURATION,
    "series_overview": (UNIT_COUNT,),
    "future_seasons_map": (UNIT_COUNT,),
    "character_bible": (UNIT_COUNT,),
    "format_rules": (UNIT_DURATION,),
    "pilot_script": (UNIT_DURATION,),
    "pilot_outline": (UNIT_DURATION,),
    "feature_outline": _RUNTIME,
    "screenplay_draft": _RUNTIME,
    "long_synopsis": _RUNTIME,
    "idea_brief": (),
}

DEFAULT_UPSTREAM: Dict[str, Tuple[str, ...]] = {
    "idea_brief": (),
    "logline": ("idea_brief",),
    "one_pager": ("idea_brief", "logline"),
    "long_synopsis": ("one_pager", "logline"),
    "treatment": ("long_synopsis", "character_bible"),
    "character_bible": ("idea_brief", "logline"),
    "feature_outline": ("treatment", "character_bible"),
    "screenplay_draft": ("feature_outline", "character_bible", "treatment"),
    "series_overview": ("idea_brief", "logline"),
    "season_arc": ("series_overview", "character_bible"),
    "unit_grid": ("season_arc", "character_bible"),
    "pilot_outline": ("unit_grid", "character_bible"),
    "pilot_script": ("pilot_outline", "character_bible"),
    "format_rules": ("idea_brief",),
    "vertical_market_sheet": ("idea_brief", "concept_brief"),
    "season_scripts_bundle": ("unit_grid", "pilot_script", "character_bible"),
    "future_seasons_map": ("season_arc", "series_overview"),
    "budget_topline": ("treatment",),
    "finance_plan": ("budget_topline",),
    "packaging_targets": ("treatment", "character_bible"),
    "production_plan": ("budget_topline",),
    "delivery_requirements": (),
    "story_arc_plan": ("premise_brief", "research_dossier"),
    "shoot_plan": ("story_arc_plan",),
}


class DependencyDeclarationError(ValueError):
    """Raised at construction when a dependency declaration is malformed."""


class DependencyMap:
    """
    Artifact kind -> fact keys, and artifact kind -> upstream kinds.

    GUARANTEES:
    - depends_on() is a pure lookup; unknown kinds depend on nothing
    - the upstream graph is acyclic
    - map_version changes whenever any declaration changes
    """

    def __init__(
        self,
        fact_dependencies: Optional[Mapping[str, Iterable[str]]] = None,
        upstream: Optional[Mapping[str, Iterable[str]]] = None,
        known_fact_keys: FrozenSet[str] = FACT_KEYS
    ):
        fact_dependencies = DEFAULT_FACT_DEPENDENCIES if fact_dependencies is None else fact_dependencies
        upstream = DEFAULT_UPSTREAM if upstream is None else upstream

        self._facts: Dict[str, FrozenSet[str]] = {}
        for kind, keys in fact_dependencies.items():
            _check_kind(kind)
            if isinstance(keys, str):
                raise DependencyDeclarationError(
                    f"Fact keys for {kind!r} must be a collection, got a string"
                )
            key_set = frozenset(keys)
            unknown = sorted(k for k in key_set if k not in known_fact_keys)
            if unknown:
                raise DependencyDeclarationError(
                    f"Artifact kind {kind!r} declares unknown fact keys: {unknown}"
                )
            self._facts[kind] = key_set

        self._graph = nx.DiGraph()
        for kind, parents in upstream.items():
            _check_kind(kind)
            if isinstance(parents, str):
                raise DependencyDeclarationError(
                    f"Upstream kinds for {kind!r} must be a collection, got a string"
                )
            self._graph.add_node(kind)
            for parent in parents:
                _check_kind(parent)
                if parent == kind:
                    raise DependencyDeclarationError(f"Artifact kind {kind!r} depends on itself")
                self._graph.add_edge(parent, kind)

        if not nx.is_directed_acyclic_graph(self._graph):
            cycle = nx.find_cycle(self._graph)
            raise DependencyDeclarationError(f"Upstream declarations contain a cycle: {cycle}")

        self._version = self._compute_version()

    # -------------------------------------------------------------------------
    # Fact dependencies
    # -------------------------------------------------------------------------

    def depends_on(self, kind: str) -> FrozenSet[str]:
        """Fact keys the artifact kind depends on. Unknown kinds: empty."""
        return self._facts.get(kind, frozenset())

    def affected_artifact_kinds(self, changed_keys: Iterable[str]) -> FrozenSet[str]:
        """Kinds whose declared fact keys intersect the changed keys."""
        changed = frozenset(changed_keys)
        return frozenset(kind for kind, keys in self._facts.items() if keys & changed)

    @property
    def artifact_kinds(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self._facts) | set(self._graph.nodes)))

    # -------------------------------------------------------------------------
    # Upstream graph
    # -------------------------------------------------------------------------

    def upstream_kinds(self, kind: str) -> Tuple[str, ...]:
        """Direct upstream kinds, in declaration-independent order."""
        if kind not in self._graph:
            return ()
        return tuple(sorted(self._graph.predecessors(kind)))

    def all_upstream_kinds(self, kind: str) -> FrozenSet[str]:
        if kind not in self._graph:
            return frozenset()
        return frozenset(nx.ancestors(self._graph, kind))

    def downstream_kinds(self, kind: str) -> FrozenSet[str]:
        """Every kind built, directly or transitively, on top of kind."""
        if kind not in self._graph:
            return frozenset()
        return frozenset(nx.descendants(self._graph, kind))

    def generation_order(self) -> List[str]:
        """Kinds ordered so that every upstream kind precedes its dependents."""
        return list(nx.lexicographical_topological_sort(self._graph))

    @property
    def map_version(self) -> str:
        return self._version

    def _compute_version(self) -> str:
        payload = {
            "facts": {k: sorted(v) for k, v in sorted(self._facts.items())},
            "upstream": sorted([list(edge) for edge in self._graph.edges]),
        }
        digest = hashlib.sha256(
            json.dumps(payload, sort_keys=True).encode("utf-8")
        ).hexdigest()
        return f"dm_{digest[:12]}"


def _check_kind(kind: object):
    if not isinstance(kind, str) or not kind.strip():
        raise DependencyDeclarationError(
            f"Artifact kind must be a non-empty string, got {kind!r}"
        )
