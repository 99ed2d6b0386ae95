"""Tests for graph schema models."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from stitch.core.graph_schema import (
    ExecutionGraph,
    ExecutionNode,
    InputSchema,
    NodeType,
    VisualGraph,
)


class TestInputSchema:
    def test_has_default_only_when_declared(self):
        assert InputSchema(type="string", required=True).has_default is False
        assert InputSchema(type="number", default=5).has_default is True

    def test_explicit_null_default_counts(self):
        schema = InputSchema.model_validate({"type": "object", "default": None})
        assert schema.has_default is True
        assert schema.default is None


class TestVisualGraph:
    def test_presentation_fields_are_kept(self):
        graph = VisualGraph.model_validate(
            {
                "nodes": [
                    {
                        "id": "A",
                        "type": "Worker",
                        "position": {"x": 10, "y": 20},
                        "style": {"background": "#fff"},
                        "parentNode": "S",
                        "selected": True,
                        "data": {"worker_type": "echo", "icon": "bolt"},
                    }
                ],
                "edges": [],
            }
        )
        node = graph.nodes[0]
        assert node.parent_node == "S"
        assert node.style == {"background": "#fff"}
        assert node.model_extra == {"selected": True}
        assert node.data.model_extra == {"icon": "bolt"}

    def test_entity_movement_parsed_from_camel_case(self):
        graph = VisualGraph.model_validate(
            {
                "nodes": [
                    {
                        "id": "A",
                        "type": "Worker",
                        "data": {
                            "worker_type": "echo",
                            "entityMovement": {
                                "onSuccess": {"targetSectionId": "done", "completeAs": "success"},
                                "onFailure": {
                                    "targetSectionId": "lost",
                                    "completeAs": "failure",
                                    "setEntityType": "churned",
                                },
                            },
                        },
                    }
                ]
            }
        )
        movement = graph.nodes[0].data.entity_movement
        assert movement.on_success.target_section_id == "done"
        assert movement.on_failure.set_entity_type == "churned"

    def test_unknown_node_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            VisualGraph.model_validate({"nodes": [{"id": "A", "type": "Loop"}]})

    def test_empty_node_id_rejected(self):
        with pytest.raises(PydanticValidationError):
            VisualGraph.model_validate({"nodes": [{"id": "", "type": "Worker"}]})

    def test_edge_mapping_defaults_to_empty(self):
        graph = VisualGraph.model_validate(
            {
                "edges": [
                    {"id": "e1", "source": "A", "target": "B"},
                    {"id": "e2", "source": "A", "target": "B", "data": {"label": "x"}},
                    {"id": "e3", "source": "A", "target": "B", "data": {"mapping": {"p": "q"}}},
                ]
            }
        )
        assert [e.mapping for e in graph.edges] == [{}, {}, {"p": "q"}]

    def test_canonical_equal_for_equal_graphs(self, builder):
        first = builder.worker("A").worker("B").edge("A", "B").build()
        second = VisualGraph.model_validate(first.model_dump(mode="json", by_alias=True))
        assert first.canonical() == second.canonical()


class TestExecutionGraph:
    def _graph(self) -> ExecutionGraph:
        nodes = {
            node_id: ExecutionNode(id=node_id, type=NodeType.WORKER, worker_type="echo")
            for node_id in ("A", "B", "C", "D")
        }
        return ExecutionGraph(
            nodes=nodes,
            adjacency={"A": ["B", "C"], "B": ["D"], "C": ["D"], "D": []},
            edge_data={"A->B": {"text": "output.text"}},
            entry_nodes=["A"],
            terminal_nodes=["D"],
        )

    def test_parents_follow_edge_order(self):
        graph = self._graph()
        assert graph.parents("D") == ["B", "C"]
        assert graph.parents("A") == []

    def test_mapping_lookup(self):
        graph = self._graph()
        assert graph.mapping_for("A", "B") == {"text": "output.text"}
        assert graph.mapping_for("A", "C") == {}

    def test_is_terminal(self):
        graph = self._graph()
        assert graph.is_terminal("D")
        assert not graph.is_terminal("A")

    def test_upstream_index_rebuilt_after_json_round_trip(self):
        graph = self._graph()
        restored = ExecutionGraph.model_validate(json.loads(graph.model_dump_json()))
        assert restored.parents("D") == ["B", "C"]
        assert restored == graph

    def test_parallel_levels_and_critical_path(self):
        graph = self._graph()
        assert graph.parallel_levels() == [["A"], ["B", "C"], ["D"]]
        path = graph.critical_path()
        assert path[0] == "A" and path[-1] == "D" and len(path) == 3

    def test_graph_is_frozen(self):
        graph = self._graph()
        with pytest.raises(PydanticValidationError):
            graph.entry_nodes = ["B"]
