"""Tests for graph validation.

Tests cover:
- Cycle detection (including disconnected components and self loops)
- Worker type checks against the registry
- Strict required-input enforcement
- Edge mapping referential integrity
- Splitter/Collector pairing
- Entity movement targets
- Structural problems (duplicate ids, dangling edges)
"""

from __future__ import annotations

import pytest

from stitch.core.graph_schema import NodeType
from stitch.core.validation import (
    build_adjacency,
    to_networkx,
    validate_graph,
    validate_splitter_collector_pairs,
)


def _types(errors) -> list[str]:
    return [e.type for e in errors]


class TestValidGraphs:
    def test_linear_graph_is_valid(self, builder, registry):
        graph = builder.worker("A").worker("B").worker("C").chain("A", "B", "C").build()
        assert validate_graph(graph, registry) == []

    def test_empty_graph_is_valid(self, builder, registry):
        assert validate_graph(builder.build(), registry) == []

    def test_none_graph_is_programmer_error(self, registry):
        with pytest.raises(TypeError):
            validate_graph(None, registry)


class TestCycleDetection:
    def test_three_node_cycle(self, builder, registry):
        graph = (
            builder.worker("A").worker("B").worker("C").chain("A", "B", "C").edge("C", "A").build()
        )
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["cycle"]
        assert errors[0].node == "A"
        assert "A -> B -> C -> A" in errors[0].message

    def test_cycle_in_disconnected_component(self, builder, registry):
        graph = (
            builder.worker("X")
            .worker("Y")
            .worker("P")
            .worker("Q")
            .edge("X", "Y")
            .edge("P", "Q")
            .edge("Q", "P")
            .build()
        )
        errors = [e for e in validate_graph(graph, registry) if e.type == "cycle"]
        assert len(errors) == 1
        assert errors[0].node == "P"

    def test_self_loop(self, builder, registry):
        graph = builder.worker("A").edge("A", "A").build()
        assert _types(validate_graph(graph, registry)) == ["cycle"]

    def test_diamond_is_not_a_cycle(self, builder, registry):
        graph = (
            builder.worker("A")
            .worker("B")
            .worker("C")
            .worker("D")
            .edge("A", "B")
            .edge("A", "C")
            .edge("B", "D")
            .edge("C", "D")
            .build()
        )
        assert validate_graph(graph, registry) == []

    def test_edges_through_sections_are_ignored(self, builder, registry):
        graph = builder.worker("A").section("S").edge("A", "S").edge("S", "A").build()
        assert validate_graph(graph, registry) == []


class TestWorkerTypes:
    def test_unknown_worker_type(self, builder, registry):
        graph = builder.worker("A", worker_type="nope").build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["invalid_worker"]
        assert errors[0].node == "A"
        assert errors[0].field == "nope"
        assert "nope" in errors[0].message

    def test_worker_without_type_needs_webhook_url(self, builder, registry):
        graph = builder.node("A", "Worker").build()
        assert _types(validate_graph(graph, registry)) == ["invalid_worker"]

    def test_worker_with_webhook_url_is_valid(self, builder, registry):
        graph = builder.node("A", "Worker", config={"webhook_url": "http://hook.test"}).build()
        assert validate_graph(graph, registry) == []


class TestRequiredInputs:
    def test_bare_edge_does_not_satisfy_required_input(self, builder, registry):
        graph = builder.worker("A").worker("B", worker_type="minimax").edge("A", "B").build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["missing_input"]
        assert errors[0].node == "B"
        assert errors[0].field == "visual_prompt"

    def test_explicit_mapping_satisfies_required_input(self, builder, registry):
        graph = (
            builder.worker("A")
            .worker("B", worker_type="minimax")
            .edge("A", "B", mapping={"visual_prompt": "output.text"})
            .build()
        )
        assert validate_graph(graph, registry) == []

    def test_declared_default_satisfies_required_input(self, builder, registry):
        graph = (
            builder.worker("A")
            .worker(
                "B",
                worker_type="minimax",
                inputs={"visual_prompt": {"type": "string", "required": True, "default": "a cat"}},
            )
            .edge("A", "B")
            .build()
        )
        assert validate_graph(graph, registry) == []

    def test_entry_node_required_input(self, builder, registry):
        graph = builder.worker("A", worker_type="claude").build()
        errors = validate_graph(graph, registry)
        assert [(e.type, e.field) for e in errors] == [("missing_input", "prompt")]


class TestEdgeMappings:
    def test_mapping_to_undeclared_input(self, builder, registry):
        graph = builder.worker("A").worker("B").edge("A", "B", mapping={"bogus": "text"}).build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["invalid_mapping"]
        assert errors[0].field == "bogus"

    def test_source_path_must_match_declared_output(self, builder, registry):
        graph = (
            builder.worker("A").worker("B").edge("A", "B", mapping={"text": "output.nope"}).build()
        )
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["invalid_mapping"]
        assert "nope" in errors[0].message

    def test_output_prefix_is_optional(self, builder, registry):
        graph = builder.worker("A").worker("B").edge("A", "B", mapping={"text": "text"}).build()
        assert validate_graph(graph, registry) == []

    @pytest.mark.parametrize("path", ["", "  ", "a..b", "output."])
    def test_malformed_source_path(self, builder, registry, path):
        graph = builder.worker("A").worker("B").edge("A", "B", mapping={"text": path}).build()
        assert "invalid_mapping" in _types(validate_graph(graph, registry))

    def test_undeclared_schemas_are_not_checked(self, builder, registry):
        graph = (
            builder.splitter("S")
            .worker("W")
            .collector("C")
            .edge("S", "W", mapping={"text": "anything.at.all"})
            .edge("W", "C")
            .build()
        )
        assert validate_graph(graph, registry) == []


class TestSplitterCollector:
    def test_splitter_without_collector(self, builder, registry):
        graph = builder.splitter("S").worker("W").edge("S", "W").build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["splitter_collector_mismatch"]
        assert errors[0].node == "S"

    def test_splitter_without_downstream(self, builder, registry):
        graph = builder.splitter("S").build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["splitter_collector_mismatch"]
        assert "no downstream" in errors[0].message

    def test_collector_without_upstream(self, builder, registry):
        graph = builder.collector("C").build()
        assert _types(validate_graph(graph, registry)) == ["splitter_collector_mismatch"]

    def test_collector_reached_through_chain(self, builder, registry):
        graph = (
            builder.splitter("S")
            .worker("W1")
            .worker("W2")
            .collector("C")
            .chain("S", "W1", "W2", "C")
            .build()
        )
        assert validate_graph(graph, registry) == []

    def test_collector_on_sibling_branch_does_not_count(self, builder, registry):
        graph = (
            builder.splitter("S")
            .worker("W")
            .worker("X")
            .collector("C")
            .edge("S", "W")
            .edge("X", "C")
            .build()
        )
        errors = validate_splitter_collector_pairs(graph)
        assert [e.node for e in errors] == ["S"]
        assert "does not connect to any Collector" in errors[0].message

    def test_section_does_not_bridge_splitter_to_collector(self, builder, registry):
        graph = builder.splitter("S").section("Z").collector("C").chain("S", "Z", "C").build()
        assert sorted(e.node for e in validate_splitter_collector_pairs(graph)) == ["C", "S"]

    def test_networkx_view_carries_node_types(self, builder):
        G = to_networkx(builder.splitter("S").section("Z").collector("C").chain("S", "Z", "C").build())
        assert dict(G.nodes(data="type")) == {"S": NodeType.SPLITTER, "C": NodeType.COLLECTOR}
        assert G.number_of_edges() == 0


class TestEntityMovement:
    def _movement(self, target: str) -> dict:
        return {"onSuccess": {"targetSectionId": target, "completeAs": "success"}}

    def test_target_must_be_a_section(self, builder, registry):
        graph = builder.worker("A", entityMovement=self._movement("missing")).build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["invalid_entity_movement"]
        assert errors[0].field == "on_success"

    def test_existing_section_target(self, builder, registry):
        graph = builder.section("done").worker("A", entityMovement=self._movement("done")).build()
        assert validate_graph(graph, registry) == []


class TestStructure:
    def test_duplicate_node_ids(self, builder, registry):
        graph = builder.worker("A").worker("A").build()
        assert "duplicate_node" in _types(validate_graph(graph, registry))

    def test_dangling_edge(self, builder, registry):
        graph = builder.worker("A").edge("A", "ghost").build()
        errors = validate_graph(graph, registry)
        assert _types(errors) == ["dangling_edge"]
        assert errors[0].node == "ghost"

    def test_all_errors_are_collected(self, builder, registry):
        graph = (
            builder.worker("A", worker_type="nope")
            .worker("B", worker_type="minimax")
            .edge("A", "B")
            .edge("B", "A")
            .build()
        )
        assert set(_types(validate_graph(graph, registry))) == {
            "cycle",
            "invalid_worker",
            "missing_input",
        }

    def test_adjacency_skips_presentation_nodes(self, builder):
        graph = builder.worker("A").section("S").worker("B").chain("A", "S", "B").build()
        assert build_adjacency(graph) == {"A": [], "B": []}
