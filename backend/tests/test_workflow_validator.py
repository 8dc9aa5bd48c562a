"""Tests for workflow validation."""

from flowstudio.workflow.node_kinds import (
    AgentConfig,
    DynamicAgentConfig,
    ExternalProjectUpdateConfig,
    LlmConfig,
    NodeKind,
    RepositoryCheckoutConfig,
    TriggerConfig,
)
from flowstudio.workflow.workflow_model import EdgeRecord, NodeRecord, Workflow, build_workflow
from flowstudio.workflow.workflow_validator import _KIND_CHECKS, validate_workflow

from conftest import command_node, http_node


def agent_node(node_id: str, **fields) -> NodeRecord:
    fields.setdefault("role", "reviewer")
    fields.setdefault("prompt", "Review the change")
    return NodeRecord(id=node_id, kind=NodeKind.AGENT, config=AgentConfig(**fields))


def end_node(node_id: str, **fields) -> NodeRecord:
    return NodeRecord(id=node_id, kind=NodeKind.END, **fields)


class TestValidGraphs:
    """Well-formed workflows pass."""

    def test_linear_workflow_is_valid(self, fetch_notify):
        result = validate_workflow(fetch_notify)
        assert result.valid is True
        assert result.issues == []

    def test_every_kind_has_rules(self):
        assert set(_KIND_CHECKS) == set(NodeKind)

    def test_warnings_do_not_invalidate(self):
        wf = build_workflow([http_node("a"), http_node("b")], id="w", start="a")
        wf = wf.connect("a", "b").connect("b", "a")
        result = validate_workflow(wf)
        assert result.valid is True
        assert result.codes() == ["CYCLE_DETECTED"]
        assert result.warnings[0].message == "Cycle detected: a -> b -> a"
        assert result.warnings[0].path == "nodes.a"


class TestEdges:
    """Test edge endpoint and self-loop checks."""

    def test_dangling_edge(self):
        wf = Workflow(
            id="w",
            start="a",
            nodes=(command_node("a"),),
            edges=(EdgeRecord(id="e1", source="a", target="ghost"),),
        )
        result = validate_workflow(wf)
        assert result.valid is False
        assert result.errors[0].code == "DANGLING_EDGE"
        assert result.errors[0].path == "edges.e1.target"

    def test_dangling_source_and_target(self):
        wf = Workflow(id="w", edges=(EdgeRecord(id="e1", source="x", target="y"),))
        codes = validate_workflow(wf).codes()
        assert codes.count("DANGLING_EDGE") == 2

    def test_self_loop_on_command_is_invalid(self):
        wf = Workflow(
            id="w",
            start="a",
            nodes=(command_node("a"),),
            edges=(EdgeRecord(id="e1", source="a", target="a"),),
        )
        assert "INVALID_SELF_LOOP" in validate_workflow(wf).codes()

    def test_self_loop_on_agent_is_a_cycle(self):
        wf = build_workflow([agent_node("a")], id="w", start="a").connect("a", "a", "error")
        result = validate_workflow(wf)
        assert result.valid is True
        assert result.codes() == ["CYCLE_DETECTED"]


class TestStart:
    """Test start node, orphan and reachability checks."""

    def test_no_nodes(self):
        result = validate_workflow(Workflow(id="w"))
        assert result.codes() == ["NO_NODES"]

    def test_missing_start(self):
        result = validate_workflow(build_workflow([end_node("done")], id="w"))
        assert result.codes() == ["MISSING_START"]
        assert result.valid is False

    def test_invalid_start(self):
        result = validate_workflow(build_workflow([end_node("done")], id="w", start="ghost"))
        assert result.codes() == ["INVALID_START"]

    def test_orphan_node(self):
        wf = build_workflow([command_node("a"), end_node("b")], id="w", start="a")
        result = validate_workflow(wf)
        assert result.codes() == ["ORPHAN_NODE"]
        assert result.errors[0].path == "nodes.b"

    def test_orphan_tolerant_node(self):
        wf = build_workflow([command_node("a"), end_node("b", orphan_tolerant=True)], id="w", start="a")
        assert validate_workflow(wf).valid is True

    def test_self_loop_does_not_count_as_incoming(self):
        wf = build_workflow([command_node("a"), agent_node("b")], id="w", start="a")
        wf = wf.connect("b", "b")
        assert "ORPHAN_NODE" in validate_workflow(wf).codes()

    def test_unreachable_island(self):
        wf = build_workflow([end_node("a"), http_node("b"), http_node("c")], id="w", start="a")
        wf = wf.connect("b", "c").connect("c", "b")
        result = validate_workflow(wf)
        assert result.valid is True
        assert [i.code for i in result.warnings] == ["UNREACHABLE_NODE", "UNREACHABLE_NODE", "CYCLE_DETECTED"]


class TestCycles:
    """Test cycle reporting and the reporting cap."""

    def test_cycle_limit(self):
        nodes = [agent_node(f"n{i}") for i in range(4)]
        wf = build_workflow(nodes, id="w", start="n0")
        for i in range(3):
            wf = wf.connect(f"n{i}", f"n{i + 1}")
        for i in range(4):
            wf = wf.connect(f"n{i}", f"n{i}", "error")
        result = validate_workflow(wf, max_cycles=2)
        assert result.codes() == ["CYCLE_DETECTED", "CYCLE_DETECTED", "CYCLE_LIMIT_REACHED"]

    def test_cycle_limit_from_config(self, monkeypatch):
        monkeypatch.setenv("FLOWSTUDIO_MAX_CYCLES", "1")
        wf = build_workflow([agent_node("a"), agent_node("b")], id="w", start="a")
        wf = wf.connect("a", "b").connect("a", "a", "error").connect("b", "b", "error")
        assert validate_workflow(wf).codes() == ["CYCLE_DETECTED", "CYCLE_LIMIT_REACHED"]

    def test_negative_limit_falls_back_to_default(self):
        wf = build_workflow([agent_node("a")], id="w", start="a").connect("a", "a", "error")
        result = validate_workflow(wf, max_cycles=-1)
        assert result.valid is True
        assert result.codes() == ["INVALID_CYCLE_LIMIT", "CYCLE_DETECTED"]

    def test_negative_limit_from_config(self, monkeypatch, fetch_notify):
        monkeypatch.setenv("FLOWSTUDIO_MAX_CYCLES", "-1")
        result = validate_workflow(fetch_notify)
        assert result.valid is True
        assert result.codes() == ["INVALID_CYCLE_LIMIT"]


class TestNodeRules:
    """Per-kind field checks."""

    def codes_for(self, node: NodeRecord):
        wf = build_workflow([node], id="w", start=node.id)
        return validate_workflow(wf).codes()

    def test_http(self):
        assert self.codes_for(http_node("req", url="", method="FETCH")) == ["MISSING_URL", "INVALID_METHOD"]
        assert self.codes_for(http_node("req", method="")) == ["MISSING_METHOD"]
        assert self.codes_for(http_node("req", timeout=-1)) == ["INVALID_TIMEOUT"]

    def test_agent(self):
        node = NodeRecord(id="ask", kind=NodeKind.AGENT)
        assert self.codes_for(node) == ["MISSING_ROLE", "MISSING_PROMPT"]
        node = agent_node("ask", model="gpt", max_turns=0, temperature=1.5)
        assert self.codes_for(node) == ["INVALID_MODEL", "INVALID_MAX_TURNS", "INVALID_TEMPERATURE"]

    def test_command(self):
        assert self.codes_for(command_node("run", "  ")) == ["MISSING_COMMAND"]
        assert self.codes_for(command_node("run", timeout=-5)) == ["INVALID_TIMEOUT"]

    def test_simple_kinds(self):
        assert self.codes_for(NodeRecord(id="s", kind=NodeKind.SLASH_COMMAND)) == ["MISSING_COMMAND"]
        assert self.codes_for(NodeRecord(id="e", kind=NodeKind.EVAL)) == ["MISSING_CODE"]
        assert self.codes_for(NodeRecord(id="d", kind=NodeKind.DYNAMIC_COMMAND)) == ["MISSING_COMMAND_EXPRESSION"]
        assert self.codes_for(NodeRecord(id="d", kind=NodeKind.DYNAMIC_AGENT)) == [
            "MISSING_MODEL_EXPRESSION", "MISSING_PROMPT_EXPRESSION",
        ]
        assert self.codes_for(NodeRecord(id="end", kind=NodeKind.END)) == []

    def test_llm(self):
        assert self.codes_for(NodeRecord(id="l", kind=NodeKind.LLM)) == ["MISSING_PROMPT"]
        node = NodeRecord(id="l", kind=NodeKind.LLM, config=LlmConfig(model=" ", prompt="hi"))
        assert self.codes_for(node) == ["MISSING_MODEL"]

    def test_dynamic_agent_with_expressions(self):
        config = DynamicAgentConfig(model_expression="ctx.model", prompt_expression="ctx.prompt")
        assert self.codes_for(NodeRecord(id="d", kind=NodeKind.DYNAMIC_AGENT, config=config)) == []

    def test_trigger_custom_fields(self):
        config = TriggerConfig(custom_fields=({"name": "repo"}, {"id": "x"}))
        node = NodeRecord(id="t", kind=NodeKind.TRIGGER, config=config)
        assert self.codes_for(node) == ["MISSING_FIELD_ID", "MISSING_FIELD_NAME"]

    def test_project_update(self):
        node = NodeRecord(
            id="p",
            kind=NodeKind.EXTERNAL_PROJECT_UPDATE,
            config=ExternalProjectUpdateConfig(project_number=0),
        )
        assert self.codes_for(node) == ["MISSING_TOKEN", "MISSING_PROJECT_OWNER", "INVALID_PROJECT_NUMBER"]

    def test_checkout(self):
        assert self.codes_for(NodeRecord(id="c", kind=NodeKind.REPOSITORY_CHECKOUT)) == []
        config = RepositoryCheckoutConfig(use_issue_context=False, ref="")
        node = NodeRecord(id="c", kind=NodeKind.REPOSITORY_CHECKOUT, config=config)
        assert self.codes_for(node) == ["MISSING_OWNER", "MISSING_REPO", "MISSING_REF"]


class TestMetadata:
    """Test workflow and node id checks."""

    def test_missing_workflow_id(self):
        wf = build_workflow([end_node("done")], id="", start="done")
        result = validate_workflow(wf)
        assert result.codes() == ["MISSING_ID"]
        assert result.valid is False

    def test_invalid_workflow_id_is_a_warning(self):
        wf = build_workflow([end_node("done")], id="-bad id", start="done")
        result = validate_workflow(wf)
        assert result.codes() == ["INVALID_ID"]
        assert result.valid is True

    def test_node_id_style(self):
        wf = build_workflow([end_node("Fetch-1")], id="w", start="Fetch-1")
        result = validate_workflow(wf)
        assert result.codes() == ["INVALID_NODE_NAME"]
        assert result.valid is True


class TestOrdering:
    """Issues are reported phase by phase."""

    def test_phase_order(self):
        wf = Workflow(
            id="",
            nodes=(http_node("a", url=""),),
            edges=(EdgeRecord(id="e1", source="a", target="ghost"),),
        )
        assert validate_workflow(wf).codes() == ["DANGLING_EDGE", "MISSING_URL", "MISSING_START", "MISSING_ID"]
