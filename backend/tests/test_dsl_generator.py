"""Tests for the canonical DSL generator, including parse/generate round trips."""

from flowstudio.workflow.dsl.dsl_generator import (
    canonical_node_order,
    generate_workflow,
    quote_string,
    render_value,
)
from flowstudio.workflow.dsl.dsl_parser import parse_workflow
from flowstudio.workflow.layout_engine import LayoutOptions, apply_layout
from flowstudio.workflow.node_kinds import AgentConfig, EndConfig, NodeKind
from flowstudio.workflow.workflow_model import (
    EdgeRecord,
    FlowDirection,
    NodeRecord,
    Workflow,
    build_workflow,
)

from conftest import command_node, http_node

CANONICAL_DEMO = """\
import { defineWorkflow } from '@flowstudio/dsl';

export default defineWorkflow({
  id: 'demo',
  name: 'Demo',
  context: {},

  nodes: {
    fetch: {
      kind: 'http',
      url: 'https://example.com',
      method: 'GET',
      next: 'notify',
    },

    notify: {
      kind: 'command',
      command: 'echo done',
    },
  },

  start: 'fetch',
});
"""

RICH_SOURCE = """\
import { defineWorkflow, Tools } from '@flowstudio/dsl';
import helpers from './helpers';

export default defineWorkflow({
  id: 'triage',
  name: 'Issue triage',
  description: 'Route new issues',
  environment: 'staging',
  context: { repo: 'acme/app', limits: { retries: 2 } },
  nodes: {
    intake: { kind: 'trigger', next: 'classify' },
    classify: {
      kind: 'agent',
      label: 'Classify',
      role: 'triager',
      prompt: `Read the issue.
Answer with a severity.`,
      tools: [Tools.Read, Tools.Grep],
      maxTurns: 4,
      next: { if: 'ctx.severity', then: 'route', else: 'END' },
      onError: 'classify',
    },
    route: {
      kind: 'eval',
      code: 'return ctx.severity',
      next: { match: 'ctx.severity', cases: { high: 'page', low: 'ticket' }, default: 'ticket' },
    },
    page: { kind: 'http', url: 'https://pager.example.com', method: 'POST', body: '{}', next: 'done' },
    ticket: { kind: 'command', command: 'gh issue edit', retries: 3, next: 'done' },
    custom: { kind: 'eval', code: 'x', next: (ctx) => ctx.a ? 'done' : 'END', orphanTolerant: true },
    done: { kind: 'end' },
  },
  start: 'intake',
  _meta: {
    direction: 'LR',
    nodes: { intake: { x: 10, y: 20 }, done: { x: 400, y: 20, width: 120, height: 60 } },
    edges: { 'route:case:high->page': { label: 'urgent' } },
  },
});
"""


class TestCanonicalText:
    """Test the exact rendered form."""

    def test_demo_workflow(self, fetch_notify):
        assert generate_workflow(fetch_notify).code == CANONICAL_DEMO

    def test_insertion_order_does_not_matter(self, fetch_notify):
        reordered = Workflow(
            id="demo",
            name="Demo",
            start="fetch",
            nodes=tuple(reversed(fetch_notify.nodes)),
            edges=fetch_notify.edges,
        )
        assert generate_workflow(reordered).code == CANONICAL_DEMO

    def test_tools_import_and_references(self):
        agent = NodeRecord(id="ask", kind=NodeKind.AGENT, config=AgentConfig(role="r", tools=("Read", "Bash")))
        wf = build_workflow([agent], id="a", name="A", start="ask")
        code = generate_workflow(wf).code
        assert code.startswith("import { defineWorkflow, Tools } from '@flowstudio/dsl';\n")
        assert "      tools: [Tools.Read, Tools.Bash],\n" in code
        assert "      model: 'sonnet',\n" in code

    def test_preserved_imports(self):
        wf = build_workflow(
            [NodeRecord(id="done", kind=NodeKind.END, config=EndConfig())],
            id="a",
            start="done",
            imports={"./helpers": ("default as helpers",), "@flowstudio/dsl": ("defineWorkflow", "Extra")},
        )
        header = generate_workflow(wf).code.split("\n\n")[0]
        assert header == (
            "import { defineWorkflow, Extra } from '@flowstudio/dsl';\n"
            "import helpers from './helpers';"
        )

    def test_dsl_module_from_config(self, monkeypatch, fetch_notify):
        monkeypatch.setenv("FLOWSTUDIO_DSL_MODULE", "@acme/flows")
        assert generate_workflow(fetch_notify).code.startswith("import { defineWorkflow } from '@acme/flows';")

    def test_multiline_string_uses_template_literal(self):
        wf = build_workflow([command_node("run", "echo a\necho `b`")], id="x", start="run")
        assert "      command: `echo a\necho \\`b\\``,\n" in generate_workflow(wf).code

    def test_template_literal_escapes_interpolation(self):
        assert quote_string("echo ${HOME}\n$PATH") == "`echo \\${HOME}\n$PATH`"
        wf = build_workflow([command_node("run", "echo ${HOME}\ndone")], id="x", start="run")
        parsed = parse_workflow(generate_workflow(wf).code)
        assert parsed.workflow.get_node("run").config.command == "echo ${HOME}\ndone"

    def test_quoting(self):
        assert quote_string("it's") == "'it\\'s'"
        assert quote_string("tab\there") == "'tab\\there'"
        assert render_value({"b": 1, "a-b": 2.0, "c": [1, 2]}, 0) == "{\n  'a-b': 2,\n  b: 1,\n  c: [1, 2],\n}"

    def test_non_identifier_node_id_is_quoted(self):
        wf = build_workflow([command_node("fetch-data")], id="x", start="fetch-data")
        assert "    'fetch-data': {\n" in generate_workflow(wf).code

    def test_meta_after_layout(self, fetch_notify):
        laid_out = apply_layout(fetch_notify, FlowDirection.LEFT_RIGHT, LayoutOptions())
        code = generate_workflow(laid_out).code
        assert code.endswith(
            "  start: 'fetch',\n"
            "\n"
            "  _meta: {\n"
            "    direction: 'LR',\n"
            "    nodes: {\n"
            "      notify: {\n"
            "        x: 275,\n"
            "        y: 0,\n"
            "      },\n"
            "    },\n"
            "  },\n"
            "});\n"
        )


class TestOrdering:
    """Test the canonical node order."""

    def test_topological_then_lexicographic(self):
        wf = build_workflow([command_node("z"), command_node("b"), command_node("a")]).connect("z", "a")
        assert canonical_node_order(wf) == ["b", "z", "a"]

    def test_cycle_broken_at_smallest_id(self):
        wf = build_workflow([http_node("a"), http_node("b"), http_node("c")])
        wf = wf.connect("a", "b").connect("b", "a").connect("c", "a")
        assert canonical_node_order(wf) == ["c", "a", "b"]


class TestWarnings:
    """Structural problems produce warnings, never exceptions."""

    def test_leaf_of_non_terminal_kind(self, fetch_notify):
        warnings = generate_workflow(fetch_notify).warnings
        assert warnings == ["node notify has no outgoing edge and is not a terminal kind"]

    def test_missing_start(self):
        wf = build_workflow([NodeRecord(id="done", kind=NodeKind.END)], id="x")
        result = generate_workflow(wf)
        assert "No start node found" in result.warnings
        assert "start:" not in result.code

    def test_unknown_start(self):
        wf = build_workflow([NodeRecord(id="done", kind=NodeKind.END)], id="x", start="ghost")
        assert "Start node 'ghost' does not exist" in generate_workflow(wf).warnings

    def test_dangling_edge_skipped(self):
        wf = build_workflow(
            [command_node("a")],
            [EdgeRecord(id="a->ghost", source="a", target="ghost")],
            id="x",
            start="a",
        )
        result = generate_workflow(wf)
        assert any("references a missing node" in w for w in result.warnings)
        assert "ghost" not in result.code

    def test_multiple_plain_edges(self):
        wf = build_workflow([command_node("a"), command_node("c"), command_node("b")], id="x", start="a")
        wf = wf.connect("a", "c").connect("a", "b")
        result = generate_workflow(wf)
        assert "      next: 'b',\n" in result.code
        assert any("2 plain outgoing edges" in w for w in result.warnings)

    def test_branch_edge_without_routing(self):
        wf = build_workflow([command_node("a"), command_node("b")], id="x", start="a")
        wf = wf.connect("a", "b", "then")
        result = generate_workflow(wf)
        assert any("without matching routing" in w for w in result.warnings)

    def test_unknown_handle(self):
        wf = build_workflow([command_node("a"), command_node("b")], id="x", start="a")
        wf = wf.connect("a", "b", "sideways")
        assert any("unknown source handle 'sideways'" in w for w in generate_workflow(wf).warnings)


class TestRoundTrip:
    """parse(generate(g)) is equivalent to g."""

    def test_demo_round_trip(self, fetch_notify):
        parsed = parse_workflow(generate_workflow(fetch_notify).code)
        assert parsed.warnings == []
        assert parsed.workflow.is_equivalent(fetch_notify)

    def test_canonical_text_parses_back_to_same_text(self):
        parsed = parse_workflow(CANONICAL_DEMO)
        assert generate_workflow(parsed.workflow).code == CANONICAL_DEMO

    def test_rich_workflow_round_trip(self):
        first = parse_workflow(RICH_SOURCE)
        assert any("Unknown field 'retries'" in w for w in first.warnings)

        code = generate_workflow(first.workflow).code
        second = parse_workflow(code)
        assert second.workflow.is_equivalent(first.workflow)
        assert generate_workflow(second.workflow).code == code

    def test_rich_workflow_rendering(self):
        wf = parse_workflow(RICH_SOURCE).workflow
        code = generate_workflow(wf).code
        assert code.startswith(
            "import { defineWorkflow, Tools } from '@flowstudio/dsl';\n"
            "import helpers from './helpers';\n"
        )
        assert (
            "      next: {\n"
            "        if: 'ctx.severity',\n"
            "        then: 'route',\n"
            "        else: 'END',\n"
            "      },\n"
            "      onError: 'classify',\n"
        ) in code
        assert (
            "      next: {\n"
            "        match: 'ctx.severity',\n"
            "        cases: {\n"
            "          high: 'page',\n"
            "          low: 'ticket',\n"
            "        },\n"
            "        default: 'ticket',\n"
            "      },\n"
        ) in code
        assert "      next: (ctx) => ctx.a ? 'done' : 'END',\n" in code
        assert "      retries: 3,\n" in code
        assert "      prompt: `Read the issue.\nAnswer with a severity.`,\n" in code
        assert "'route:case:high->page': {\n" in code

    def test_layout_survives_round_trip(self, fetch_notify):
        laid_out = apply_layout(fetch_notify, FlowDirection.LEFT_RIGHT, LayoutOptions())
        parsed = parse_workflow(generate_workflow(laid_out).code).workflow
        assert parsed.is_equivalent(laid_out)
        assert parsed.get_node("notify").position.x == 275
