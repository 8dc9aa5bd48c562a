"""Shared fixtures for the FlowStudio test suite."""

import pytest

from flowstudio.config import reset_studio_config
from flowstudio.workflow.node_kinds import CommandConfig, HttpConfig, NodeKind
from flowstudio.workflow.workflow_model import NodeRecord, build_workflow


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Each test reads the environment from scratch."""
    for name in (
        "FLOWSTUDIO_API_URL",
        "FLOWSTUDIO_REQUEST_TIMEOUT",
        "FLOWSTUDIO_MAX_LOG_ENTRIES",
        "FLOWSTUDIO_MAX_CYCLES",
        "FLOWSTUDIO_LAYOUT_NODE_GAP",
        "FLOWSTUDIO_LAYOUT_LAYER_GAP",
        "FLOWSTUDIO_DSL_MODULE",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_studio_config()
    yield
    reset_studio_config()


def http_node(node_id: str, url: str = "https://example.com", **fields) -> NodeRecord:
    return NodeRecord(id=node_id, kind=NodeKind.HTTP, config=HttpConfig(url=url, **fields))


def command_node(node_id: str, command: str = "echo done", **fields) -> NodeRecord:
    return NodeRecord(id=node_id, kind=NodeKind.COMMAND, config=CommandConfig(command=command, **fields))


@pytest.fixture
def fetch_notify():
    """fetch (HTTP GET) → notify (echo), starting at fetch."""
    workflow = build_workflow(
        [http_node("fetch"), command_node("notify")],
        id="demo",
        name="Demo",
        start="fetch",
    )
    return workflow.connect("fetch", "notify")
