"""
Node Kinds — the closed set of workflow node kinds and their configs.

Every node carries a ``config`` whose shape is fully determined by its
kind. Configs form a pydantic discriminated union keyed on ``kind``.
Field names are snake_case in Python and camelCase in the DSL
(``max_turns`` ↔ ``maxTurns``).

Each config class registers itself with ``@register_kind`` together with
the per-kind metadata consumed by the validator, the layout engine and
the DSL compiler. Import-time checks guarantee that every ``NodeKind``
has exactly one registered config class.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Callable, ClassVar, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NodeKind(str, Enum):
    """Closed set of node kinds. Values are the DSL tags."""
    TRIGGER = "trigger"
    AGENT = "agent"
    COMMAND = "command"
    SLASH_COMMAND = "slash-command"
    EVAL = "eval"
    HTTP = "http"
    LLM = "llm"
    DYNAMIC_AGENT = "dynamic-agent"
    DYNAMIC_COMMAND = "dynamic-command"
    EXTERNAL_PROJECT_UPDATE = "external-project-update"
    REPOSITORY_CHECKOUT = "repository-checkout"
    END = "end"


# Tags accepted by the parser in addition to the canonical values.
KIND_ALIASES: Dict[str, NodeKind] = {
    "github-project": NodeKind.EXTERNAL_PROJECT_UPDATE,
    "git-checkout": NodeKind.REPOSITORY_CHECKOUT,
    "terminal": NodeKind.END,
}

AGENT_MODELS = ("haiku", "sonnet", "opus")
HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")


# ============================================================================
# Kind registry
# ============================================================================


@dataclass(frozen=True)
class KindSpec:
    """Static metadata for a node kind."""
    kind: NodeKind
    config_cls: Type["NodeConfigBase"]
    label: str
    allows_self_loop: bool = False
    is_terminal: bool = False


_KIND_SPECS: Dict[NodeKind, KindSpec] = {}


def register_kind(
    kind: NodeKind,
    label: str,
    allows_self_loop: bool = False,
    is_terminal: bool = False,
) -> Callable[[Type["NodeConfigBase"]], Type["NodeConfigBase"]]:
    """Class decorator registering a config class for ``kind``."""

    def _register(cls: Type["NodeConfigBase"]) -> Type["NodeConfigBase"]:
        if kind in _KIND_SPECS:
            raise RuntimeError(f"Node kind '{kind.value}' registered twice")
        _KIND_SPECS[kind] = KindSpec(
            kind=kind,
            config_cls=cls,
            label=label,
            allows_self_loop=allows_self_loop,
            is_terminal=is_terminal,
        )
        return cls

    return _register


def get_kind_spec(kind: NodeKind) -> KindSpec:
    return _KIND_SPECS[NodeKind(kind)]


def list_kind_specs() -> List[KindSpec]:
    return [_KIND_SPECS[k] for k in NodeKind]


def resolve_kind(tag: str) -> Optional[NodeKind]:
    """Map a DSL tag (canonical or alias) to a NodeKind."""
    try:
        return NodeKind(tag)
    except ValueError:
        return KIND_ALIASES.get(tag)


# ============================================================================
# Config models
# ============================================================================


class NodeConfigBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="forbid",
        protected_namespaces=(),
    )

    # Python field names rendered even when equal to their default.
    always_rendered: ClassVar[Tuple[str, ...]] = ()

    kind: str

    def dsl_fields(self) -> Dict[str, Any]:
        """Fields to render, in declaration order, keyed by DSL name.

        Optional fields are skipped while they hold their default.
        """
        data: Dict[str, Any] = {}
        for name, info in type(self).model_fields.items():
            if name == "kind":
                continue
            value = getattr(self, name)
            if name not in self.always_rendered and value == info.get_default(call_default_factory=True):
                continue
            data[info.alias or name] = value
        return data


@register_kind(NodeKind.TRIGGER, "Trigger")
class TriggerConfig(NodeConfigBase):
    kind: Literal["trigger"] = "trigger"
    custom_fields: Tuple[Dict[str, Any], ...] = ()


@register_kind(NodeKind.AGENT, "Agent", allows_self_loop=True)
class AgentConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("role", "prompt", "tools", "model")

    kind: Literal["agent"] = "agent"
    role: str = ""
    prompt: str = ""
    tools: Tuple[str, ...] = ()
    model: str = "sonnet"
    max_turns: Optional[int] = None
    temperature: Optional[float] = None
    mcp_servers: Tuple[Any, ...] = ()


@register_kind(NodeKind.COMMAND, "Command")
class CommandConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("command",)

    kind: Literal["command"] = "command"
    command: str = ""
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    throw_on_error: Optional[bool] = None


@register_kind(NodeKind.SLASH_COMMAND, "Slash Command")
class SlashCommandConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("command",)

    kind: Literal["slash-command"] = "slash-command"
    command: str = ""
    args: Optional[str] = None


@register_kind(NodeKind.EVAL, "Eval", allows_self_loop=True)
class EvalConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("code",)

    kind: Literal["eval"] = "eval"
    code: str = ""


@register_kind(NodeKind.HTTP, "HTTP Request")
class HttpConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("url", "method")

    kind: Literal["http"] = "http"
    url: str = ""
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    timeout: Optional[float] = None


@register_kind(NodeKind.LLM, "LLM Call", allows_self_loop=True)
class LlmConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("model", "prompt")

    kind: Literal["llm"] = "llm"
    model: str = "sonnet"
    prompt: str = ""
    llm_model: Optional[str] = None
    system_prompt: Optional[str] = None
    user_prompt: Optional[str] = None
    output_mode: Optional[str] = None
    output_schema: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    enable_web_search: Optional[bool] = None
    reasoning_effort: Optional[str] = None


@register_kind(NodeKind.DYNAMIC_AGENT, "Dynamic Agent", allows_self_loop=True)
class DynamicAgentConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("model_expression", "prompt_expression")

    kind: Literal["dynamic-agent"] = "dynamic-agent"
    model_expression: str = ""
    prompt_expression: str = ""
    system_expression: Optional[str] = None


@register_kind(NodeKind.DYNAMIC_COMMAND, "Dynamic Command")
class DynamicCommandConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("command_expression",)

    kind: Literal["dynamic-command"] = "dynamic-command"
    command_expression: str = ""
    cwd_expression: Optional[str] = None


@register_kind(NodeKind.EXTERNAL_PROJECT_UPDATE, "Project Update")
class ExternalProjectUpdateConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = (
        "token", "project_owner", "project_number", "owner", "repo", "updates",
    )

    kind: Literal["external-project-update"] = "external-project-update"
    token: str = ""
    project_owner: str = ""
    project_number: int = 1
    owner: str = ""
    repo: str = ""
    updates: Tuple[Dict[str, Any], ...] = ()
    issue_number: Optional[int] = None
    issue_number_key: Optional[str] = None


@register_kind(NodeKind.REPOSITORY_CHECKOUT, "Repository Checkout")
class RepositoryCheckoutConfig(NodeConfigBase):
    always_rendered: ClassVar[Tuple[str, ...]] = ("use_issue_context", "ref", "depth")

    kind: Literal["repository-checkout"] = "repository-checkout"
    use_issue_context: bool = True
    owner: Optional[str] = None
    repo: Optional[str] = None
    ref: str = "main"
    depth: int = 1
    skip_if_exists: Optional[bool] = None


@register_kind(NodeKind.END, "End", is_terminal=True)
class EndConfig(NodeConfigBase):
    kind: Literal["end"] = "end"


NodeConfig = Annotated[
    Union[
        TriggerConfig,
        AgentConfig,
        CommandConfig,
        SlashCommandConfig,
        EvalConfig,
        HttpConfig,
        LlmConfig,
        DynamicAgentConfig,
        DynamicCommandConfig,
        ExternalProjectUpdateConfig,
        RepositoryCheckoutConfig,
        EndConfig,
    ],
    Field(discriminator="kind"),
]


_unregistered = [k.value for k in NodeKind if k not in _KIND_SPECS]
if _unregistered:
    raise RuntimeError(f"Node kinds without a config class: {_unregistered}")


def config_field_names(kind: NodeKind) -> List[str]:
    """DSL names of every config field of ``kind`` (excluding ``kind``)."""
    cls = get_kind_spec(kind).config_cls
    return [
        info.alias or name
        for name, info in cls.model_fields.items()
        if name != "kind"
    ]


def default_config(kind: NodeKind) -> NodeConfigBase:
    """Build an empty config for ``kind``."""
    return get_kind_spec(kind).config_cls()


def build_config(kind: NodeKind, fields: Dict[str, Any]) -> NodeConfigBase:
    """Build the config for ``kind`` from DSL-named fields.

    Raises:
        pydantic.ValidationError: If a field has an incompatible type.
    """
    return get_kind_spec(kind).config_cls.model_validate(fields)
