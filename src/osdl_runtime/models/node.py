from __future__ import annotations

from typing import Annotated, Any, Literal, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class SchemaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_schema(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class RequirementSource(SchemaModel):
    type: str | None = None
    query: Any = None
    queries: Any = None
    variables: dict[str, Any] | None = None
    data_path: str | None = None


class DataRequirement(SchemaModel):
    key: str
    source: RequirementSource | None = None
    blocking: bool = True
    cache_duration_ms: float | None = None
    default_value: Any = None


class VisibilityCondition(SchemaModel):
    context_path: str
    operator: str
    value: Any = None


class VisibilityConfig(SchemaModel):
    hidden: bool | None = None
    conditions: Sequence[VisibilityCondition] = Field(default_factory=list)
    condition_logic: Literal["AND", "OR"] = "AND"
    expression: str | None = None


class LoadingBehavior(SchemaModel):
    placeholder_type: Literal["skeleton", "spinner", "custom_node", "none"] = "skeleton"
    skeleton_config: dict[str, Any] | None = None
    spinner_color: str | None = None
    custom_placeholder_node_id: str | None = None
    min_loader_duration_ms: float | None = None


class Action(SchemaModel):
    id: str
    type: str
    params: dict[str, Any] = Field(default_factory=dict)
    conditions: Sequence[VisibilityCondition] | None = None
    condition_logic: Literal["AND", "OR"] = "AND"
    delay_ms: float | None = None
    on_success: Sequence[Action] | None = None
    on_error: Sequence[Action] | None = None


class RepeaterFilter(SchemaModel):
    field: str
    operator: str
    value: Any = None


class RepeaterSort(SchemaModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class IdStrategy(SchemaModel):
    separator: str = "-"
    include_parent_ids: bool = False
    prefix: str | None = None


class Repeater(SchemaModel):
    source: str
    template: Node
    limit: int | str | None = None
    filter: RepeaterFilter | None = None
    sort: RepeaterSort | None = None
    id_strategy: IdStrategy | None = None


class BaseNode(SchemaModel):
    id: str
    order: float = 0
    name: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    state: dict[str, Any] | None = None
    data_requirements: Sequence[DataRequirement] = Field(default_factory=list)
    visibility: VisibilityConfig | None = None
    loading_behavior: LoadingBehavior | None = None
    event_handlers: dict[str, Sequence[Action]] | None = None
    responsive_overrides: dict[str, dict[str, Any]] | None = None
    locale_overrides: dict[str, dict[str, Any]] | None = None
    class_name: str | None = None
    inline_styles: dict[str, Any] | None = None


class SectionNode(BaseNode):
    type: Literal["section"]
    children: Sequence[Node] = Field(default_factory=list)
    repeater: Repeater | None = None


class AtomNode(BaseNode):
    type: Literal["atom"]
    atom_type: str


class ComponentNode(BaseNode):
    type: Literal["component"]
    component_type: str


class CodeBlockNode(BaseNode):
    type: Literal["codeblock"]
    language: str | None = None
    content: str | None = None


Node = Annotated[
    Union[SectionNode, AtomNode, ComponentNode, CodeBlockNode],
    Field(discriminator="type"),
]

Action.model_rebuild()
Repeater.model_rebuild()
SectionNode.model_rebuild()

_NODE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Node)


def parse_node(data: Any) -> BaseNode:
    return _NODE_ADAPTER.validate_python(data)


__all__ = [
    "Action",
    "AtomNode",
    "BaseNode",
    "CodeBlockNode",
    "ComponentNode",
    "DataRequirement",
    "IdStrategy",
    "LoadingBehavior",
    "Node",
    "Repeater",
    "RepeaterFilter",
    "RepeaterSort",
    "RequirementSource",
    "SchemaModel",
    "SectionNode",
    "VisibilityCondition",
    "VisibilityConfig",
    "parse_node",
]
