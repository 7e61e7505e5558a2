from __future__ import annotations

from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .node import LoadingBehavior


class RenderedNode(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: str
    order: float = 0
    name: str | None = None
    atom_type: str | None = None
    component_type: str | None = None
    template_id: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    class_name: str | None = None
    inline_styles: dict[str, Any] | None = None
    style: dict[str, Any] | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    node_data: dict[str, Any] = Field(default_factory=dict)
    state: dict[str, Any] | None = None
    loading: bool = False
    placeholder: LoadingBehavior | None = None
    event_handlers: Sequence[str] = Field(default_factory=list)
    children: Sequence[RenderedNode] = Field(default_factory=list)

    def find(self, node_id: str) -> RenderedNode | None:
        if self.id == node_id:
            return self
        for child in self.children:
            found = child.find(node_id)
            if found is not None:
                return found
        return None


RenderedNode.model_rebuild()


__all__ = ["RenderedNode"]
