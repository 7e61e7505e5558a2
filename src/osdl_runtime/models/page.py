from __future__ import annotations

from typing import Any, Literal, Sequence

from pydantic import ConfigDict, Field

from .node import Node, SchemaModel


class PageDataSource(SchemaModel):
    type: Literal["mockData", "productDetail", "staticContent", "rql"]
    source_params: dict[str, Any] = Field(default_factory=dict)


class PageDefinition(SchemaModel):
    id: str
    name: str
    route: str = "/"
    page_type: str = "static"
    schema_version: str | None = None
    data_source: PageDataSource | None = None
    nodes: Sequence[Node] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "product-detail",
                "name": "Product detail",
                "route": "/products/[productId]",
                "pageType": "dynamic",
                "schemaVersion": "osdl_v3.1",
                "dataSource": {"type": "mockData", "sourceParams": {"mockProductId": "123"}},
                "nodes": [
                    {
                        "id": "title",
                        "type": "atom",
                        "atomType": "Text",
                        "order": 0,
                        "params": {"content": "{{ data.product.name }}"},
                    }
                ],
            }
        }
    )


__all__ = ["PageDataSource", "PageDefinition"]
