from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence


@dataclass(frozen=True)
class MockResponse:
    keyword: str
    build: Callable[[Mapping[str, Any]], Any]

    def matches(self, query_text: str) -> bool:
        return self.keyword in query_text


def _related_products(variables: Mapping[str, Any]) -> Any:
    return [
        {"id": "rel-1", "name": "Related Widget A", "price": 24.99, "categoryId": "test-category-001"},
        {"id": "rel-2", "name": "Related Widget B", "price": 34.99, "categoryId": "test-category-001"},
        {"id": "rel-3", "name": "Related Widget C", "price": 19.99, "categoryId": "test-category-001"},
    ]


def _user_reviews(variables: Mapping[str, Any]) -> Any:
    return [
        {"id": 1, "rating": 5, "comment": "Excellent product! Highly recommended.", "author": "John D.", "date": "2024-01-15"},
        {"id": 2, "rating": 4, "comment": "Very satisfied with the quality.", "author": "Jane S.", "date": "2024-01-10"},
        {"id": 3, "rating": 5, "comment": "Perfect for my needs!", "author": "Mike R.", "date": "2024-01-08"},
    ]


def _review_summary(variables: Mapping[str, Any]) -> Any:
    return {
        "averageRating": 4.7,
        "totalReviews": 23,
        "ratingDistribution": {"5": 15, "4": 6, "3": 2, "2": 0, "1": 0},
    }


def _product_analytics(variables: Mapping[str, Any]) -> Any:
    return {
        "views": 1547,
        "purchases": 89,
        "conversionRate": 0.0575,
        "recommendation": "This product is trending! Consider bundling with related items for better value.",
        "lastUpdated": datetime.now(timezone.utc).isoformat(),
    }


# Checked in order; the first keyword contained in the query wins.
DEFAULT_MOCK_RESPONSES: Sequence[MockResponse] = (
    MockResponse(keyword="relatedProducts", build=_related_products),
    MockResponse(keyword="userReviews", build=_user_reviews),
    MockResponse(keyword="reviewSummary", build=_review_summary),
    MockResponse(keyword="productAnalytics", build=_product_analytics),
)


def fallback_mock_response(query_text: str, variables: Mapping[str, Any] | None) -> dict[str, Any]:
    return {"message": f"Mock data for: {query_text}", "variables": dict(variables or {})}


def mock_product(product_id: str) -> dict[str, Any]:
    return {
        "product": {
            "id": product_id,
            "name": f"Test Product {product_id}",
            "description": f"This is a test product with ID {product_id}. It demonstrates data requirements functionality.",
            "price": 29.99,
            "categoryName": "Test Category",
            "categoryId": "test-category-001",
            "imageUrl": f"https://via.placeholder.com/600x400.png?text=Test+Product+{product_id}",
            "inStock": True,
            "specs": {"weight": "2.5kg", "dimensions": "15x25x8 cm"},
        }
    }


def product_detail(product_id: str) -> dict[str, Any]:
    return {
        "product": {
            "id": product_id,
            "name": f"Awesome Mock Product {product_id}",
            "description": f"This is the detailed description for the fantastic product {product_id}.",
            "price": 49.99,
            "categoryName": "Mock Category Alpha",
            "categoryId": "mock-cat-alpha-001",
            "imageUrl": f"https://via.placeholder.com/600x400.png?text=Product+{product_id.replace(' ', '+')}",
            "specs": {"weight": "1.2kg", "dimensions": "10x20x5 cm"},
        }
    }


__all__ = [
    "DEFAULT_MOCK_RESPONSES",
    "MockResponse",
    "fallback_mock_response",
    "mock_product",
    "product_detail",
]
