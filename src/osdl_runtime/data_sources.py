from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

import httpx

from .config import RuntimeSettings
from .errors import ConfigError, FetchError
from .fixtures import DEFAULT_MOCK_RESPONSES, MockResponse, fallback_mock_response, mock_product, product_detail
from .values import get_path

logger = logging.getLogger(__name__)

SOURCE_TYPES = ("rql", "apiEndpoint", "graphQLQuery", "mockData", "cmsCollection")
PAGE_SOURCE_TYPES = ("mockData", "productDetail", "staticContent", "rql")


class DataSource(Protocol):
    async def fetch(self, source: Mapping[str, Any]) -> Any:
        ...


def validate_source(source: Any) -> Mapping[str, Any]:
    """Reject requirement sources that can never be fetched.

    Raises:
        ConfigError: When the source is missing, untyped, of an unknown type,
            or lacks the query its type needs
    """
    if not isinstance(source, Mapping):
        raise ConfigError("Data requirement has no source")
    source_type = source.get("type")
    if source_type not in SOURCE_TYPES:
        raise ConfigError(f"Unsupported data source type: {source_type!r}", source_type=source_type)
    if source_type == "rql":
        if not source.get("queries"):
            raise ConfigError("RQL source requires 'queries'", source_type=source_type)
    elif source_type in ("apiEndpoint", "graphQLQuery") and not source.get("query"):
        raise ConfigError(f"{source_type} source requires 'query'", source_type=source_type)
    return source


def _query_text(source: Mapping[str, Any]) -> str:
    query = source.get("query")
    if isinstance(query, str):
        return query
    return json.dumps(query if query is not None else "")


def _apply_data_path(payload: Any, data_path: str | None) -> Any:
    return get_path(payload, data_path, None) if data_path else payload


class MockDataSource:
    """Canned responses keyed by query keywords, with optional on-disk fixtures."""

    def __init__(
        self,
        *,
        responses: Sequence[MockResponse] = DEFAULT_MOCK_RESPONSES,
        base_path: Path | None = None,
        latency_ms: int = 0,
    ) -> None:
        self._responses = responses
        self._base_path = base_path
        self._latency_ms = latency_ms

    async def fetch(self, source: Mapping[str, Any]) -> Any:
        if self._latency_ms:
            await asyncio.sleep(self._latency_ms / 1000)
        query_text = _query_text(source)
        variables = source.get("variables") or {}

        fixture = self._load_fixture(query_text)
        if fixture is not None:
            return fixture

        for response in self._responses:
            if response.matches(query_text):
                logger.debug("Serving canned mock response", extra={"keyword": response.keyword})
                return response.build(variables)
        return fallback_mock_response(query_text, variables)

    def _load_fixture(self, query_text: str) -> Any:
        if self._base_path is None:
            return None
        slug = re.sub(r"[^A-Za-z0-9_-]+", "-", query_text).strip("-")
        if not slug:
            return None
        file_path = self._base_path / f"{slug}.json"
        if not file_path.exists():
            return None
        with file_path.open("r", encoding="utf-8") as fp:
            return json.load(fp)


class HttpDataSource:
    """Remote sources over HTTP: RQL contracts, plain JSON endpoints and GraphQL."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        rql_endpoint: str | None = None,
        graphql_endpoint: str = "/api/graphql",
        base_url: str | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._client = client
        self._rql_endpoint = rql_endpoint
        self._graphql_endpoint = graphql_endpoint
        self._base_url = base_url
        self._timeout_s = timeout_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url or "", timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def fetch(self, source: Mapping[str, Any]) -> Any:
        source_type = source.get("type")
        try:
            if source_type == "rql":
                return await self.execute_rql(source.get("queries"))
            if source_type == "apiEndpoint":
                return await self._fetch_endpoint(source)
            if source_type == "graphQLQuery":
                return await self._fetch_graphql(source)
        except httpx.HTTPError as exc:
            raise FetchError(f"{source_type} request failed: {exc}", source_type=source_type) from exc
        except ValueError as exc:
            raise FetchError(f"{source_type} returned invalid JSON", source_type=source_type) from exc
        raise ConfigError(f"HTTP data source cannot serve {source_type!r}", source_type=source_type)

    async def execute_rql(self, queries: Any) -> Any:
        if not self._rql_endpoint:
            logger.warning("RQL endpoint not configured, returning empty data")
            return {"data": {}}
        response = await self._get_client().post(self._rql_endpoint, json=queries)
        response.raise_for_status()
        result = response.json()
        if not isinstance(result, dict):
            raise FetchError(f"RQL endpoint returned {type(result).__name__}, expected an object", source_type="rql")
        errors = result.get("errors") or []
        if errors:
            message = "; ".join(
                f'QueryKey "{error.get("queryKey")}": {error.get("message")} ({error.get("code")})' for error in errors
            )
            logger.warning("RQL returned errors", extra={"errors": message})
            return {"error": message, "data": None}
        return result.get("data")

    async def _fetch_endpoint(self, source: Mapping[str, Any]) -> Any:
        variables = source.get("variables") or {}
        params = {key: _param_value(value) for key, value in variables.items()}
        response = await self._get_client().get(
            source["query"],
            params=params or None,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        return _apply_data_path(response.json(), source.get("dataPath"))

    async def _fetch_graphql(self, source: Mapping[str, Any]) -> Any:
        response = await self._get_client().post(
            self._graphql_endpoint,
            json={"query": source["query"], "variables": source.get("variables") or {}},
        )
        response.raise_for_status()
        result = response.json()
        if not isinstance(result, dict):
            raise FetchError(f"GraphQL endpoint returned {type(result).__name__}, expected an object", source_type="graphQLQuery")
        if result.get("errors"):
            message = ", ".join(str(error.get("message")) for error in result["errors"])
            raise FetchError(f"GraphQL errors: {message}", source_type="graphQLQuery")
        return _apply_data_path(result.get("data"), source.get("dataPath"))


def _param_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class SourceRouter:
    """Dispatches a resolved source descriptor to the data source serving its ``type``."""

    def __init__(self, *, mock: DataSource | None = None, http: HttpDataSource | None = None) -> None:
        self._mock = mock or MockDataSource()
        self._http = http or HttpDataSource()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "SourceRouter":
        return cls(
            mock=MockDataSource(base_path=settings.mock_fixtures_dir, latency_ms=settings.mock_latency_ms),
            http=HttpDataSource(
                rql_endpoint=settings.rql_endpoint,
                graphql_endpoint=settings.graphql_endpoint,
                base_url=settings.api_base_url,
                timeout_s=settings.http_timeout_s,
            ),
        )

    async def fetch(self, source: Mapping[str, Any]) -> Any:
        validate_source(source)
        source_type = source["type"]
        if source_type == "mockData":
            return await self._mock.fetch(source)
        if source_type == "cmsCollection":
            raise FetchError("Data source type 'cmsCollection' is not yet implemented", source_type=source_type)
        return await self._http.fetch(source)

    async def fetch_page(self, data_source: Mapping[str, Any]) -> Any:
        """Fetch the page-level ``dataSource`` (already interpolated against route params)."""
        source_type = data_source.get("type")
        params = data_source.get("sourceParams") or {}
        if source_type == "mockData":
            return mock_product(str(params.get("mockProductId") or "123"))
        if source_type == "productDetail":
            product_id = params.get("productId")
            if not product_id:
                raise ConfigError("productDetail data source requires 'productId'", source_type=source_type)
            return product_detail(str(product_id))
        if source_type == "staticContent":
            return params.get("content") or {"message": "No static content defined in sourceParams."}
        if source_type == "rql":
            try:
                return await self._http.execute_rql(params.get("queries"))
            except httpx.HTTPError as exc:
                raise FetchError(f"Page RQL request failed: {exc}", source_type=source_type) from exc
            except ValueError as exc:
                raise FetchError("Page RQL endpoint returned invalid JSON", source_type=source_type) from exc
        raise ConfigError(f"Unsupported page data source type: {source_type!r}", source_type=source_type)

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = [
    "DataSource",
    "HttpDataSource",
    "MockDataSource",
    "PAGE_SOURCE_TYPES",
    "SOURCE_TYPES",
    "SourceRouter",
    "validate_source",
]
