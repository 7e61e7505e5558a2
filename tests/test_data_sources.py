import json

import httpx
import pytest

from osdl_runtime.config import RuntimeSettings
from osdl_runtime.data_sources import HttpDataSource, MockDataSource, SourceRouter, validate_source
from osdl_runtime.error_channel import LoggingErrorChannel
from osdl_runtime.errors import ConfigError, FetchError
from osdl_runtime.orchestrator import DataRequirementOrchestrator


def make_http_source(handler, **kwargs) -> HttpDataSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.example.test")
    return HttpDataSource(client=client, **kwargs)


@pytest.mark.parametrize(
    "source",
    [
        None,
        {"query": "x"},
        {"type": "ftp", "query": "x"},
        {"type": "rql"},
        {"type": "apiEndpoint"},
        {"type": "graphQLQuery", "query": ""},
    ],
)
def test_validate_source_rejects_unfetchable_sources(source):
    with pytest.raises(ConfigError):
        validate_source(source)


@pytest.mark.asyncio
async def test_mock_source_serves_canned_responses():
    source = MockDataSource()

    summary = await source.fetch({"type": "mockData", "query": "query reviewSummary { averageRating }"})
    related = await source.fetch({"type": "mockData", "query": "relatedProducts"})
    other = await source.fetch({"type": "mockData", "query": "somethingElse", "variables": {"id": 1}})

    assert summary["averageRating"] == 4.7
    assert [product["id"] for product in related] == ["rel-1", "rel-2", "rel-3"]
    assert other == {"message": "Mock data for: somethingElse", "variables": {"id": 1}}


@pytest.mark.asyncio
async def test_mock_source_prefers_fixture_files(tmp_path):
    (tmp_path / "userReviews.json").write_text(json.dumps([{"rating": 1}]), encoding="utf-8")
    source = MockDataSource(base_path=tmp_path)

    assert await source.fetch({"type": "mockData", "query": "userReviews"}) == [{"rating": 1}]


@pytest.mark.asyncio
async def test_api_endpoint_applies_variables_and_data_path():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"result": {"items": [1, 2]}})

    source = make_http_source(handler)
    value = await source.fetch(
        {"type": "apiEndpoint", "query": "/products", "variables": {"inStock": True, "page": 2}, "dataPath": "result.items"}
    )
    await source.aclose()

    assert value == [1, 2]
    assert seen[0].url.params["inStock"] == "true"
    assert seen[0].url.params["page"] == "2"


@pytest.mark.asyncio
async def test_graphql_errors_raise_fetch_error():
    source = make_http_source(lambda request: httpx.Response(200, json={"errors": [{"message": "bad field"}]}))
    with pytest.raises(FetchError):
        await source.fetch({"type": "graphQLQuery", "query": "{ nope }"})
    await source.aclose()


@pytest.mark.asyncio
async def test_http_failures_raise_fetch_error():
    source = make_http_source(lambda request: httpx.Response(503))
    with pytest.raises(FetchError):
        await source.fetch({"type": "apiEndpoint", "query": "/down"})
    await source.aclose()


@pytest.mark.asyncio
async def test_rql_errors_are_returned_as_data():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"product": {"contract": "getProduct"}}
        return httpx.Response(
            200,
            json={"errors": [{"queryKey": "product", "message": "not found", "code": "NOT_FOUND"}]},
        )

    source = make_http_source(handler, rql_endpoint="/api/rql")
    result = await source.fetch({"type": "rql", "queries": {"product": {"contract": "getProduct"}}})
    await source.aclose()

    assert result == {"error": 'QueryKey "product": not found (NOT_FOUND)', "data": None}


@pytest.mark.asyncio
async def test_rql_without_endpoint_returns_empty_data():
    assert await HttpDataSource().execute_rql({"q": {}}) == {"data": {}}


@pytest.mark.asyncio
async def test_router_page_sources():
    router = SourceRouter.from_settings(RuntimeSettings())

    mock = await router.fetch_page({"type": "mockData", "sourceParams": {"mockProductId": "9"}})
    detail = await router.fetch_page({"type": "productDetail", "sourceParams": {"productId": "42"}})
    static = await router.fetch_page({"type": "staticContent", "sourceParams": {"content": {"title": "About"}}})

    assert mock["product"]["name"] == "Test Product 9"
    assert detail["product"]["name"] == "Awesome Mock Product 42"
    assert static == {"title": "About"}
    with pytest.raises(ConfigError):
        await router.fetch_page({"type": "productDetail", "sourceParams": {}})


@pytest.mark.asyncio
async def test_router_rejects_cms_collections():
    with pytest.raises(FetchError):
        await SourceRouter().fetch({"type": "cmsCollection", "query": "posts"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"json": [1, 2]},
        {"text": "<html>gateway error</html>"},
    ],
)
async def test_malformed_page_rql_responses_raise_fetch_error(body):
    router = SourceRouter(http=make_http_source(lambda request: httpx.Response(200, **body), rql_endpoint="/api/rql"))
    with pytest.raises(FetchError):
        await router.fetch_page({"type": "rql", "sourceParams": {"queries": {"product": {"contract": "getProduct"}}}})
    await router.aclose()


@pytest.mark.asyncio
async def test_malformed_page_data_is_reported_not_raised():
    channel = LoggingErrorChannel()
    router = SourceRouter(http=make_http_source(lambda request: httpx.Response(200, json=[1, 2]), rql_endpoint="/api/rql"))
    orchestrator = DataRequirementOrchestrator(router=router, error_channel=channel)

    data = await orchestrator.fetch_page_data({"type": "rql", "sourceParams": {"queries": {"q": {}}}}, {})
    await orchestrator.aclose()

    assert data is None
    assert channel.reported[0]["error"] == "FetchError"
    assert channel.reported[0]["requirement_key"] == "page"
