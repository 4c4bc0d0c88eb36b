from datetime import datetime, timezone

import httpx
import pytest
import respx

from costbridge.models import Window
from costbridge.provider.openai import (
    OPENAI_BASE_URL,
    OPENAI_PROFILE,
    USAGE_ENDPOINTS,
    OpenAISource,
    model_key,
    parse_cost_buckets,
    parse_usage_buckets,
)

# 2024-03-16T00:00:00Z
DAY_START = 1710547200


def _usage_payload(
    results: "list[dict[str, object]]",
    next_page: "str | None" = None,
) -> "dict[str, object]":
    return {
        "object": "page",
        "data": [
            {
                "object": "bucket",
                "start_time": DAY_START,
                "end_time": DAY_START + 86400,
                "results": results,
            }
        ],
        "has_more": next_page is not None,
        "next_page": next_page,
    }


def _completion(model: "str", input_tokens: "int", output_tokens: "int") -> "dict[str, object]":
    return {
        "object": "organization.usage.completions.result",
        "project_id": "proj-1",
        "model": model,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "num_model_requests": 3,
    }


def _cost(line_item: "str", value: "float") -> "dict[str, object]":
    return {
        "object": "organization.costs.result",
        "amount": {"value": value, "currency": "usd"},
        "line_item": line_item,
        "project_id": "proj-1",
    }


def _mock_empty_usage_endpoints(skip: "str" = "completions") -> "None":
    for endpoint in USAGE_ENDPOINTS:
        if endpoint == skip:
            continue
        respx.get(f"{OPENAI_BASE_URL}/usage/{endpoint}").mock(
            return_value=httpx.Response(200, json=_usage_payload([]))
        )


def _mock_project() -> "respx.Route":
    return respx.get(f"{OPENAI_BASE_URL}/projects/proj-1").mock(
        return_value=httpx.Response(200, json={"name": "Research"})
    )


class TestModelKey:
    def test_snapshot_and_billing_names_meet(self) -> "None":
        assert model_key("gpt-4o-2024-08-06") == "gpt4o"
        assert model_key("GPT-4o") == "gpt4o"
        assert model_key("gpt-4o-2024-08-06, input") == "gpt4o"
        assert model_key("text_embedding 3 small") == "textembedding3small"

    def test_profile_uses_model_key(self) -> "None":
        assert OPENAI_PROFILE.usage_dimension is model_key
        assert OPENAI_PROFILE.list_priced is False
        assert OPENAI_PROFILE.cumulative_billing is False


class TestParseBuckets:
    def test_usage_sums_prompt_and_generated_tokens(self) -> "None":
        entries = parse_usage_buckets(
            _usage_payload([_completion("gpt-4o-2024-08-06", 100, 50)]),
            "completions",
            {"proj-1": "Research"},
        )

        assert len(entries) == 1
        entry = entries[0]
        assert entry.public_id == "proj-1"
        assert entry.org_name == "Research"
        assert entry.product_family == "completions"
        assert entry.measurements == {"gpt4o": 150.0}
        assert entry.timestamp == datetime(2024, 3, 16, tzinfo=timezone.utc)

    def test_usage_rejects_payload_without_data(self) -> "None":
        with pytest.raises(ValueError):
            parse_usage_buckets({"object": "page"}, "completions", {})

    def test_costs_group_line_items_by_model(self) -> "None":
        payload = _usage_payload(
            [_cost("gpt-4o-2024-08-06, input", 1.5), _cost("gpt-4o-2024-08-06, output", 2.5)]
        )
        charges = parse_cost_buckets(payload, {"proj-1": "Research"})

        assert [c.product_name for c in charges] == ["gpt-4o-2024-08-06"] * 2
        assert [c.cost for c in charges] == [1.5, 2.5]
        assert charges[0].charge_type == "total"
        assert charges[0].resource_type == "AI Model"
        assert charges[0].description == "OpenAI usage for model gpt-4o-2024-08-06"

    def test_costs_reject_malformed_result(self) -> "None":
        payload = {"data": [{"start_time": DAY_START, "results": ["oops"]}]}
        with pytest.raises(ValueError):
            parse_cost_buckets(payload, {})


class TestOpenAISource:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_usage_page_walks_endpoints(self, day_window: "Window") -> "None":
        route = respx.get(f"{OPENAI_BASE_URL}/usage/completions").mock(
            return_value=httpx.Response(
                200, json=_usage_payload([_completion("gpt-4o", 10, 5)])
            )
        )
        _mock_empty_usage_endpoints()
        _mock_project()

        source = OpenAISource(api_key="sk-test", org_id="org-1")
        page = await source.fetch_usage_page(day_window, None)

        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.headers["openai-organization"] == "org-1"
        params = request.url.params
        assert params["start_time"] == str(DAY_START)
        assert params["bucket_width"] == "1d"
        assert params.get_list("group_by") == ["project_id", "model"]

        assert page.entries[0].measurements == {"gpt4o": 15.0}
        assert page.entries[0].org_name == "Research"
        # the next endpoint follows once completions is exhausted
        assert page.next_cursor is not None

        cursor = page.next_cursor
        while cursor is not None:
            page = await source.fetch_usage_page(day_window, cursor)
            assert page.entries == ()
            cursor = page.next_cursor

        await source.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_usage_page_follows_api_pages(self, day_window: "Window") -> "None":
        route = respx.get(f"{OPENAI_BASE_URL}/usage/completions").mock(
            side_effect=[
                httpx.Response(
                    200,
                    json=_usage_payload([_completion("gpt-4o", 1, 1)], next_page="page_2"),
                ),
                httpx.Response(200, json=_usage_payload([_completion("gpt-4o", 2, 2)])),
            ]
        )
        _mock_project()

        source = OpenAISource(api_key="sk-test")
        first = await source.fetch_usage_page(day_window, None)
        second = await source.fetch_usage_page(day_window, first.next_cursor)
        await source.close()

        assert route.calls[1].request.url.params["page"] == "page_2"
        assert second.entries[0].measurements == {"gpt4o": 4.0}

    @pytest.mark.asyncio
    @respx.mock
    async def test_forbidden_endpoint_is_skipped(self, day_window: "Window") -> "None":
        respx.get(f"{OPENAI_BASE_URL}/usage/completions").mock(
            return_value=httpx.Response(403)
        )

        source = OpenAISource(api_key="sk-test")
        page = await source.fetch_usage_page(day_window, None)
        await source.close()

        assert page.entries == ()
        assert page.next_cursor is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_raises(self, day_window: "Window") -> "None":
        respx.get(f"{OPENAI_BASE_URL}/usage/completions").mock(
            return_value=httpx.Response(500)
        )

        source = OpenAISource(api_key="sk-test")
        with pytest.raises(httpx.HTTPStatusError):
            await source.fetch_usage_page(day_window, None)
        await source.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_billing_follows_pages(self, day_window: "Window") -> "None":
        route = respx.get(f"{OPENAI_BASE_URL}/costs").mock(
            side_effect=[
                httpx.Response(
                    200,
                    json=_usage_payload([_cost("gpt-4o, input", 1.0)], next_page="page_2"),
                ),
                httpx.Response(200, json=_usage_payload([_cost("gpt-4o, output", 2.0)])),
            ]
        )
        _mock_project()

        source = OpenAISource(api_key="sk-test")
        charges = await source.fetch_billing(day_window)
        await source.close()

        assert route.call_count == 2
        assert route.calls[0].request.url.params.get_list("group_by") == [
            "project_id",
            "line_item",
        ]
        assert [c.cost for c in charges] == [1.0, 2.0]
        assert all(c.org_name == "Research" for c in charges)

    @pytest.mark.asyncio
    @respx.mock
    async def test_project_name_is_cached(self, day_window: "Window") -> "None":
        respx.get(f"{OPENAI_BASE_URL}/costs").mock(
            return_value=httpx.Response(200, json=_usage_payload([_cost("gpt-4o", 1.0)]))
        )
        project = _mock_project()

        source = OpenAISource(api_key="sk-test")
        await source.fetch_billing(day_window)
        await source.fetch_billing(day_window)
        await source.close()

        assert project.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_unresolvable_project_is_unknown(self, day_window: "Window") -> "None":
        respx.get(f"{OPENAI_BASE_URL}/costs").mock(
            return_value=httpx.Response(200, json=_usage_payload([_cost("gpt-4o", 1.0)]))
        )
        respx.get(f"{OPENAI_BASE_URL}/projects/proj-1").mock(
            return_value=httpx.Response(404)
        )

        source = OpenAISource(api_key="sk-test")
        charges = await source.fetch_billing(day_window)
        await source.close()

        assert charges[0].org_name == "unknown"

    @pytest.mark.asyncio
    async def test_has_no_price_listing(self) -> "None":
        source = OpenAISource(api_key="sk-test")
        assert await source.fetch_price_listing() == []
        await source.close()
