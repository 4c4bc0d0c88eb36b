import re
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import structlog

from costbridge.models import BillingCharge, UsageEntry, UsagePage, Window
from costbridge.provider.base import SourceProfile
from costbridge.windows import DAY

logger = structlog.get_logger()

OPENAI_BASE_URL = "https://api.openai.com/v1/organization"

# usage endpoints reporting token counts, walked in this order
USAGE_ENDPOINTS: "tuple[str, ...]" = ("completions", "embeddings", "moderations")

# one daily bucket per window; 31 is the API maximum for 1d buckets
_BUCKET_LIMIT = 31

_SNAPSHOT_DATE_RE = re.compile(r"-\d{4}-\d{2}-\d{2}")
_SEPARATOR_RE = re.compile(r"[-_\s]+")


def model_key(name: "str") -> "str":
    """
    reduces a model snapshot or cost line item name to the key usage
    and cost are joined on: "gpt-4o-2024-08-06, input" and "GPT-4o"
    both become "gpt4o".
    """
    key = name.split(",", 1)[0].strip().lower()
    key = _SNAPSHOT_DATE_RE.sub("", key)
    return _SEPARATOR_RE.sub("", key)


OPENAI_PROFILE = SourceProfile(
    domain="openai",
    cost_source="AI",
    api_client_version="v1",
    resolutions=(DAY,),
    list_priced=False,
    cumulative_billing=False,
    usage_unit="tokens",
    usage_dimension=model_key,
)


def _encode_cursor(endpoint: "int", page: "str") -> "str":
    return f"{endpoint}:{page}"


def _decode_cursor(cursor: "str | None") -> "tuple[int, str]":
    if not cursor:
        return 0, ""
    index, _, page = cursor.partition(":")
    return int(index), page


def _bucket_time(bucket: "Mapping[str, Any]") -> "datetime":
    start = bucket.get("start_time")
    if not isinstance(start, (int, float)):
        raise ValueError(f"bucket has no start_time: {bucket!r}")
    return datetime.fromtimestamp(start, tz=timezone.utc)


def _buckets(payload: "Mapping[str, Any]", kind: "str") -> "list[Mapping[str, Any]]":
    data = payload.get("data")
    if not isinstance(data, list):
        raise ValueError(f"{kind} response has no data list")
    for bucket in data:
        if not isinstance(bucket, dict) or not isinstance(bucket.get("results", []), list):
            raise ValueError(f"malformed {kind} bucket: {bucket!r}")
    return data


def _json_object(resp: "httpx.Response") -> "Mapping[str, Any]":
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object from {resp.request.url.path}")
    return data


def project_ids(payload: "Mapping[str, Any]") -> "set[str]":
    ids: "set[str]" = set()
    for bucket in payload.get("data") or []:
        if not isinstance(bucket, dict):
            continue
        for result in bucket.get("results") or []:
            if isinstance(result, dict) and result.get("project_id"):
                ids.add(str(result["project_id"]))
    return ids


def parse_usage_buckets(
    payload: "Mapping[str, Any]",
    endpoint: "str",
    project_names: "Mapping[str, str]",
) -> "list[UsageEntry]":
    """
    parses one page of an organization usage endpoint grouped by
    project and model. Each result becomes an entry measuring its
    prompt plus generated tokens under the model's key. Raises
    ValueError when the payload does not look like a usage page.
    """
    entries: "list[UsageEntry]" = []
    for bucket in _buckets(payload, "usage"):
        timestamp = _bucket_time(bucket)
        for result in bucket.get("results", []):
            if not isinstance(result, dict):
                raise ValueError(f"malformed usage result: {result!r}")
            project_id = result.get("project_id") or "unknown"
            model = result.get("model") or "unknown"
            tokens = int(result.get("input_tokens") or 0) + int(
                result.get("output_tokens") or 0
            )
            entries.append(
                UsageEntry(
                    id=f"{project_id}/{model}",
                    public_id=project_id,
                    org_name=project_names.get(project_id, "unknown"),
                    region="",
                    product_family=endpoint,
                    measurements={model_key(model): float(tokens)},
                    timestamp=timestamp,
                )
            )
    return entries


def parse_cost_buckets(
    payload: "Mapping[str, Any]",
    project_names: "Mapping[str, str]",
) -> "list[BillingCharge]":
    """
    parses one page of the costs endpoint grouped by project and line
    item. Input and output line items of a model share a product name,
    so they land on the same billing item.
    """
    charges: "list[BillingCharge]" = []
    for bucket in _buckets(payload, "costs"):
        date = _bucket_time(bucket)
        for result in bucket.get("results", []):
            if not isinstance(result, dict):
                raise ValueError(f"malformed cost result: {result!r}")
            project_id = result.get("project_id") or "unknown"
            model = str(result.get("line_item") or "unknown").split(",", 1)[0].strip()
            amount = result.get("amount") or {}
            charges.append(
                BillingCharge(
                    id=f"{project_id}/{model}",
                    date=date,
                    public_id=project_id,
                    org_name=project_names.get(project_id, "unknown"),
                    region="",
                    product_name=model,
                    charge_type="total",
                    cost=float(amount.get("value") or 0.0),
                    description=f"OpenAI usage for model {model}",
                    resource_type="AI Model",
                )
            )
    return charges


class OpenAISource:
    """
    OpenAISource implements the UsageSource protocol on OpenAI's
    organization usage and costs APIs. OpenAI publishes no price
    listing, so its line items carry the billed cost from the costs API
    with token usage attached as the quantity.

    Usage is read endpoint by endpoint; the cursor handed back to the
    fetcher records which endpoint and which page comes next. Project
    names are resolved once and cached for the source's lifetime.
    """

    def __init__(
        self,
        api_key: "str",
        org_id: "str" = "",
        timeout: "float" = 30.0,
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        headers: "dict[str, str]" = {"Authorization": f"Bearer {api_key}"}
        if org_id:
            headers["OpenAI-Organization"] = org_id
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
        )
        # caches: project_id -> project_name
        self._project_names: "dict[str, str]" = {}

    @property
    def name(self) -> "str":
        return "openai"

    @property
    def profile(self) -> "SourceProfile":
        return OPENAI_PROFILE

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def fetch_usage_page(
        self,
        window: "Window",
        cursor: "str | None",
    ) -> "UsagePage":
        index, page = _decode_cursor(cursor)
        endpoint = USAGE_ENDPOINTS[index]
        following = (
            _encode_cursor(index + 1, "") if index + 1 < len(USAGE_ENDPOINTS) else None
        )

        params: "dict[str, Any]" = {
            "start_time": int(window.start.timestamp()),
            "end_time": int(window.end.timestamp()),
            "bucket_width": "1d",
            "limit": _BUCKET_LIMIT,
            "group_by": ["project_id", "model"],
        }
        if page:
            params["page"] = page

        logger.debug("openai_fetch_usage", endpoint=endpoint, page=page)
        resp = await self._client.get(f"{OPENAI_BASE_URL}/usage/{endpoint}", params=params)

        # keys without access to an endpoint get 403; skip to the next one
        if resp.status_code == 403:
            logger.debug("openai_endpoint_forbidden", endpoint=endpoint)
            return UsagePage(entries=(), next_cursor=following)
        resp.raise_for_status()

        data = _json_object(resp)
        names = await self._resolve_project_names(project_ids(data))
        entries = parse_usage_buckets(data, endpoint, names)

        next_cursor = following
        if data.get("has_more") and data.get("next_page"):
            next_cursor = _encode_cursor(index, str(data["next_page"]))

        return UsagePage(entries=tuple(entries), next_cursor=next_cursor)

    async def fetch_billing(self, window: "Window") -> "list[BillingCharge]":
        """
        fetches the window's costs, following pagination.
        """
        charges: "list[BillingCharge]" = []
        next_page = ""

        while True:
            params: "dict[str, Any]" = {
                "start_time": int(window.start.timestamp()),
                "end_time": int(window.end.timestamp()),
                "bucket_width": "1d",
                "group_by": ["project_id", "line_item"],
            }
            if next_page:
                params["page"] = next_page

            logger.debug("openai_fetch_costs", page=next_page)
            resp = await self._client.get(f"{OPENAI_BASE_URL}/costs", params=params)
            resp.raise_for_status()

            data = _json_object(resp)
            names = await self._resolve_project_names(project_ids(data))
            charges.extend(parse_cost_buckets(data, names))

            # break if there are no more pages to fetch
            if not data.get("has_more") or not data.get("next_page"):
                break

            next_page = str(data["next_page"])

        logger.debug("openai_costs_done", record_count=len(charges))
        return charges

    async def fetch_price_listing(self) -> "list[Mapping[str, Any]]":
        return []

    async def _resolve_project_names(self, ids: "set[str]") -> "dict[str, str]":
        return {project_id: await self._resolve_project_name(project_id) for project_id in ids}

    async def _resolve_project_name(self, project_id: "str") -> "str":
        """
        resolves project ID to human-readable name, with caching. A
        failed lookup yields "unknown" and is retried next time.
        """
        if project_id in ("", "unknown"):
            return "unknown"

        if project_id in self._project_names:
            return self._project_names[project_id]

        try:
            resp = await self._client.get(f"{OPENAI_BASE_URL}/projects/{project_id}")
            if resp.status_code != 200:
                return "unknown"
            name = str(resp.json().get("name", "unknown"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "openai_project_resolve_failed", project_id=project_id, error=str(exc)
            )
            return "unknown"

        self._project_names[project_id] = name
        return name
