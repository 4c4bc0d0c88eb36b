import asyncio
import json
import signal
import sys

import structlog
from prometheus_client import CollectorRegistry, write_to_textfile

from costbridge.cli import Invocation, parse_args
from costbridge.config import Config
from costbridge.errors import ConfigError
from costbridge.logging import setup_logging
from costbridge.metrics import PipelineMetrics
from costbridge.models import CostResponse
from costbridge.pipeline import CostPipeline
from costbridge.provider.datadog import (
    DATADOG_POSTPROCESS_RULES,
    DATADOG_PRICING_RULES,
    DatadogSource,
)
from costbridge.provider.openai import OpenAISource
from costbridge.ratelimit import TokenBucket

logger = structlog.get_logger()


def build_pipelines(
    config: "Config",
    metrics: "PipelineMetrics",
    cancel: "asyncio.Event",
) -> "list[CostPipeline]":
    """
    one pipeline per configured provider, each with its own limiter.
    """
    pipelines: "list[CostPipeline]" = []

    if config.datadog_enabled:
        source = DatadogSource(
            api_key=config.datadog_api_key,
            app_key=config.datadog_app_key,
            site=config.datadog_site,
            pricing_url=config.pricing_url,
            timeout=config.http_timeout_seconds,
        )
        pipelines.append(
            CostPipeline(
                source,
                TokenBucket(config.rate_limit_per_second, config.rate_limit_burst),
                pricing_rules=DATADOG_PRICING_RULES,
                postprocess_rules=DATADOG_POSTPROCESS_RULES,
                metrics=metrics,
                max_attempts=config.max_attempts,
                retry_delay=config.retry_delay_seconds,
                cancel=cancel,
                wait_timeout=config.rate_limit_wait_timeout_seconds,
            )
        )
        logger.info("provider_enabled", provider="datadog")

    if config.openai_enabled:
        source = OpenAISource(
            api_key=config.openai_api_key,
            org_id=config.openai_org_id,
            timeout=config.http_timeout_seconds,
        )
        pipelines.append(
            CostPipeline(
                source,
                TokenBucket(
                    config.openai_rate_limit_per_second, config.openai_rate_limit_burst
                ),
                metrics=metrics,
                max_attempts=config.max_attempts,
                retry_delay=config.retry_delay_seconds,
                cancel=cancel,
                wait_timeout=config.rate_limit_wait_timeout_seconds,
            )
        )
        logger.info("provider_enabled", provider="openai")

    return pipelines


async def run(
    invocation: "Invocation",
    registry: "CollectorRegistry",
) -> "list[CostResponse]":
    cancel = asyncio.Event()

    loop = asyncio.get_running_loop()
    # for SIGINT and SIGTERM, stop waiting on the rate limiters
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)

    pipelines = build_pipelines(invocation.config, PipelineMetrics(registry), cancel)
    responses: "list[CostResponse]" = []
    try:
        for pipeline in pipelines:
            responses.extend(await pipeline.get_custom_costs(invocation.request))
    finally:
        for pipeline in pipelines:
            await pipeline.close()
        logger.info("shutdown_complete")

    return responses


def main() -> "None":
    try:
        invocation = parse_args()
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc

    setup_logging(invocation.config.log_level, invocation.config.log_format)

    if not (invocation.config.datadog_enabled or invocation.config.openai_enabled):
        raise SystemExit(
            "No providers configured. Set DD_API_KEY and DD_APP_KEY, "
            "or OPENAI_API_KEY, or pass --config."
        )

    registry = CollectorRegistry()
    responses = asyncio.run(run(invocation, registry))

    json.dump([r.to_dict() for r in responses], sys.stdout, indent=2)
    sys.stdout.write("\n")

    if invocation.metrics_textfile:
        write_to_textfile(invocation.metrics_textfile, registry)
        logger.info("metrics_written", path=invocation.metrics_textfile)


if __name__ == "__main__":
    main()
