import asyncio

import pytest
from prometheus_client import CollectorRegistry

from costbridge.__main__ import build_pipelines
from costbridge.config import Config
from costbridge.metrics import PipelineMetrics


class TestBuildPipelines:
    @pytest.mark.asyncio
    async def test_one_pipeline_per_enabled_provider(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        config = Config(
            datadog_api_key="api",
            datadog_app_key="app",
            openai_api_key="sk-test",
        )

        pipelines = build_pipelines(config, PipelineMetrics(registry), asyncio.Event())

        assert [p.source.name for p in pipelines] == ["datadog", "openai"]
        assert [p.source.profile.domain for p in pipelines] == ["datadog", "openai"]
        for pipeline in pipelines:
            await pipeline.close()

    @pytest.mark.asyncio
    async def test_datadog_needs_both_keys(self, registry: "CollectorRegistry") -> "None":
        config = Config(datadog_api_key="api")
        assert build_pipelines(config, PipelineMetrics(registry), asyncio.Event()) == []
