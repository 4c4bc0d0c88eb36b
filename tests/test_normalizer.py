from costbridge.normalizer import UsageNormalizer, UsageSnapshot

from conftest import make_entry


class TestUsageNormalizer:
    def test_cumulative_delta(self) -> "None":
        normalizer = UsageNormalizer()
        assert normalizer.normalize("ingested_bytes", 150, 100, is_rate=False) == 50
        assert normalizer.warnings == []

    def test_missing_prior_is_a_warning(self) -> "None":
        normalizer = UsageNormalizer()
        assert normalizer.normalize("ingested_bytes", 150, None, is_rate=False) == 150
        assert len(normalizer.warnings) == 1
        assert "ingested_bytes" in normalizer.warnings[0]

    def test_rate_passes_through(self) -> "None":
        normalizer = UsageNormalizer()
        assert normalizer.normalize("host_count", 42, 100, is_rate=True) == 42
        assert normalizer.normalize("host_count", 42, None, is_rate=True) == 42
        assert normalizer.warnings == []

    def test_counter_reset_uses_current_value(self) -> "None":
        normalizer = UsageNormalizer()
        assert normalizer.normalize("api_calls", 20, 500, is_rate=False) == 20
        assert len(normalizer.warnings) == 1

    def test_equal_values_normalize_to_zero(self) -> "None":
        normalizer = UsageNormalizer()
        assert normalizer.normalize("api_calls", 75, 75, is_rate=False) == 0


class TestUsageSnapshot:
    def test_sums_repeated_resource_dimensions(self) -> "None":
        snapshot = UsageSnapshot.from_entries(
            [
                make_entry(measurements={"host_count": 3, "agent_host_count": 1}),
                make_entry(measurements={"host_count": 4}),
            ]
        )
        assert snapshot.value("pub-1", "host_count") == 7
        assert snapshot.value("pub-1", "agent_host_count") == 1
        assert len(snapshot) == 2

    def test_unset_values_count_as_zero(self) -> "None":
        snapshot = UsageSnapshot.from_entries([make_entry(measurements={"host_count": None})])
        assert snapshot.value("pub-1", "host_count") == 0.0

    def test_joins_on_resource_not_position(self) -> "None":
        # same resources, paginated in a different order
        current = UsageSnapshot.from_entries(
            [
                make_entry(public_id="a", measurements={"bytes": 10}),
                make_entry(public_id="b", measurements={"bytes": 50}),
            ]
        )
        prior = UsageSnapshot.from_entries(
            [
                make_entry(public_id="b", measurements={"bytes": 20}),
                make_entry(public_id="a", measurements={"bytes": 4}),
            ]
        )
        normalizer = UsageNormalizer()
        deltas = {
            obs.entry.public_id: normalizer.normalize(
                obs.dimension, obs.value, prior.value(obs.entry.public_id, obs.dimension)
            )
            for obs in current
        }
        assert deltas == {"a": 6, "b": 30}

    def test_missing_key(self) -> "None":
        assert UsageSnapshot.from_entries([]).value("pub-1", "host_count") is None
