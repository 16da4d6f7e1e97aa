"""Tests for batching and the paced batch loader."""

import math
from unittest.mock import MagicMock

import numpy as np
import pytest

from frame_loader.embedding import IndexRecord
from frame_loader.errors import StoreError
from frame_loader.indexer import iter_batches, load_records
from frame_loader.store import IndexSpec

from .conftest import FakeStore


def make_records(n):
    return [IndexRecord(id=f"c/f/{i}.00", vector=np.zeros(8, dtype=np.float32), primary_key=i) for i in range(n)]


class TestIterBatches:
    @pytest.mark.parametrize("n,size", [(0, 3), (1, 3), (3, 3), (10, 3), (10_001, 10_000)])
    def test_batch_count_and_order(self, n, size):
        items = list(range(n))

        batches = list(iter_batches(items, size))

        assert len(batches) == math.ceil(n / size)
        assert all(len(b) <= size for b in batches)
        assert [x for b in batches for x in b] == items

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(iter_batches([1, 2], 0))


class TestLoadRecords:
    def test_inserts_in_batches_then_flushes_and_indexes(self, settings):
        store = FakeStore()
        sleep = MagicMock()
        records = make_records(7)

        report = load_records(store, records, settings.load, settings.store, sleep=sleep)

        assert store.ops() == ["insert", "insert", "insert", "flush", "create_index"]
        inserted = [r for call in store.calls if call[0] == "insert" for r in call[2]]
        assert inserted == records
        assert [len(c[2]) for c in store.calls if c[0] == "insert"] == [3, 3, 1]
        assert report.batches == 3 and report.records == 7

    def test_pauses_between_batches_only(self, settings):
        sleep = MagicMock()

        load_records(FakeStore(), make_records(7), settings.load, settings.store, sleep=sleep)

        assert sleep.call_count == 2
        sleep.assert_called_with(settings.load.pace_seconds)

    def test_single_batch_has_no_pause(self, settings):
        sleep = MagicMock()
        load_records(FakeStore(), make_records(2), settings.load, settings.store, sleep=sleep)
        sleep.assert_not_called()

    def test_index_spec_comes_from_store_config(self, settings):
        store = FakeStore()

        load_records(store, make_records(1), settings.load, settings.store, sleep=MagicMock())

        _, name, spec = store.calls[-1]
        assert name == "frames"
        assert spec == IndexSpec(field_name="cl_ha", index_type="IVF_SQ8", metric_type="IP", params={"nlist": 4})

    def test_nothing_to_load_makes_no_store_calls(self, settings):
        store = FakeStore()

        report = load_records(store, [], settings.load, settings.store, sleep=MagicMock())

        assert store.calls == []
        assert report.batches == 0

    def test_store_error_propagates(self, settings):
        store = FakeStore(fail_on="flush", failures=1)

        with pytest.raises(StoreError):
            load_records(store, make_records(4), settings.load, settings.store, sleep=MagicMock())

        assert "create_index" not in store.ops()
