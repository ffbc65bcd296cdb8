"""Tests for trickle.engine.descriptor and trickle.engine.registry."""

import pytest

from trickle.core.errors import ValidationError, WorkDescriptorNotFoundError
from trickle.core.settings import EngineSettings
from trickle.engine.context import ExecutionContext
from trickle.engine.cursor import Slice
from trickle.engine.descriptor import SequenceWorkDescriptor
from trickle.engine.registry import WorkRegistry, default_registry, register_work

from conftest import ItemsWork, Journal, NumbersWork, RecordedSleep


class TestSequenceWorkDescriptor:
    def test_produces_from_start(self):
        work = ItemsWork(Journal(), ["a", "b", "c"])
        assert list(work.produce_items(None)) == [("a", "0"), ("b", "1"), ("c", "2")]

    def test_resumes_after_cursor(self):
        work = ItemsWork(Journal(), ["a", "b", "c"])
        assert list(work.produce_items("1")) == [("c", "2")]

    def test_estimate_and_cursor_key(self):
        work = ItemsWork(Journal(), ["a", "b"])
        assert work.estimate_count() == 2
        assert work.cursor_key("10") > work.cursor_key("9")


class TestRangeWorkDescriptor:
    def test_prepare_uses_settings(self):
        settings = EngineSettings(_env_file=None, batch_size=100, sub_batch_size=10, sub_batch_pause_ms=5)
        work = NumbersWork(Journal(), 1, 1000).prepare(ExecutionContext(), settings)
        assert (work.batch_size, work.sub_batch_size, work.sub_batch_pause_ms) == (100, 10, 5)

    def test_explicit_sizes_win_and_sub_batch_is_clamped(self):
        settings = EngineSettings(_env_file=None, batch_size=100, sub_batch_size=10)
        work = NumbersWork(Journal(), 1, 1000, batch_size=20, sub_batch_size=50).prepare(ExecutionContext(), settings)
        assert work.batch_size == 20
        assert work.sub_batch_size == 20

    def test_produce_items_yields_slices(self):
        work = NumbersWork(Journal(), 1, 10, batch_size=3).prepare(ExecutionContext())
        items = list(work.produce_items(None))
        assert [cursor for _, cursor in items] == ["3", "6", "9", "10"]
        assert isinstance(items[0][0], Slice)
        assert [(s.low, s.high) for s, _ in work.produce_items("6")] == [(7, 9), (10, 10)]

    def test_estimate_counts_slices(self):
        assert NumbersWork(Journal(), 1, 10, batch_size=3).prepare(ExecutionContext()).estimate_count() == 4
        assert NumbersWork(Journal(), 5, 4, batch_size=3).prepare(ExecutionContext()).estimate_count() == 0

    def test_process_walks_sub_ranges_with_pause(self):
        journal, sleep = Journal(), RecordedSleep()
        work = NumbersWork(journal, 1, 10, batch_size=10, sub_batch_size=4, sub_batch_pause_ms=250)
        work.prepare(ExecutionContext(), sleep=sleep)

        work.process(Slice(1, 10, 4, 250))

        assert journal.ranges == [(1, 4), (5, 8), (9, 10)]
        assert sleep.calls == [0.25, 0.25]


class TestWorkRegistry:
    def test_register_and_build(self):
        registry = WorkRegistry()
        registry.register("items", lambda **kw: ItemsWork(Journal(), **kw))
        work = registry.build("items", {"items": [1]})
        assert work.items == [1]
        assert "items" in registry

    def test_decorator_form(self):
        registry = WorkRegistry()

        @registry.register("noop")
        class Noop(SequenceWorkDescriptor):
            def collection(self):
                return []

            def process(self, item):
                pass

        assert isinstance(registry.build("noop"), Noop)

    def test_duplicate_rejected(self):
        registry = WorkRegistry()
        registry.register("x", lambda: None)
        with pytest.raises(ValueError, match="already registered"):
            registry.register("x", lambda: None)

    def test_unknown_name_lists_available(self):
        registry = WorkRegistry()
        registry.register("alpha", lambda: None)
        with pytest.raises(WorkDescriptorNotFoundError, match="alpha"):
            registry.build("beta")

    def test_bad_arguments(self):
        registry = WorkRegistry()
        registry.register("items", lambda **kw: ItemsWork(Journal(), **kw))
        with pytest.raises(ValidationError, match="Invalid arguments"):
            registry.build("items", {"wrong": 1})

    def test_factory_must_return_descriptor(self):
        registry = WorkRegistry()
        registry.register("bad", lambda: object())
        with pytest.raises(ValidationError, match="not a WorkDescriptor"):
            registry.build("bad")

    def test_register_work_uses_default_registry(self):
        @register_work("descriptor_test_noop")
        class Noop(SequenceWorkDescriptor):
            def collection(self):
                return []

            def process(self, item):
                pass

        assert isinstance(default_registry.build("descriptor_test_noop"), Noop)
        assert "backfill_column" in default_registry
