"""
Tests for the layered graph executor.

Tests ordering, failure pruning, concurrency limits and abort behavior.
"""
import asyncio

import pytest

from stackweave.config.schemas import ServiceDefinition
from stackweave.errors import ComponentExecutionError, GraphInvariantError, StorageError
from stackweave.executor import GraphExecutor, Outcome
from stackweave.graph import ServiceGraph, ServiceNode, build_service_graph


def make_graph(raw: dict) -> ServiceGraph:
    return build_service_graph({
        service_id: ServiceDefinition.from_config(service_id, entry)
        for service_id, entry in raw.items()
    })


class Recorder:
    """Callback that records start/finish order and can fail on demand."""

    def __init__(self, fail: dict[str, Exception] | None = None, delay: float = 0.0):
        self.fail = fail or {}
        self.delay = delay
        self.started: list[str] = []
        self.finished: list[str] = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, service_id: str):
        self.started.append(service_id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
            if service_id in self.fail:
                raise self.fail[service_id]
        finally:
            self.running -= 1
            self.finished.append(service_id)


class TestOrdering:
    """Tests for forward and reverse order."""

    @pytest.mark.asyncio
    async def test_dependencies_finish_first(self, sample_configuration):
        """resources completes before consumer starts."""
        graph = make_graph(sample_configuration["services"])
        recorder = Recorder()

        result = await GraphExecutor().execute(graph, recorder)

        assert recorder.started == ["resources", "consumer"]
        assert result.layers == [["resources"], ["consumer"]]
        assert result.success
        assert result.outcomes == {"resources": Outcome.SUCCESS, "consumer": Outcome.SUCCESS}

    @pytest.mark.asyncio
    async def test_reverse_runs_dependents_first(self, sample_configuration):
        """Removal order is the reverse of deploy order."""
        graph = make_graph(sample_configuration["services"])
        recorder = Recorder()

        result = await GraphExecutor().execute(graph, recorder, reverse=True)

        assert recorder.started == ["consumer", "resources"]
        assert result.layers == [["consumer"], ["resources"]]

    @pytest.mark.asyncio
    async def test_layer_runs_concurrently(self):
        """Independent services overlap in time."""
        graph = make_graph({"a": {}, "b": {}, "c": {}})
        recorder = Recorder(delay=0.01)

        await GraphExecutor().execute(graph, recorder)

        assert recorder.max_running == 3

    @pytest.mark.asyncio
    async def test_layer_barrier(self):
        """A layer completes fully before the next one starts."""
        graph = make_graph({"slow": {}, "fast": {}, "after": {"dependsOn": "fast"}})
        order = []

        async def run(service_id):
            await asyncio.sleep(0.02 if service_id == "slow" else 0)
            order.append(service_id)

        await GraphExecutor().execute(graph, run)

        assert order.index("slow") < order.index("after")

    @pytest.mark.asyncio
    async def test_empty_graph(self):
        """An empty graph succeeds without calling anything."""
        recorder = Recorder()
        result = await GraphExecutor().execute(ServiceGraph({}), recorder)
        assert result.results == {}
        assert result.success
        assert recorder.started == []


class TestFailures:
    """Tests for failure isolation and pruning."""

    @pytest.mark.asyncio
    async def test_failure_prunes_dependents_only(self):
        """A fails, its sibling B still succeeds, and C (depends on A) never runs."""
        graph = make_graph({"a": {}, "b": {}, "c": {"dependsOn": "a"}})
        recorder = Recorder(fail={"a": ComponentExecutionError("a", "exit 1")})

        result = await GraphExecutor().execute(graph, recorder)

        assert "c" not in recorder.started
        assert result.outcomes == {
            "a": Outcome.FAILURE,
            "b": Outcome.SUCCESS,
            "c": Outcome.SKIP,
        }
        assert not result.success
        assert [r.service_id for r in result.failures] == ["a"]
        assert isinstance(result.results["a"].error, ComponentExecutionError)

    @pytest.mark.asyncio
    async def test_transitive_dependents_skipped(self):
        """Pruning follows the whole chain of dependents."""
        graph = make_graph({
            "db": {},
            "api": {"dependsOn": "db"},
            "web": {"dependsOn": "api"},
            "cache": {},
            "worker": {"dependsOn": "cache"},
        })
        recorder = Recorder(fail={"db": RuntimeError("boom")})

        result = await GraphExecutor().execute(graph, recorder)

        assert result.outcomes["api"] is Outcome.SKIP
        assert result.outcomes["web"] is Outcome.SKIP
        assert result.outcomes["worker"] is Outcome.SUCCESS
        assert result.results["db"].unexpected

    @pytest.mark.asyncio
    async def test_reverse_failure_prunes_dependencies(self):
        """During removal, a failed dependent keeps its dependencies in place."""
        graph = make_graph({"db": {}, "api": {"dependsOn": "db"}, "other": {}})
        recorder = Recorder(fail={"api": ComponentExecutionError("api", "exit 1")})

        result = await GraphExecutor().execute(graph, recorder, reverse=True)

        assert "db" not in recorder.started
        assert result.outcomes == {
            "db": Outcome.SKIP,
            "api": Outcome.FAILURE,
            "other": Outcome.SUCCESS,
        }

    @pytest.mark.asyncio
    async def test_every_node_recorded_once(self):
        """Each node has exactly one outcome, even with several failures."""
        graph = make_graph({
            "a": {},
            "b": {},
            "c": {"dependsOn": ["a", "b"]},
            "d": {"dependsOn": "c"},
        })
        recorder = Recorder(fail={"a": RuntimeError("a"), "b": RuntimeError("b")})

        result = await GraphExecutor().execute(graph, recorder)

        assert set(result.results) == {"a", "b", "c", "d"}
        assert result.outcomes["c"] is Outcome.SKIP
        assert result.outcomes["d"] is Outcome.SKIP

    @pytest.mark.asyncio
    async def test_callback_may_return_skip(self):
        """A callback returning Outcome.SKIP still releases dependents."""
        graph = make_graph({"a": {}, "b": {"dependsOn": "a"}})

        async def run(service_id):
            return Outcome.SKIP if service_id == "a" else None

        result = await GraphExecutor().execute(graph, run)

        assert result.outcomes == {"a": Outcome.SKIP, "b": Outcome.SUCCESS}
        assert result.success


class TestConcurrencyLimit:
    """Tests for max_concurrency."""

    @pytest.mark.asyncio
    async def test_semaphore_caps_running_callbacks(self):
        """No more than max_concurrency callbacks overlap."""
        graph = make_graph({f"s{i}": {} for i in range(6)})
        recorder = Recorder(delay=0.01)

        result = await GraphExecutor(max_concurrency=2).execute(graph, recorder)

        assert recorder.max_running == 2
        assert len(result.results) == 6
        assert result.layers == [[f"s{i}" for i in range(6)]]

    def test_invalid_limit(self):
        """Zero is not a valid limit."""
        with pytest.raises(ValueError):
            GraphExecutor(max_concurrency=0)


class TestAbort:
    """Tests for errors that stop the whole run."""

    @pytest.mark.asyncio
    async def test_storage_error_aborts_after_layer(self):
        """A storage failure lets the layer settle, then aborts."""
        graph = make_graph({"a": {}, "b": {}, "c": {"dependsOn": "b"}})
        recorder = Recorder(fail={"a": StorageError("disk full")}, delay=0.01)

        with pytest.raises(StorageError, match="disk full"):
            await GraphExecutor().execute(graph, recorder)

        assert sorted(recorder.finished) == ["a", "b"]
        assert "c" not in recorder.started

    @pytest.mark.asyncio
    async def test_storage_error_carries_settled_layer(self):
        """The abort carries the outcomes of every node that ran before it."""
        graph = make_graph({"a": {}, "b": {}, "c": {}, "d": {"dependsOn": "c"}})
        recorder = Recorder(
            fail={"a": StorageError("disk full"), "b": RuntimeError("boom")}, delay=0.01
        )

        with pytest.raises(StorageError) as exc_info:
            await GraphExecutor().execute(graph, recorder)

        partial = exc_info.value.partial_result
        assert partial.outcomes == {
            "a": Outcome.FAILURE,
            "b": Outcome.FAILURE,
            "c": Outcome.SUCCESS,
        }
        assert isinstance(partial.results["b"].error, RuntimeError)
        assert [sorted(layer) for layer in partial.layers] == [["a", "b", "c"]]

    @pytest.mark.asyncio
    async def test_cycle_raises_invariant_error(self):
        """A graph with no runnable node is a programmer error."""
        graph = ServiceGraph({
            "a": ServiceNode(definition=ServiceDefinition(id="a"), dependencies=("b",)),
            "b": ServiceNode(definition=ServiceDefinition(id="b"), dependencies=("a",)),
        })
        with pytest.raises(GraphInvariantError, match="No service is ready"):
            await GraphExecutor().execute(graph, Recorder())
