"""
Tests for state storage backends.

Tests the read-through cache, serialized writes, and the local,
in-memory and HTTP backends.
"""
import asyncio
import json

import httpx
import pytest

from stackweave.config.schemas import StateConfiguration
from stackweave.errors import InvalidConfigurationError, StorageError
from stackweave.state import (
    HttpStateStorage,
    LocalStateStorage,
    MemoryStateStorage,
    create_state_storage,
)


class SlowStateStorage(MemoryStateStorage):
    """Memory storage whose writes take a while and are observed."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0
        self.saved: list[dict] = []

    async def _save(self, record):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.saved.append(record)
        await super()._save(record)
        self.in_flight -= 1


class TestStateStorageCache:
    """Tests for the read-through cache."""

    @pytest.mark.asyncio
    async def test_missing_record_reads_empty(self, memory_storage):
        """A stage with no record starts empty."""
        assert await memory_storage.read_state() == {}
        assert await memory_storage.read_all_outputs() == {}

    @pytest.mark.asyncio
    async def test_backend_read_once(self, memory_storage):
        """The backing store is loaded once per instance."""
        await memory_storage.read_component_state("api")
        await memory_storage.read_component_outputs("api")
        await memory_storage.read_all_outputs()
        assert memory_storage.load_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_reads_load_once(self, memory_storage):
        """Parallel first reads share one load."""
        await asyncio.gather(*(memory_storage.read_state() for _ in range(5)))
        assert memory_storage.load_count == 1

    @pytest.mark.asyncio
    async def test_outputs_round_trip_same_instance(self, memory_storage):
        """Written outputs are read back from the cache."""
        outputs = {"QueueArn": "arn:aws:sqs:queue", "nested": {"list": [1, 2]}}
        await memory_storage.write_component_outputs("resources", outputs)
        assert await memory_storage.read_component_outputs("resources") == outputs

    @pytest.mark.asyncio
    async def test_outputs_round_trip_fresh_instance(self, state_backend, memory_storage):
        """A fresh instance over the same backend reads persisted outputs."""
        await memory_storage.write_component_outputs("resources", {"QueueArn": "arn:1"})
        await memory_storage.write_component_state("resources", {"hash": "abc"})

        fresh = MemoryStateStorage(state_backend, stage="dev")
        assert await fresh.read_component_outputs("resources") == {"QueueArn": "arn:1"}
        assert await fresh.read_component_state("resources") == {"hash": "abc"}

    @pytest.mark.asyncio
    async def test_reads_return_copies(self, memory_storage):
        """Mutating a returned mapping does not change the store."""
        await memory_storage.write_component_outputs("api", {"url": "a"})
        outputs = await memory_storage.read_component_outputs("api")
        outputs["url"] = "changed"
        assert await memory_storage.read_component_outputs("api") == {"url": "a"}

    @pytest.mark.asyncio
    async def test_service_state_seeded_once(self, state_backend, memory_storage):
        """The default service state is persisted on first read only."""
        first = await memory_storage.read_service_state({"id": "first"})
        second = await memory_storage.read_service_state({"id": "second"})
        assert first == second == {"id": "first"}
        assert state_backend["dev"]["service"] == {"id": "first"}

    @pytest.mark.asyncio
    async def test_stages_are_partitioned(self, state_backend):
        """Each stage has its own record."""
        dev = MemoryStateStorage(state_backend, stage="dev")
        prod = MemoryStateStorage(state_backend, stage="prod")
        await dev.write_component_outputs("api", {"url": "dev"})
        assert await prod.read_component_outputs("api") == {}

    @pytest.mark.asyncio
    async def test_remove_state(self, state_backend, memory_storage):
        """Removing deletes the record and empties the cache."""
        await memory_storage.write_component_outputs("api", {"url": "a"})
        await memory_storage.remove_state()
        assert "dev" not in state_backend
        assert await memory_storage.read_all_outputs() == {}


class TestSerializedWrites:
    """Tests for the single-writer queue."""

    @pytest.mark.asyncio
    async def test_one_write_in_flight(self):
        """Concurrent writers never overlap in the backend."""
        storage = SlowStateStorage()
        await asyncio.gather(
            *(storage.write_component_outputs(f"svc{i}", {"i": i}) for i in range(5))
        )
        assert storage.max_in_flight == 1
        assert storage.write_count == 5

    @pytest.mark.asyncio
    async def test_last_write_contains_everything(self):
        """The final snapshot includes every concurrent update."""
        storage = SlowStateStorage()
        await asyncio.gather(
            *(storage.write_component_outputs(f"svc{i}", {"i": i}) for i in range(3))
        )
        final = storage.saved[-1]
        assert set(final["components"]) == {"svc0", "svc1", "svc2"}

    @pytest.mark.asyncio
    async def test_snapshot_isolated_from_later_changes(self):
        """A queued write persists the record as it was when queued."""
        storage = SlowStateStorage()
        await storage.write_component_outputs("api", {"v": 1})
        await storage.write_component_outputs("api", {"v": 2})
        assert storage.saved[0]["components"]["api"]["outputs"] == {"v": 1}
        assert storage.saved[1]["components"]["api"]["outputs"] == {"v": 2}


class TestLocalStateStorage:
    """Tests for the JSON file backend."""

    @pytest.mark.asyncio
    async def test_writes_state_file(self, tmp_path):
        """State lands in .stackweave/state.<stage>.json."""
        storage = LocalStateStorage(tmp_path, "prod")
        await storage.write_component_outputs("api", {"url": "https://x"})

        path = tmp_path / ".stackweave" / "state.prod.json"
        assert storage.state_file == path
        record = json.loads(path.read_text())
        assert record["components"]["api"]["outputs"] == {"url": "https://x"}

    @pytest.mark.asyncio
    async def test_fresh_instance_reads_file(self, tmp_path):
        """Round trip through the file."""
        await LocalStateStorage(tmp_path, "dev").write_component_state("api", {"a": 1})
        assert await LocalStateStorage(tmp_path, "dev").read_component_state("api") == {"a": 1}

    @pytest.mark.asyncio
    async def test_corrupt_file_is_storage_error(self, tmp_path):
        """Unparsable state is a storage error, not an empty state."""
        state_dir = tmp_path / ".stackweave"
        state_dir.mkdir()
        (state_dir / "state.dev.json").write_text("{not json")

        with pytest.raises(StorageError) as exc_info:
            await LocalStateStorage(tmp_path, "dev").read_state()
        assert exc_info.value.code == "CANNOT_READ_LOCAL_STATE"

    @pytest.mark.asyncio
    async def test_remove_missing_file(self, tmp_path):
        """Removing state that was never written succeeds."""
        storage = LocalStateStorage(tmp_path, "dev")
        await storage.remove_state()
        assert not storage.state_file.exists()

    @pytest.mark.asyncio
    async def test_custom_state_dir(self, tmp_path):
        """The state directory is configurable."""
        storage = LocalStateStorage(tmp_path, "dev", state_dir="state")
        await storage.write_component_outputs("api", {})
        assert (tmp_path / "state" / "state.dev.json").exists()

    @pytest.mark.asyncio
    async def test_file_access_off_the_event_loop(self, tmp_path, monkeypatch):
        """Reads, writes and deletes all go through a worker thread."""
        to_thread = asyncio.to_thread
        calls = []

        async def recording_to_thread(func, *args, **kwargs):
            calls.append(func.__name__)
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
        storage = LocalStateStorage(tmp_path, "dev")

        await storage.write_component_outputs("api", {"url": "https://x"})
        assert await LocalStateStorage(tmp_path, "dev").read_component_outputs("api") == {
            "url": "https://x"
        }
        await storage.remove_state()

        assert "_write_file" in calls
        assert "_read_file" in calls
        assert "unlink" in calls
        assert not storage.state_file.exists()


class TestHttpStateStorage:
    """Tests for the HTTP backend, using httpx.MockTransport."""

    @staticmethod
    def make_storage(handler, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpStateStorage(
            "https://state.example.com/root/", "shop", "dev", client=client, **kwargs
        )

    def test_state_url(self):
        """The record lives at <url>/<project>/<stage>.json."""
        storage = HttpStateStorage("https://state.example.com/root/", "shop", "dev")
        assert storage.state_url == "https://state.example.com/root/shop/dev.json"

    @pytest.mark.asyncio
    async def test_not_found_reads_empty(self):
        """A 404 is an empty state."""
        storage = self.make_storage(lambda request: httpx.Response(404))
        assert await storage.read_state() == {}

    @pytest.mark.asyncio
    async def test_get_and_put(self):
        """Reads GET the record once; writes PUT the whole record."""
        requests = []
        stored = {"components": {"db": {"outputs": {"url": "pg://"}}}}

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "GET":
                return httpx.Response(200, json=stored)
            return httpx.Response(200)

        storage = self.make_storage(handler)
        assert await storage.read_component_outputs("db") == {"url": "pg://"}
        await storage.write_component_outputs("api", {"url": "https://api"})

        assert [r.method for r in requests] == ["GET", "PUT"]
        body = json.loads(requests[1].content)
        assert body["components"]["db"]["outputs"] == {"url": "pg://"}
        assert body["components"]["api"]["outputs"] == {"url": "https://api"}

    @pytest.mark.asyncio
    async def test_server_error_is_storage_error(self):
        """Non-404 failures abort with a storage error."""
        storage = self.make_storage(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(StorageError) as exc_info:
            await storage.read_state()
        assert exc_info.value.code == "CANNOT_READ_REMOTE_STATE"

    @pytest.mark.asyncio
    async def test_failed_put_is_storage_error(self):
        """A rejected write is a storage error."""
        def handler(request):
            if request.method == "GET":
                return httpx.Response(404)
            return httpx.Response(403)

        storage = self.make_storage(handler)
        with pytest.raises(StorageError) as exc_info:
            await storage.write_component_outputs("api", {})
        assert exc_info.value.code == "CANNOT_UPDATE_REMOTE_STATE"

    @pytest.mark.asyncio
    async def test_delete_ignores_not_found(self):
        """Removing a missing record succeeds."""
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(404)

        storage = self.make_storage(handler)
        await storage.remove_state()
        assert methods == ["DELETE"]

    @pytest.mark.asyncio
    async def test_close_closes_client(self):
        """close() releases the HTTP client."""
        storage = self.make_storage(lambda request: httpx.Response(404))
        client = storage._client
        await storage.close()
        assert client.is_closed


class TestCreateStateStorage:
    """Tests for backend selection."""

    def test_default_is_local(self, tmp_path):
        """No state configuration selects the local file."""
        storage = create_state_storage(None, root=tmp_path, project="shop", stage="dev")
        assert isinstance(storage, LocalStateStorage)

    def test_http_backend(self, tmp_path):
        """The http backend takes url and headers."""
        configuration = StateConfiguration.from_config(
            {"backend": "http", "url": "https://s", "headers": {"Authorization": "Bearer t"}}
        )
        storage = create_state_storage(configuration, root=tmp_path, project="shop", stage="dev")
        assert isinstance(storage, HttpStateStorage)
        assert storage.state_url == "https://s/shop/dev.json"

    def test_http_requires_url(self, tmp_path):
        """The http backend without url is rejected."""
        configuration = StateConfiguration.from_config({"backend": "http"})
        with pytest.raises(InvalidConfigurationError):
            create_state_storage(configuration, root=tmp_path, project="shop", stage="dev")

    def test_unknown_backend(self, tmp_path):
        """Unknown backends are rejected."""
        configuration = StateConfiguration.from_config("s3")
        with pytest.raises(InvalidConfigurationError) as exc_info:
            create_state_storage(configuration, root=tmp_path, project="shop", stage="dev")
        assert exc_info.value.code == "UNRECOGNIZED_STATE_BACKEND"
