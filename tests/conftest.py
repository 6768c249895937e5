import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="turnkernel_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_REPOSITORY", "true")
os.environ.setdefault("STATE_ROOT", os.path.join(_test_tmp_dir, "state"))
os.environ.setdefault("STORES_ROOT", os.path.join(_test_tmp_dir, "stores"))
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("VECTOR_STORE_ID_CANON", "vs_canon")
os.environ.setdefault("VECTOR_STORE_ID_THREADS", "vs_threads")
# Never reach a real provider from tests
os.environ["OPENAI_API_KEY"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from turnkernel.service.model_backend import ModelReply, ToolCall  # noqa: E402
from turnkernel.service.retrieval import InventoryPage, RetrievalResult  # noqa: E402
from turnkernel.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

ADMIN_TOKEN = os.environ["ADMIN_TOKEN"]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("STATE_ROOT", str(tmp_path / "state"))
    monkeypatch.setenv("STORES_ROOT", str(tmp_path / "stores"))
    reset_runtime_for_tests()
    yield


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class ScriptedModel:
    """Model client double that records every call."""

    def __init__(self, chunks: Optional[List[str]] = None, replies: Optional[List[ModelReply]] = None):
        self.chunks = chunks if chunks is not None else ["Hello", ", ", "world."]
        self.replies = list(replies or [])
        self.stream_calls = 0
        self.complete_calls = 0
        self.messages: List[List[Dict[str, Any]]] = []
        self.tools_offered: List[Any] = []

    @property
    def calls(self) -> int:
        return self.stream_calls + self.complete_calls

    async def stream_text(self, messages):
        self.stream_calls += 1
        self.messages.append(list(messages))
        for chunk in self.chunks:
            yield chunk

    async def complete(self, messages, *, tools=None):
        self.complete_calls += 1
        self.messages.append(list(messages))
        self.tools_offered.append(tools)
        if self.replies:
            return self.replies.pop(0)
        return ModelReply(text="final answer")


class LoopingModel(ScriptedModel):
    """Always asks for another tool call."""

    async def complete(self, messages, *, tools=None):
        self.complete_calls += 1
        self.messages.append(list(messages))
        return ModelReply(
            text="",
            tool_calls=[ToolCall(id=f"call_{self.complete_calls}", name="state_pack_read", arguments={})],
        )


class FakeBackend:
    def __init__(self, results: Optional[Dict[str, List[RetrievalResult]]] = None):
        self.results = results or {}
        self.search_calls: List[Dict[str, Any]] = []
        self.inventory_calls: List[str] = []

    async def search(self, store_id, query, max_results):
        self.search_calls.append({"store_id": store_id, "query": query, "max_results": max_results})
        return list(self.results.get(store_id, []))[:max_results]

    async def list_documents(self, store_id, *, after=None, limit=20):
        self.inventory_calls.append(store_id)
        return InventoryPage(data=[{"id": f"{store_id}-doc-1"}], has_more=False)


def result(source_id: str, store_id: str = "vs_canon", **kwargs) -> RetrievalResult:
    return RetrievalResult(source_id=source_id, store_id=store_id, text=kwargs.pop("text", source_id), **kwargs)


def parse_sse(body: str) -> List[Dict[str, Any]]:
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def fake_model(runtime):
    model = ScriptedModel()
    runtime.model = model
    return model


@pytest.fixture
def fake_backend(runtime):
    backend = FakeBackend()
    runtime.backend = backend
    return backend


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from turnkernel.app import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
