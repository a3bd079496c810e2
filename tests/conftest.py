import asyncio
import inspect
import os
import sys
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="canvasgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis in unit tests; the runtime falls back to the in-memory counter store
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-key-for-testing-only")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from canvasgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from canvasgate.service.streaming import WriteResult  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """In-process ModelProvider recording calls.

    ``chunks`` items are yielded in order; an Exception item is raised and a
    callable item is invoked (e.g. to advance a fake clock) without yielding.
    """

    def __init__(
        self,
        chunks=(),
        *,
        html="<section><h1>Hello</h1></section>",
        image_result=None,
        name="openai",
    ):
        self.name = name
        self.chunks = list(chunks)
        self.html = html
        self.image_result = image_result
        self.calls = []
        self.released = False
        self.consumed = 0
        self.seen_image_bytes = None

    @asynccontextmanager
    async def stream_chat(self, prompt, model, system_context=None):
        self.calls.append(("stream_chat", prompt, model, system_context))

        async def generate():
            for item in self.chunks:
                if isinstance(item, Exception):
                    raise item
                if callable(item):
                    item()
                    continue
                self.consumed += 1
                yield item

        try:
            yield generate()
        finally:
            self.released = True

    async def complete_chat(self, prompt, model, system_context=None, image_path=None):
        self.calls.append(("complete_chat", prompt, model, image_path))
        if image_path is not None:
            self.seen_image_bytes = Path(image_path).read_bytes()
        return self.html

    async def generate_image(self, prompt, model):
        self.calls.append(("generate_image", prompt, model))
        return self.image_result

    async def close(self):
        return None


class RecordingSink:
    """EventSink that records frames and can simulate a client that goes away."""

    def __init__(self, close_after=None):
        self.frames = []
        self.close_after = close_after
        self.closed_writes = 0

    async def write(self, event, data):
        if self.close_after is not None and len(self.frames) >= self.close_after:
            self.closed_writes += 1
            return WriteResult.CLOSED
        self.frames.append((event, data))
        return WriteResult.OK

    def events(self):
        return [event for event, _ in self.frames]


def parse_sse(body: str):
    """Split an SSE body into ``(event, data)`` pairs."""
    import json

    frames = []
    for block in body.strip().split("\n\n"):
        if not block.strip():
            continue
        event = None
        data = None
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        frames.append((event, data))
    return frames


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def recording_sink_cls():
    return RecordingSink


@pytest.fixture
def sse_parser():
    return parse_sse


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
