# tests/conftest.py
import io
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.api.v1 import health as health_api
from app.api.v1 import jobs as jobs_api
from app.api.v1 import upload as upload_api
from app.jobs.errors import RemoteJobError
from app.jobs.models import RemoteSnapshot
from app.jobs.store import InMemoryJobStore
from app.kinds.garment_extraction import GarmentExtractionKind
from app.kinds.lora_training import LoraTrainingKind
from app.kinds.pose_generation import PoseGenerationKind
from app.kinds.registry import KindRegistry
from app.main import app, build_job_service
from app.providers.replicate_client import RemoteJobClient
from app.storage.blob_store import InMemoryBlobStore


class FakeClock:
    """Monotonic clock advanced only by ``sleep``; no real waiting."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRemoteClient(RemoteJobClient):
    """Scripted provider.

    ``script(handle, [...])`` queues snapshots (or exceptions) returned by
    successive ``get`` calls; the last entry repeats.
    """

    def __init__(self):
        self.started: List[dict] = []
        self.cancelled: List[tuple] = []
        self.get_calls = 0
        self.fail_start: Optional[Exception] = None
        # model name -> error raised when a prediction is started on it
        self.fail_models: Dict[str, RemoteJobError] = {}
        self.on_get = None
        self._scripts: Dict[str, list] = {}
        self._counter = 0

    def script(self, handle: str, steps: list) -> None:
        self._scripts[handle] = list(steps)

    def next_handle(self) -> str:
        return f"r-{self._counter + 1}"

    def _start(self, **call) -> str:
        if self.fail_start is not None:
            raise self.fail_start
        model = call.get("model")
        if model in self.fail_models:
            raise self.fail_models[model]
        self._counter += 1
        handle = f"r-{self._counter}"
        self.started.append({"handle": handle, **call})
        return handle

    async def start_training(self, model, version, destination, input):
        return self._start(resource="trainings", model=model, version=version,
                           destination=destination, input=input)

    async def start_prediction(self, model, input, version=None):
        return self._start(resource="predictions", model=model, version=version, input=input)

    async def get(self, resource, handle):
        self.get_calls += 1
        if self.on_get is not None:
            self.on_get(handle)
        steps = self._scripts.get(handle) or [processing()]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return step.model_copy(update={"handle": handle})

    async def cancel(self, resource, handle):
        self.cancelled.append((resource, handle))
        return True


def processing(logs: Optional[str] = None, progress: Optional[int] = None) -> RemoteSnapshot:
    return RemoteSnapshot(handle="", state="processing", logs=logs, progress=progress)


def succeeded(output) -> RemoteSnapshot:
    return RemoteSnapshot(handle="", state="succeeded", output=output, progress=100)


def failed(error: str) -> RemoteSnapshot:
    return RemoteSnapshot(handle="", state="failed", error=error)


def transient_error() -> RemoteJobError:
    return RemoteJobError("Replicate unreachable: connection reset", transient=True)


def png_bytes(mode: str = "RGB", size=(16, 16), color=(200, 30, 30)) -> bytes:
    if mode == "RGBA":
        color = (*color[:3], 0)
    img = Image.new(mode, size, color)
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def seed_model(store, **overrides) -> dict:
    values = {
        "model_code": "F1A2B",
        "name": "Sarah",
        "gender": "female",
        "base_image_url": "https://cdn.example.com/sarah/base.jpg",
        "thumbnail_url": "https://cdn.example.com/sarah/base.jpg",
        "has_lora_training": False,
        "is_active": True,
        **overrides,
    }
    return store.insert_target("ai_models", values)


def seed_product(store, **overrides) -> dict:
    values = {
        "sku": "TH8-001",
        "name": "Linen shirt",
        "garment_type": "upper",
        "original_image_url": "https://cdn.example.com/products/th8-001.jpg",
        "extraction_status": "pending",
        "metadata": {},
        **overrides,
    }
    return store.insert_target("products", values)


def training_images(n: int = 10) -> List[str]:
    return [f"https://cdn.example.com/train/{i}.jpg" for i in range(n)]


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def remote():
    return FakeRemoteClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kinds():
    registry = KindRegistry()
    for kind in (LoraTrainingKind(), PoseGenerationKind(), GarmentExtractionKind()):
        registry.register(kind)
    return registry


@pytest.fixture
def make_service(store, blobs, remote, kinds, clock):
    def make(**poller_options):
        options = {"sleep": clock.sleep, "clock": clock, "max_wait": 1800, **poller_options}
        return build_job_service(store, blobs, remote, kinds, **options)
    return make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def client(service, blobs, monkeypatch):
    # No lifespan: the service is wired in directly and has no background dispatcher
    monkeypatch.setattr(jobs_api, "_service", service)
    monkeypatch.setattr(upload_api, "_blob_store", blobs)
    monkeypatch.setattr(health_api, "_dispatcher", None)
    return TestClient(app)
