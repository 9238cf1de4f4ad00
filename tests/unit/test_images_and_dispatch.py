import asyncio
import io

import pytest
from PIL import Image

from app.jobs.in_process_queue import InProcessQueue
from app.jobs.models import JobOutcome, JobRecord, JobStatus
from app.logging_config import build_logging_config
from app.storage.images import InvalidImageError, flatten_to_rgb, has_alpha, inspect_image
from conftest import png_bytes


def test_inspect_image_accepts_png():
    assert inspect_image(png_bytes(size=(20, 10))) == ("PNG", 20, 10)


def test_inspect_image_rejects_gif_and_garbage():
    out = io.BytesIO()
    Image.new("RGB", (4, 4)).save(out, format="GIF")
    with pytest.raises(InvalidImageError, match="Unsupported"):
        inspect_image(out.getvalue())
    with pytest.raises(InvalidImageError):
        inspect_image(b"definitely not an image")


def test_flatten_composites_transparency_onto_white():
    rgba = png_bytes("RGBA", size=(8, 8))
    assert has_alpha(rgba)

    flat = flatten_to_rgb(rgba)

    assert not has_alpha(flat)
    with Image.open(io.BytesIO(flat)) as img:
        assert img.format == "JPEG"
        assert img.mode == "RGB"
        r, g, b = img.getpixel((4, 4))
        assert min(r, g, b) > 245


def test_logging_config_routes_app_loggers_to_console():
    config = build_logging_config("DEBUG")
    assert config["loggers"]["app"]["handlers"] == ["console"]
    assert config["loggers"]["app"]["level"] == "DEBUG"
    assert config["loggers"]["httpx"]["level"] == "WARNING"


def _outcome(job_id):
    return JobOutcome(job=JobRecord(id=job_id, kind="lora_training", status=JobStatus.COMPLETED))


def test_queue_runs_each_job_once_and_ignores_duplicates():
    ran = []

    async def runner(job_id):
        ran.append(job_id)
        await asyncio.sleep(0)
        return _outcome(job_id)

    async def scenario():
        queue = InProcessQueue(runner, max_concurrent=2)
        await queue.start()
        accepted = [await queue.submit("a"), await queue.submit("a"), await queue.submit("b")]
        await queue.join()
        after = queue.active()
        again = await queue.submit("a")
        await queue.join()
        await queue.stop()
        return accepted, after, again

    accepted, after, again = asyncio.run(scenario())

    assert accepted == [True, False, True]
    assert after == []
    assert again is True
    assert ran == ["a", "b", "a"]


def test_queue_bounds_concurrency_and_survives_crashes():
    running = 0
    peak = 0

    async def runner(job_id):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        if job_id == "boom":
            raise RuntimeError("provider exploded")
        return _outcome(job_id)

    async def scenario():
        queue = InProcessQueue(runner, max_concurrent=2)
        await queue.start()
        for job_id in ("a", "boom", "b", "c", "d"):
            await queue.submit(job_id)
        await queue.join()
        await queue.stop()

    asyncio.run(scenario())
    assert peak == 2


def test_queue_stop_cancels_running_pollers():
    cancelled = []

    async def runner(job_id):
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(job_id)
            raise

    async def scenario():
        queue = InProcessQueue(runner)
        await queue.start()
        await queue.submit("slow")
        while not queue._tasks:
            await asyncio.sleep(0)
        await queue.stop()
        return queue.active()

    assert asyncio.run(scenario()) == []
    assert cancelled == ["slow"]


class _FakeStorage:
    def __init__(self, names):
        self.buckets = [type("Bucket", (), {"name": n})() for n in names]
        self.created = []

    def list_buckets(self):
        return self.buckets

    def create_bucket(self, name, options=None):
        self.created.append((name, options))


def test_ensure_buckets_creates_only_missing():
    from app.db.supabase_client import ensure_buckets

    storage = _FakeStorage(["products"])
    client = type("Client", (), {"storage": storage})()

    assert ensure_buckets(client, ("products", "models")) == ["models"]
    name, options = storage.created[0]
    assert name == "models"
    assert options["public"] is True


def test_unknown_job_store_is_rejected(monkeypatch):
    from app.config import settings
    from app.main import build_stores

    monkeypatch.setattr(settings, "job_store", "redis")
    with pytest.raises(RuntimeError, match="Unknown JOB_STORE"):
        build_stores()
