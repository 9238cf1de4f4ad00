import asyncio

import pytest

from app.jobs.models import ErrorKind, JobStatus
from conftest import failed, png_bytes, processing, seed_model, seed_product, succeeded, training_images, transient_error

WEIGHTS = "https://replicate.delivery/xezq/weights.tar"


def _start_training(service, model_id):
    return asyncio.run(service.start("lora_training", {
        "model_id": model_id,
        "training_images": training_images(),
        "trigger_word": "SARAH042",
    }))


def test_training_completes_and_activates_model(service, store, remote, clock):
    model = seed_model(store, is_active=False)
    remote.script("r-1", [
        processing(logs="flux_train_replicate:  10%|#         | 100/1000", progress=10),
        processing(logs="flux_train_replicate:  45%|####5     | 450/1000", progress=45),
        processing(logs="flux_train_replicate:  45%|####5     | 450/1000", progress=45),
        succeeded({"weights": WEIGHTS, "version": "owner/fashion-model:abc123"}),
    ])
    job = _start_training(service, model["id"])
    assert job.status == JobStatus.RUNNING
    assert job.external_id == "r-1"

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.polls == 4
    assert not outcome.timed_out
    assert clock.sleeps == [30.0] * 4
    done = outcome.job
    assert done.status == JobStatus.COMPLETED
    assert done.progress == 100
    assert done.result["lora_weights_url"] == WEIGHTS
    assert done.result["replicate_version_id"] == "owner/fashion-model:abc123"
    assert done.completed_at is not None

    updated = store.get_target("ai_models", model["id"])
    assert updated["has_lora_training"] is True
    assert updated["is_active"] is True
    assert updated["lora_weights_url"] == WEIGHTS
    assert updated["lora_trigger_word"] == "SARAH042"
    assert updated["lora_training_job_id"] == job.id


def test_progress_is_written_only_when_it_changes(service, store, remote):
    model = seed_model(store)
    remote.script("r-1", [
        processing(progress=10),
        processing(progress=10),
        processing(progress=None),
        processing(progress=5),  # never moves backwards
        processing(progress=60),
        succeeded({"weights": WEIGHTS}),
    ])
    job = _start_training(service, model["id"])
    writes = store.writes

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.job.status == JobStatus.COMPLETED
    # 10, 60, then the terminal job row + model row
    assert store.writes == writes + 4


def test_remote_failure_leaves_model_untouched(service, store, remote):
    model = seed_model(store)
    remote.script("r-1", [processing(progress=30), failed("CUDA out of memory")])
    job = _start_training(service, model["id"])
    before = store.get_target("ai_models", model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.job.status == JobStatus.FAILED
    assert "out of memory" in outcome.job.error
    assert outcome.job.error_kind == ErrorKind.REMOTE_FAILURE
    assert outcome.job.progress == 30
    assert outcome.job.result is None
    assert store.get_target("ai_models", model["id"]) == before


def test_timeout_fails_job_and_cancels_remote(service, store, remote, clock):
    model = seed_model(store)
    remote.script("r-1", [processing()])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id, interval=30, max_wait=90))

    assert outcome.timed_out
    assert not outcome.still_running
    assert outcome.polls == 3
    assert clock.now == 90
    assert outcome.job.status == JobStatus.FAILED
    assert outcome.job.error_kind == ErrorKind.TIMEOUT
    assert outcome.job.error == "Timed out after 90s waiting for provider"
    assert remote.cancelled == [("trainings", "r-1")]
    assert store.get_target("ai_models", model["id"])["has_lora_training"] is False


def test_detach_policy_leaves_job_running(make_service, store, remote):
    service = make_service(timeout_policy="detach")
    model = seed_model(store)
    remote.script("r-1", [processing()])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id, interval=30, max_wait=60))

    assert outcome.timed_out
    assert outcome.still_running
    assert outcome.job.status == JobStatus.RUNNING
    assert store.get(job.id).status == JobStatus.RUNNING
    assert remote.cancelled == []


def test_transient_errors_do_not_fail_the_job(service, store, remote):
    model = seed_model(store)
    remote.script("r-1", [
        transient_error(),
        transient_error(),
        processing(progress=50),
        succeeded({"weights": WEIGHTS}),
    ])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.job.status == JobStatus.COMPLETED
    assert outcome.job.poll_errors == 0
    assert outcome.polls == 4


def test_consecutive_poll_errors_escalate(make_service, store, remote):
    service = make_service(max_consecutive_errors=3)
    model = seed_model(store)
    remote.script("r-1", [transient_error()])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.polls == 3
    assert outcome.job.status == JobStatus.FAILED
    assert outcome.job.error_kind == ErrorKind.TRANSIENT_EXHAUSTED
    assert "3 consecutive" in outcome.job.error


def test_successful_poll_resets_error_count(service, store, remote):
    model = seed_model(store)
    remote.script("r-1", [transient_error(), processing()])
    job = _start_training(service, model["id"])

    assert asyncio.run(service.poller.check_once(job.id)).poll_errors == 1
    assert asyncio.run(service.poller.check_once(job.id)).poll_errors == 0


def test_terminal_job_returns_immediately(service, store, remote, clock):
    model = seed_model(store)
    remote.script("r-1", [succeeded({"weights": WEIGHTS})])
    job = _start_training(service, model["id"])
    asyncio.run(service.poller.poll_until_terminal(job.id))
    writes, calls, sleeps = store.writes, remote.get_calls, len(clock.sleeps)

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.polls == 0
    assert outcome.job.status == JobStatus.COMPLETED
    assert (store.writes, remote.get_calls, len(clock.sleeps)) == (writes, calls, sleeps)


def test_poller_stops_when_job_is_cancelled_underneath(service, store, remote):
    model = seed_model(store)
    job = _start_training(service, model["id"])

    def cancel_during_poll(handle):
        store.finish(job.id, JobStatus.RUNNING, {
            "status": JobStatus.CANCELLED,
            "error": "Cancelled by user",
            "error_kind": ErrorKind.CANCELLED,
        })

    remote.on_get = cancel_during_poll
    remote.script("r-1", [succeeded({"weights": WEIGHTS})])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.job.status == JobStatus.CANCELLED
    assert outcome.polls == 1
    assert store.get_target("ai_models", model["id"])["has_lora_training"] is False


def test_unusable_output_fails_with_output_error(service, store, remote):
    model = seed_model(store)
    remote.script("r-1", [succeeded({"images": []})])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.job.status == JobStatus.FAILED
    assert outcome.job.error_kind == ErrorKind.OUTPUT
    assert store.get_target("ai_models", model["id"])["has_lora_training"] is False


def test_provider_side_cancel_is_recorded(service, store, remote):
    model = seed_model(store)
    remote.script("r-1", [processing(), processing().model_copy(update={"state": "canceled"})])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.job.status == JobStatus.CANCELLED
    assert outcome.job.error_kind == ErrorKind.CANCELLED
    assert outcome.job.error


def test_unknown_timeout_policy_is_rejected(make_service):
    with pytest.raises(ValueError):
        make_service(timeout_policy="retry")


def test_eight_image_training_completes_with_safetensors_weights(service, store, remote):
    job = asyncio.run(service.start("lora_training", {
        "model_name": "Sarah",
        "gender": "female",
        "training_images": training_images(8),
        "trigger_word": "SARAH042",
    }))
    remote.script("r-1", [
        processing(),
        processing(),
        processing(),
        succeeded({"weights": "https://x/y.safetensors"}),
    ])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.polls == 4
    assert outcome.job.status == JobStatus.COMPLETED
    assert outcome.job.result["lora_weights_url"] == "https://x/y.safetensors"
    model = store.get_target("ai_models", job.target_id)
    assert model["has_lora_training"] is True
    assert model["lora_weights_url"] == "https://x/y.safetensors"


def test_failure_on_first_poll_keeps_provider_message(service, store, remote):
    job = asyncio.run(service.start("lora_training", {
        "model_name": "Sarah",
        "gender": "female",
        "training_images": training_images(8),
        "trigger_word": "SARAH042",
    }))
    remote.script("r-1", [failed("out of memory")])
    before = store.get_target("ai_models", job.target_id)

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.polls == 1
    assert outcome.job.status == JobStatus.FAILED
    assert outcome.job.error == "out of memory"
    assert store.get_target("ai_models", job.target_id) == before


def test_completion_with_deleted_target_still_ends_the_job(service, store, remote, blobs):
    from app.jobs.in_process_queue import InProcessQueue

    product = seed_product(store)
    blobs.objects["https://replicate.delivery/cut.png"] = (png_bytes("RGBA"), "image/png")
    remote.script("r-1", [processing(), succeeded("https://replicate.delivery/cut.png")])
    job = asyncio.run(service.start("garment_extraction", {"product_id": product["id"]}))
    del store._tables["products"][product["id"]]

    async def run_in_background():
        queue = InProcessQueue(service.poller.poll_until_terminal)
        await queue.start()
        await queue.submit(job.id)
        await queue.join()
        await queue.stop()

    asyncio.run(run_in_background())

    done = store.get(job.id)
    assert done.status == JobStatus.FAILED
    assert done.error_kind == ErrorKind.OUTPUT
    assert "no longer exists" in done.error
    assert store.list_active() == []


def test_unexpected_status_errors_count_toward_the_limit(make_service, store, remote):
    service = make_service(max_consecutive_errors=3)
    model = seed_model(store)
    remote.script("r-1", [ValueError("Expecting value: line 1 column 1")])
    job = _start_training(service, model["id"])

    outcome = asyncio.run(service.poller.poll_until_terminal(job.id))

    assert outcome.polls == 3
    assert outcome.job.status == JobStatus.FAILED
    assert outcome.job.error_kind == ErrorKind.TRANSIENT_EXHAUSTED
    assert "Expecting value" in outcome.job.error


def test_progress_written_by_another_poller_is_not_lowered(service, store, remote):
    model = seed_model(store)
    job = _start_training(service, model["id"])

    def other_poller_writes(handle):
        if store.get(job.id).progress is None:
            store.update(job.id, JobStatus.RUNNING, progress=70)

    remote.on_get = other_poller_writes
    remote.script("r-1", [processing(progress=40)])

    checked = asyncio.run(service.check(job.id))

    assert checked.progress == 70
    assert store.get(job.id).progress == 70
