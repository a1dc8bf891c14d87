import asyncio
import sqlite3

import pytest

from heyit.models.task import AspectRatio, ImageStatus, Task
from heyit.services.errors import QUOTA_MESSAGE, RateLimitError, ValidationError
from heyit.services.task_queue import PLACEHOLDER_NAME, TaskQueue, display_name
from tests.conftest import LoopRecordingStore, make_image


@pytest.fixture
async def queue(gateway, store, progress):
    task_queue = TaskQueue(gateway, store, progress, default_style="house style")
    yield task_queue
    await task_queue.close()


def test_display_name_truncates_long_prompts():
    assert display_name("a cat") == "a cat"
    assert display_name("x" * 40) == "x" * 40
    assert display_name("x" * 41) == "x" * 40 + "..."


async def test_enqueue_creates_placeholders_immediately(queue, store, gateway):
    gateway.release = asyncio.Event()
    task = Task.create("a cat", num_images=2, style_description="watercolor")

    placeholders = queue.enqueue(task)

    assert [p.id for p in placeholders] == [f"{task.id}-0", f"{task.id}-1"]
    assert all(p.status == ImageStatus.QUEUED for p in placeholders)
    assert all(p.name == PLACEHOLDER_NAME for p in placeholders)
    assert store.gallery[0].images[:2] == placeholders
    assert queue.pending_count == 1
    gateway.release.set()


async def test_successful_task_fills_slots_in_order(queue, store, gateway):
    first, second = make_image("one"), make_image("two")
    gateway.results = [[first, second]]
    task = Task.create("a cat", num_images=2, aspect_ratio=AspectRatio.CLASSIC, style_description="watercolor")

    queue.enqueue(task)
    await queue.wait_idle()

    items = store.find_by_task(task.id)
    assert [item.status for item in items] == [ImageStatus.COMPLETED] * 2
    assert [item.url for item in items] == [first.data_url, second.data_url]
    assert all(item.name == "a cat" for item in items)
    assert all(item.style_description == "watercolor" for item in items)
    assert gateway.calls[0]["count"] == 2
    assert gateway.calls[0]["aspect_ratio"] == AspectRatio.CLASSIC
    assert queue.pending_count == 0


async def test_default_style_when_task_has_none(queue, gateway, store):
    task = Task.create("a dog")
    queue.enqueue(task)
    await queue.wait_idle()

    assert gateway.calls[0]["style"] == "house style"
    assert store.find_by_task(task.id)[0].style_description == "house style"


async def test_reference_images_are_passed_through(queue, gateway):
    ref = make_image("ref")
    queue.enqueue(Task.create("a dog", reference_images=[ref]))
    await queue.wait_idle()
    assert gateway.calls[0]["reference_images"] == [ref]


async def test_partial_result_removes_unfilled_slots(queue, store, gateway):
    gateway.results = [[make_image("only")]]
    task = Task.create("a cat", num_images=3)

    queue.enqueue(task)
    await queue.wait_idle()

    items = store.find_by_task(task.id)
    assert len(items) == 1
    assert items[0].id == f"{task.id}-0"
    assert items[0].status == ImageStatus.COMPLETED


async def test_gateway_failure_marks_all_slots_failed(queue, store, gateway):
    gateway.results = [RateLimitError("429 RESOURCE_EXHAUSTED")]
    task = Task.create("a cat", num_images=2)

    queue.enqueue(task)
    await queue.wait_idle()

    items = store.find_by_task(task.id)
    assert [item.status for item in items] == [ImageStatus.FAILED] * 2
    assert all(item.error == QUOTA_MESSAGE for item in items)
    assert all(item.url is None for item in items)


async def test_empty_result_is_a_failure(queue, store, gateway):
    gateway.results = [[]]
    task = Task.create("a cat", num_images=2)

    queue.enqueue(task)
    await queue.wait_idle()

    items = store.find_by_task(task.id)
    assert len(items) == 2
    assert all(item.status == ImageStatus.FAILED for item in items)
    assert all(item.error for item in items)


async def test_failure_does_not_stop_following_tasks(queue, store, gateway):
    gateway.results = [RuntimeError("boom"), [make_image("ok")]]
    failed = Task.create("first")
    ok = Task.create("second")

    queue.enqueue(failed)
    queue.enqueue(ok)
    await queue.wait_idle()

    assert store.find_by_task(failed.id)[0].error == "boom"
    assert store.find_by_task(ok.id)[0].status == ImageStatus.COMPLETED


async def test_tasks_run_one_at_a_time_in_submission_order(queue, store, gateway):
    gateway.release = asyncio.Event()
    tasks = [Task.create(f"prompt {i}") for i in range(3)]
    for task in tasks:
        queue.enqueue(task)

    await asyncio.sleep(0.02)
    assert queue.active_task is tasks[0]
    assert queue.pending_count == 3
    assert store.find_by_task(tasks[0].id)[0].status == ImageStatus.GENERATING
    assert store.find_by_task(tasks[1].id)[0].status == ImageStatus.QUEUED

    gateway.release.set()
    await queue.wait_idle()

    assert gateway.max_in_flight == 1
    assert [call["prompt"] for call in gateway.calls] == ["prompt 0", "prompt 1", "prompt 2"]
    assert queue.snapshot() == {"pending": 0, "active_task_id": None, "queued_task_ids": []}


async def test_enqueue_after_idle_restarts_worker(queue, store, gateway):
    first = Task.create("first")
    queue.enqueue(first)
    await queue.wait_idle()

    second = Task.create("second")
    queue.enqueue(second)
    await queue.wait_idle()

    assert store.find_by_task(second.id)[0].status == ImageStatus.COMPLETED


async def test_progress_runs_during_generation_and_clears_after(queue, store, gateway, progress):
    gateway.release = asyncio.Event()
    task = Task.create("a cat")
    queue.enqueue(task)

    await asyncio.sleep(0.05)
    item = store.find_by_task(task.id)[0]
    assert 0 < item.progress < 95

    gateway.release.set()
    await queue.wait_idle()
    assert item.progress == 100
    assert not progress.is_ticking(item.id)

    await asyncio.sleep(0.05)
    assert item.progress is None


async def test_invalid_task_is_rejected_without_side_effects(queue, store):
    with pytest.raises(ValidationError):
        queue.enqueue(Task.create("a cat", num_images=0))
    with pytest.raises(ValidationError):
        queue.enqueue(Task.create("   "))
    assert store.gallery == []
    assert queue.pending_count == 0


async def test_gallery_write_errors_do_not_stall_the_queue(queue, store, gateway, progress, monkeypatch):
    gateway.release = asyncio.Event()
    first, second = Task.create("first"), Task.create("second")
    queue.enqueue(first)
    queue.enqueue(second)

    def disk_full():
        raise sqlite3.OperationalError("database or disk is full")

    monkeypatch.setattr(store, "save_gallery", disk_full)
    gateway.release.set()
    await asyncio.wait_for(queue.wait_idle(), timeout=1)

    items = store.find_by_task(first.id) + store.find_by_task(second.id)
    assert [item.status for item in items] == [ImageStatus.COMPLETED] * 2
    assert not any(progress.is_ticking(item.id) for item in items)
    assert queue.pending_count == 0 and queue.active_task is None


async def test_unexpected_error_after_generation_fails_leftover_slots(queue, store, gateway, progress, monkeypatch):
    gateway.results = [[make_image("only")]]
    task = Task.create("a cat", num_images=3)
    after = Task.create("a dog")

    def broken_discard(item_ids):
        raise RuntimeError("discard failed")

    monkeypatch.setattr(store, "discard", broken_discard)
    queue.enqueue(task)
    queue.enqueue(after)
    await asyncio.wait_for(queue.wait_idle(), timeout=1)

    items = store.find_by_task(task.id)
    assert [item.status for item in items] == [ImageStatus.COMPLETED, ImageStatus.FAILED, ImageStatus.FAILED]
    assert items[1].error == "discard failed"
    assert not any(progress.is_ticking(item.id) for item in items)
    assert store.find_by_task(after.id)[0].status == ImageStatus.COMPLETED
    assert queue.pending_count == 0


async def test_artifact_upload_runs_off_the_event_loop(gateway, store, progress):
    artifacts = LoopRecordingStore()
    task_queue = TaskQueue(gateway, store, progress, artifacts=artifacts)
    task_queue.enqueue(Task.create("a cat", num_images=2))
    await task_queue.wait_idle()
    await task_queue.close()

    assert len(artifacts.on_loop) == 2
    assert not any(artifacts.on_loop)
