from __future__ import annotations

import pytest

from matteflow.models.task import TaskStatus


def test_waiting_queue_is_fifo_with_id_tiebreak(task_store, clock):
    first = task_store.create_task("alice", "/in/1.mp4", "normal")
    second = task_store.create_task("alice", "/in/2.mp4", "normal")
    clock.advance(seconds=-5)
    oldest = task_store.create_task("alice", "/in/0.mp4", "normal")

    assert [task.id for task in task_store.list_waiting(10)] == [oldest.id, first.id, second.id]
    assert len(task_store.list_waiting(2)) == 2


def test_transitions_are_one_way(task_store):
    task = task_store.create_task("alice", "/in/1.mp4", "normal")

    assert task_store.mark_processing(task.id, "w1", mask_video_path="/m.mp4")
    assert not task_store.mark_processing(task.id, "w2")
    assert not task_store.cancel(task.id)
    assert task_store.finish(task.id, TaskStatus.completed, output_paths=["/o.mp4"])
    assert not task_store.finish(task.id, TaskStatus.failed)
    assert not task_store.update_progress(task.id, 10)

    stored = task_store.get_task(task.id)
    assert stored.status == TaskStatus.completed
    assert stored.worker_address == "w1"
    assert stored.mask_video_path == "/m.mp4"
    assert stored.progress == 100


def test_finish_only_from_processing_and_holding_worker(task_store):
    task = task_store.create_task("alice", "/in/1.mp4", "normal")

    assert not task_store.finish(task.id, TaskStatus.completed)
    assert not task_store.update_progress(task.id, 30)
    assert task_store.get_task(task.id).status == TaskStatus.waiting

    task_store.mark_processing(task.id, "w1")
    assert not task_store.finish(task.id, TaskStatus.completed, worker_address="w2")
    assert task_store.finish(task.id, TaskStatus.completed, worker_address="w1")


def test_finish_requires_terminal_status(task_store):
    task = task_store.create_task("alice", "/in/1.mp4", "normal")
    with pytest.raises(ValueError):
        task_store.finish(task.id, TaskStatus.processing)


def test_requeue_only_for_holding_worker(task_store):
    task = task_store.create_task("alice", "/in/1.mp4", "normal")
    task_store.mark_processing(task.id, "w1")

    assert not task_store.requeue(task.id, "w2", message="lease expired")
    assert task_store.requeue(task.id, "w1", message="lease expired")

    stored = task_store.get_task(task.id)
    assert stored.status == TaskStatus.waiting
    assert stored.worker_address is None


def test_model_usage_counts(task_store):
    task_store.record_model_usage("normal")
    task_store.record_model_usage("normal")
    task_store.record_model_usage("pro")

    assert [(usage.model_name, usage.usage_count) for usage in task_store.list_model_usage()] == [
        ("normal", 2),
        ("pro", 1),
    ]
