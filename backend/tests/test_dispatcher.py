from __future__ import annotations

import asyncio

from matteflow.models.task import TaskCallbackRequest, TaskStatus
from matteflow.models.worker import AttemptState, WorkerStatus
from matteflow.services.dispatcher import TaskDispatcher


def _tick(dispatcher):
    return asyncio.run(dispatcher.tick())


def _submit(task_store, clock, count, model="normal"):
    tasks = []
    for index in range(count):
        tasks.append(task_store.create_task("alice", f"/in/{index}.mp4", model))
        clock.advance(seconds=1)
    return tasks


def test_tick_picks_worker_with_most_successes(dispatcher, task_store, registry, monitor, worker_client, clock):
    monitor.beat("w1")
    monitor.beat("w2")
    for _ in range(10):
        registry.increment_responded("w1", True)
    for _ in range(2):
        registry.increment_responded("w2", True)
    (task,) = _submit(task_store, clock, 1)

    report = _tick(dispatcher)

    assert report.assigned == {task.id: "w1"}
    assert worker_client.calls == [("w1", task.id)]
    stored = task_store.get_task(task.id)
    assert stored.status == TaskStatus.processing
    assert stored.worker_address == "w1"
    assert stored.mask_video_path == f"/out/{task.id}/mask.mp4"
    assert stored.composite_video_path == f"/out/{task.id}/composite.mp4"
    worker = registry.get("w1")
    assert worker.status == WorkerStatus.busy
    assert worker.current_task_id == task.id
    assert (worker.requested, worker.responded, worker.succeeded) == (1, 11, 11)
    assert [(usage.model_name, usage.usage_count) for usage in task_store.list_model_usage()] == [("normal", 1)]


def test_tick_is_fifo_and_bounded_by_batch(dispatcher, task_store, monitor, worker_client, clock):
    for index in range(7):
        monitor.beat(f"w{index}")
    tasks = _submit(task_store, clock, 7)

    report = _tick(dispatcher)

    assert list(report.assigned) == [task.id for task in tasks[:5]]
    assert [task_id for _, task_id in worker_client.calls] == [task.id for task in tasks[:5]]
    assert task_store.get_task(tasks[5].id).status == TaskStatus.waiting


def test_task_goes_to_at_most_one_worker_across_ticks(dispatcher, task_store, monitor, worker_client, clock):
    monitor.beat("w1")
    monitor.beat("w2")
    (task,) = _submit(task_store, clock, 1)

    _tick(dispatcher)
    _tick(dispatcher)
    _tick(dispatcher)

    assert worker_client.calls == [("w1", task.id)]


def test_no_idle_worker_leaves_task_waiting(dispatcher, task_store, worker_client, clock):
    (task,) = _submit(task_store, clock, 1)

    report = _tick(dispatcher)

    assert report.unassigned == [task.id]
    assert worker_client.calls == []
    assert task_store.get_task(task.id).status == TaskStatus.waiting


def test_stale_worker_is_swept_before_selection(dispatcher, task_store, monitor, registry, worker_client, clock):
    monitor.beat("w1")
    clock.advance(minutes=20)
    (task,) = _submit(task_store, clock, 1)

    report = _tick(dispatcher)

    assert report.offline_workers == ["w1"]
    assert report.unassigned == [task.id]
    assert registry.get("w1").status == WorkerStatus.offline

    _tick(dispatcher)
    assert worker_client.calls == []

    monitor.beat("w1")
    report = _tick(dispatcher)
    assert report.assigned == {task.id: "w1"}


def test_rejection_releases_worker_and_retries_later(dispatcher, task_store, registry, monitor, worker_client, clock):
    monitor.beat("w1")
    worker_client.outcomes["w1"] = "rejected"
    (task,) = _submit(task_store, clock, 1)

    _tick(dispatcher)

    worker = registry.get("w1")
    assert worker.status == WorkerStatus.idle
    assert (worker.requested, worker.responded, worker.succeeded) == (1, 1, 0)
    assert task_store.get_task(task.id).status == TaskStatus.waiting
    assert registry.list_attempts(task_id=task.id)[0].state == AttemptState.rejected

    worker_client.outcomes["w1"] = "accepted"
    report = _tick(dispatcher)
    assert report.assigned == {task.id: "w1"}


def test_unreachable_worker_goes_offline(dispatcher, task_store, registry, monitor, worker_client, clock):
    monitor.beat("w1")
    monitor.beat("w2")
    registry.increment_responded("w1", True)
    worker_client.outcomes["w1"] = "unreachable"
    first, second = _submit(task_store, clock, 2)

    report = _tick(dispatcher)

    worker = registry.get("w1")
    assert worker.status == WorkerStatus.offline
    assert worker.requested == 1
    assert registry.list_attempts(task_id=first.id)[0].state == AttemptState.unreachable
    # The first task lost its worker; the second still found w2 in the same tick.
    assert report.unassigned == [first.id]
    assert report.assigned == {second.id: "w2"}
    assert task_store.get_task(first.id).status == TaskStatus.waiting


def test_one_failing_task_does_not_stop_the_batch(dispatcher, task_store, registry, monitor, worker_client, clock):
    monitor.beat("w1")
    monitor.beat("w2")
    registry.increment_responded("w1", True)
    worker_client.outcomes["w1"] = "boom"
    first, second = _submit(task_store, clock, 2)

    report = _tick(dispatcher)

    assert first.id in report.errors
    assert report.assigned == {second.id: "w2"}
    assert registry.get("w1").status == WorkerStatus.idle
    assert task_store.get_task(first.id).status == TaskStatus.waiting


def test_task_cancelled_during_call_is_abandoned(dispatcher, task_store, registry, monitor, worker_client, clock):
    monitor.beat("w1")
    (task,) = _submit(task_store, clock, 1)
    worker_client.on_submit = lambda address, submitted: task_store.cancel(submitted.id)

    report = _tick(dispatcher)

    assert report.unassigned == [task.id]
    assert task_store.get_task(task.id).status == TaskStatus.failed
    assert registry.get("w1").status == WorkerStatus.idle
    assert registry.list_attempts(task_id=task.id)[0].state == AttemptState.failed
    assert task_store.list_model_usage() == []


def test_lapsed_lease_requeues_task_and_benches_worker(dispatcher, task_store, registry, monitor, worker_client, clock):
    monitor.beat("w1")
    (task,) = _submit(task_store, clock, 1)
    _tick(dispatcher)

    # w2 keeps beating, w1 keeps beating too but never calls back.
    clock.advance(minutes=50)
    monitor.beat("w1")
    monitor.beat("w2")
    clock.advance(minutes=11)
    monitor.beat("w1")
    monitor.beat("w2")

    report = _tick(dispatcher)

    assert report.expired_tasks == [task.id]
    assert registry.get("w1").status == WorkerStatus.offline
    assert report.assigned == {task.id: "w2"}
    states = [attempt.state for attempt in registry.list_attempts(task_id=task.id)]
    assert states == [AttemptState.expired, AttemptState.accepted]


def test_start_and_stop_run_ticks_in_background(dispatcher, task_store, monitor, worker_client, clock):
    monitor.beat("w1")
    (task,) = _submit(task_store, clock, 1)

    async def scenario():
        dispatcher.start()
        assert dispatcher.running
        for _ in range(100):
            if worker_client.calls:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()

    asyncio.run(scenario())

    assert not dispatcher.running
    assert worker_client.calls == [("w1", task.id)]


def test_failed_worker_is_not_offered_another_task_in_the_same_tick(
    dispatcher, task_store, registry, monitor, worker_client, clock
):
    monitor.beat("w1")
    monitor.beat("w2")
    registry.increment_responded("w1", True)
    worker_client.outcomes["w1"] = "rejected"
    first, second, third = _submit(task_store, clock, 3)

    report = _tick(dispatcher)

    assert worker_client.calls == [("w1", first.id), ("w2", second.id)]
    assert report.assigned == {second.id: "w2"}
    assert report.unassigned == [first.id, third.id]
    assert registry.get("w1").status == WorkerStatus.idle

    worker_client.outcomes["w1"] = "accepted"
    report = _tick(dispatcher)
    assert report.assigned == {first.id: "w1"}


def test_two_dispatchers_racing_for_one_task(
    db, dispatcher, task_store, registry, monitor, worker_client, rival_worker_client, callbacks, ledger, clock
):
    ledger.open_account("alice", "10")
    monitor.beat("w1")
    monitor.beat("w2")
    registry.increment_responded("w1", True)
    (task,) = _submit(task_store, clock, 1)
    rival = TaskDispatcher(db, task_store, registry, monitor, rival_worker_client, interval_sec=0.01, batch_size=5)
    # While the call to w1 is in flight, the rival dispatcher assigns the same task to w2.
    worker_client.on_submit = lambda address, submitted: rival.tick()

    report = _tick(dispatcher)

    assert report.unassigned == [task.id]
    assert rival_worker_client.calls == [("w2", task.id)]
    assert task_store.get_task(task.id).worker_address == "w2"
    states = {attempt.worker_address: attempt.state for attempt in registry.list_attempts(task_id=task.id)}
    assert states == {"w1": AttemptState.failed, "w2": AttemptState.accepted}
    assert registry.get("w1").status == WorkerStatus.idle
    assert registry.get("w1").current_task_id is None
    assert registry.get("w2").current_task_id == task.id

    done = callbacks.handle(TaskCallbackRequest.model_validate({"taskId": task.id, "status": "completed"}))

    assert done.status == TaskStatus.completed
    states = {attempt.worker_address: attempt.state for attempt in registry.list_attempts(task_id=task.id)}
    assert states == {"w1": AttemptState.failed, "w2": AttemptState.completed}
    winner = registry.get("w2")
    assert winner.status == WorkerStatus.idle
    assert winner.current_task_id is None
    assert (winner.completed, winner.failed) == (1, 0)
    assert registry.get("w1").failed == 1
