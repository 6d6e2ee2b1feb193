"""
Worker tests: step execution, outputs, failures and lost claims.
"""

import asyncio
import shutil
import threading

import pytest

from taskbroker.actions import ActionContext, ActionRegistry, TemplateAction, builtin
from taskbroker.db.store import TaskStore
from taskbroker.engine import StoreFault, TaskBroker
from taskbroker.models import TaskEventType, TaskSpec, TaskStatus, TaskStep
from taskbroker.tasks import TaskWorker


@pytest.fixture
def worker(broker: TaskBroker, registry: ActionRegistry, tmp_path):
    return TaskWorker(broker, registry, workspace_root=tmp_path / "workspaces")


async def run_dispatched(broker: TaskBroker, worker: TaskWorker, spec: TaskSpec):
    task_id = (await broker.dispatch(spec)).task_id
    agent = await broker.claim()
    await worker.run_one_task(agent)
    return task_id, agent


def messages(events):
    return [e.body["message"] for e in events]


@pytest.mark.asyncio
async def test_steps_run_in_order_and_output_is_rendered(broker: TaskBroker, worker: TaskWorker, store: TaskStore):
    spec = TaskSpec(
        values={"name": "world", "filename": "greeting.txt"},
        steps=[
            TaskStep(
                id="write",
                name="Write",
                action="fs:write",
                parameters={"path": "{{ parameters.filename }}", "content": "hello {{ parameters.name }}"},
            ),
            TaskStep(
                id="list",
                name="List",
                action="debug:log",
                parameters={"message": "listing", "listWorkspace": True},
            ),
        ],
        output={"written": "{{ steps.write.output.path }}", "files": "{{ steps.list.output.files }}"},
    )

    task_id, _ = await run_dispatched(broker, worker, spec)

    assert (await store.get_task(task_id)).status == TaskStatus.COMPLETED
    events = await store.list_events(task_id)
    assert [e.id for e in events] == list(range(1, len(events) + 1))
    assert messages(events) == [
        "Beginning step Write",
        "INFO: Wrote 11 characters to greeting.txt",
        "Finished step Write",
        "Beginning step List",
        "INFO: listing",
        "Workspace tree:",
        "greeting.txt",
        "Finished step List",
        "Run completed with status: completed",
    ]
    assert events[1].body["metadata"] == {"stepId": "write"}
    assert events[0].body["metadata"] == {"stepId": "write", "status": "processing"}
    assert events[-1].type == TaskEventType.COMPLETION
    assert events[-1].body["metadata"] == {
        "output": {"written": "greeting.txt", "files": ["greeting.txt"]}
    }


@pytest.mark.asyncio
async def test_workspace_is_removed_after_run(broker: TaskBroker, worker: TaskWorker, spec: TaskSpec):
    _, agent = await run_dispatched(broker, worker, spec)

    assert not (worker.workspace_root / agent.get_workspace_name()).exists()


@pytest.mark.asyncio
async def test_unknown_action_fails_task(broker: TaskBroker, worker: TaskWorker, store: TaskStore):
    spec = TaskSpec(
        steps=[
            TaskStep(id="ghost", name="Ghost", action="nope:missing"),
            TaskStep(id="after", name="After", action="debug:log", parameters={"message": "x"}),
        ],
    )

    task_id, _ = await run_dispatched(broker, worker, spec)

    assert (await store.get_task(task_id)).status == TaskStatus.FAILED
    events = await store.list_events(task_id)
    assert events[1].body["metadata"] == {"stepId": "ghost", "status": "failed"}
    assert "Beginning step After" not in messages(events)
    completion = events[-1]
    assert completion.type == TaskEventType.COMPLETION
    assert completion.body["message"] == "Run completed with status: failed"
    assert completion.body["metadata"]["error"]["name"] == "ActionNotFound"


@pytest.mark.asyncio
async def test_unresolvable_output_fails_task(broker: TaskBroker, worker: TaskWorker, store: TaskStore):
    spec = TaskSpec(
        steps=[TaskStep(id="one", name="One", action="debug:log", parameters={"message": "hi"})],
        output={"missing": "{{ steps.two.output.value }}"},
    )

    task_id, _ = await run_dispatched(broker, worker, spec)

    events = await store.list_events(task_id)
    assert (await store.get_task(task_id)).status == TaskStatus.FAILED
    assert events[-1].body["metadata"]["error"]["name"] == "TemplateError"


@pytest.mark.asyncio
async def test_write_outside_workspace_fails_task(broker: TaskBroker, worker: TaskWorker, store: TaskStore):
    spec = TaskSpec(
        steps=[
            TaskStep(
                id="escape",
                name="Escape",
                action="fs:write",
                parameters={"path": "../outside.txt", "content": "nope"},
            )
        ],
    )

    task_id, _ = await run_dispatched(broker, worker, spec)

    assert (await store.get_task(task_id)).status == TaskStatus.FAILED
    assert not (worker.workspace_root / "outside.txt").exists()
    error = (await store.list_events(task_id))[-1].body["metadata"]["error"]
    assert error["name"] == "ValueError"


@pytest.mark.asyncio
async def test_lost_claim_abandons_remaining_steps(broker: TaskBroker, registry: ActionRegistry, worker: TaskWorker, store: TaskStore):
    """A task reclaimed mid-run keeps exactly the reclaimer's completion event."""

    claimed = {}

    async def reclaimed_elsewhere(ctx: ActionContext) -> None:
        await store.complete_task(claimed["task_id"], TaskStatus.FAILED, {"message": "reclaimed"})
        await asyncio.sleep(broker.heartbeat_interval * 4)

    registry.register(TemplateAction(id="test:reclaim", handler=reclaimed_elsewhere))
    spec = TaskSpec(
        steps=[
            TaskStep(id="first", name="First", action="test:reclaim"),
            TaskStep(id="second", name="Second", action="debug:log", parameters={"message": "late"}),
        ],
    )
    task_id = (await broker.dispatch(spec)).task_id
    agent = await broker.claim()
    claimed["task_id"] = agent.task_id

    await worker.run_one_task(agent)

    assert agent.claim_lost
    assert (await store.get_task(task_id)).status == TaskStatus.FAILED
    events = await store.list_events(task_id)
    completions = [e for e in events if e.type == TaskEventType.COMPLETION]
    assert len(completions) == 1
    assert completions[0].body == {"message": "reclaimed"}
    assert "Beginning step Second" not in messages(events)


@pytest.mark.asyncio
async def test_worker_loop_claims_and_runs_dispatched_tasks(broker: TaskBroker, worker: TaskWorker, store: TaskStore, spec: TaskSpec):
    worker.start(concurrency=2)
    try:
        task_ids = [(await broker.dispatch(spec)).task_id for _ in range(3)]

        deadline = asyncio.get_running_loop().time() + 5.0
        while True:
            statuses = [(await store.get_task(t)).status for t in task_ids]
            if all(s == TaskStatus.COMPLETED for s in statuses):
                break
            assert asyncio.get_running_loop().time() < deadline, statuses
            await asyncio.sleep(0.02)
    finally:
        await worker.stop()

    for task_id in task_ids:
        completion = (await store.list_events(task_id))[-1]
        assert completion.body["metadata"] == {"output": {"name": "demo"}}


@pytest.mark.asyncio
async def test_store_fault_while_reporting_success_is_retried(broker: TaskBroker, worker: TaskWorker, store: TaskStore, spec: TaskSpec, monkeypatch):
    real_complete = store.complete_task
    reported = []

    async def flaky_complete(task_id, status, event_body):
        reported.append(status)
        if len(reported) == 1:
            raise StoreFault("complete_task", "database is locked")
        return await real_complete(task_id, status, event_body)

    monkeypatch.setattr(store, "complete_task", flaky_complete)

    task_id, agent = await run_dispatched(broker, worker, spec)

    assert reported == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
    assert agent.done
    assert (await store.get_task(task_id)).status == TaskStatus.COMPLETED
    completion = (await store.list_events(task_id))[-1]
    assert completion.body["metadata"] == {"output": {"name": "demo"}}


@pytest.mark.asyncio
async def test_persistent_store_fault_leaves_task_for_vacuum(broker: TaskBroker, worker: TaskWorker, store: TaskStore, spec: TaskSpec, backdate_heartbeat, monkeypatch):
    real_complete = store.complete_task
    reported = []

    async def failing_complete(task_id, status, event_body):
        reported.append(status)
        raise StoreFault("complete_task", "database is locked")

    monkeypatch.setattr(store, "complete_task", failing_complete)

    task_id, agent = await run_dispatched(broker, worker, spec)

    assert set(reported) == {TaskStatus.COMPLETED}
    assert len(reported) == broker.store_fault_max_retries + 1
    assert not agent.done
    assert (await store.get_task(task_id)).status == TaskStatus.PROCESSING

    monkeypatch.setattr(store, "complete_task", real_complete)
    await backdate_heartbeat(task_id, 60)
    assert await broker.vacuum_tasks(30) == 1
    assert (await store.get_task(task_id)).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_workspace_io_runs_off_the_event_loop(broker: TaskBroker, worker: TaskWorker, monkeypatch):
    loop_thread = threading.get_ident()
    io_threads = []
    real_write = builtin._write_file
    real_rmtree = shutil.rmtree

    def tracking_write(target, content):
        io_threads.append(("write", threading.get_ident()))
        real_write(target, content)

    def tracking_rmtree(path, *args, **kwargs):
        io_threads.append(("rmtree", threading.get_ident()))
        real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(builtin, "_write_file", tracking_write)
    monkeypatch.setattr(shutil, "rmtree", tracking_rmtree)
    spec = TaskSpec(
        steps=[
            TaskStep(id="write", name="Write", action="fs:write", parameters={"path": "a.txt", "content": "a"}),
        ],
    )

    _, agent = await run_dispatched(broker, worker, spec)

    assert [kind for kind, _ in io_threads] == ["write", "rmtree"]
    assert all(ident != loop_thread for _, ident in io_threads)
    assert not (worker.workspace_root / agent.get_workspace_name()).exists()
