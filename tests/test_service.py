"""End-to-end tests for the instance service lifecycle."""
from __future__ import annotations

import asyncio

import pytest
from factories import (
    FakeRemoteClient,
    FlakyError,
    next_item,
    operation_event,
    operation_payload,
)

from lxdsync.client import RemoteError
from lxdsync.models import StatusCode
from lxdsync.service import InitializationError, InstanceService
from lxdsync.state import InstanceNotFoundError


def _event(
    op_id: str,
    *instances: str,
    description: str = "",
    status_code: StatusCode = StatusCode.SUCCESS,
) -> dict[str, object]:
    operation = operation_payload(
        op_id,
        description=description,
        status_code=status_code,
        instances=instances,
    )
    return operation_event(operation)


@pytest.mark.asyncio
async def test_init_loads_baseline_without_notifications() -> None:
    """init subscribes first, then loads instances and running operations silently."""
    client = FakeRemoteClient("foo")
    client.add_operation("running", operation_payload("op", status_code=StatusCode.RUNNING))
    service = InstanceService(client)
    added = service.instance_added.subscribe()
    removed = service.instance_removed.subscribe()
    updated = service.instance_updated.subscribe()
    assert service.current_instances() == ()

    await service.init()
    await asyncio.sleep(0)

    assert client.count("get_events") == 1
    assert client.count("get_instances") == 1
    assert client.count("get_operations") == 1
    assert client.count("get_operation", "op") == 1
    assert client.calls.index(("get_events",)) < client.calls.index(("get_instances",))
    assert client.subscribed_types == [("operation",)]
    assert service.ready
    assert service.current_instances() == ("foo",)
    assert await next_item(service.instance_stream.subscribe()) == ("foo",)
    assert added.drain() == []
    assert removed.drain() == []
    assert updated.drain() == []

    await service.dispose()


@pytest.mark.asyncio
async def test_event_for_new_instance_reports_added() -> None:
    """An operation on an instance not in the snapshot adds it exactly once."""
    client = FakeRemoteClient("foo")
    service = InstanceService(client)
    await service.init()
    added = service.instance_added.subscribe()
    removed = service.instance_removed.subscribe()
    updated = service.instance_updated.subscribe()
    client.add_instance("bar")

    client.emit(_event("create", "bar"))

    assert await next_item(added) == "bar"
    assert removed.drain() == []
    assert updated.drain() == []
    assert service.current_instances() == ("foo", "bar")
    assert await next_item(service.instance_stream.subscribe()) == ("foo", "bar")

    await service.dispose()


@pytest.mark.asyncio
async def test_event_for_deleted_instance_reports_removed(client: FakeRemoteClient) -> None:
    """A settling operation on an instance gone remotely removes it exactly once."""
    service = InstanceService(client)
    await service.init()
    added = service.instance_added.subscribe()
    removed = service.instance_removed.subscribe()
    updated = service.instance_updated.subscribe()
    client.remove_instance("foo")

    client.emit(_event("delete", "foo"))

    assert await next_item(removed) == "foo"
    assert added.drain() == []
    assert updated.drain() == []
    assert service.current_instances() == ("bar",)
    with pytest.raises(InstanceNotFoundError):
        service.get_instance("foo")

    await service.dispose()


@pytest.mark.asyncio
async def test_event_for_known_instance_reports_updated() -> None:
    """An operation over a known instance only produces an update."""
    client = FakeRemoteClient("foo", "bar", "baz")
    service = InstanceService(client)
    await service.init()
    added = service.instance_added.subscribe()
    removed = service.instance_removed.subscribe()
    updated = service.instance_updated.subscribe()
    stream = service.instance_stream.subscribe()

    client.emit(_event("op", "bar"))

    assert await next_item(updated) == "bar"
    assert added.drain() == []
    assert removed.drain() == []
    assert updated.drain() == []
    assert stream.drain() == [("foo", "bar", "baz")]
    assert service.current_instances() == ("foo", "bar", "baz")

    await service.dispose()


@pytest.mark.asyncio
async def test_in_flight_operations_shape_status() -> None:
    """Operations found at start-up override status until they settle."""
    client = FakeRemoteClient("foo", "bar", "baz")
    starting = operation_payload(
        "p",
        description="Starting instance",
        status_code=StatusCode.PENDING,
        instances=["foo"],
    )
    client.add_operation("pending", starting)
    client.add_operation(
        "running",
        operation_payload(
            "r",
            description="Stopping instance",
            status_code=StatusCode.RUNNING,
            instances=["bar"],
        ),
    )
    client.add_operation(
        "success",
        operation_payload(
            "s",
            description="Restarting instance",
            status_code=StatusCode.SUCCESS,
            instances=["baz"],
        ),
    )
    service = InstanceService(client)
    await service.init()
    updated = service.instance_updated.subscribe()

    client.emit(operation_event(starting))

    assert await next_item(updated) == "foo"
    assert service.get_instance("foo").status_code is StatusCode.STARTING
    assert service.get_instance("bar").status_code is StatusCode.STOPPING
    assert service.get_instance("baz").status_code is StatusCode.STOPPED

    await service.dispose()


@pytest.mark.asyncio
async def test_derived_status_reverts_to_fetched_status(client: FakeRemoteClient) -> None:
    """"starting" lasts only until the operation succeeds."""
    service = InstanceService(client)
    await service.init()
    updated = service.instance_updated.subscribe()

    client.emit(
        _event("op", "foo", description="Starting instance", status_code=StatusCode.PENDING)
    )
    assert await next_item(updated) == "foo"
    assert service.get_instance("foo").status == "starting"

    client.set_status("foo", StatusCode.RUNNING)
    client.emit(_event("op", "foo", description="Starting instance"))
    assert await next_item(updated) == "foo"

    assert service.get_instance("foo").status == "running"

    await service.dispose()


@pytest.mark.asyncio
async def test_events_during_init_are_not_lost() -> None:
    """An instance created after listing is still picked up from the feed."""
    client = FakeRemoteClient("foo")
    original = client.get_operations

    async def get_operations() -> dict[str, list[str]]:
        client.add_instance("late")
        client.emit(_event("create", "late"))
        return await original()

    client.get_operations = get_operations  # type: ignore[method-assign]
    service = InstanceService(client)
    added = service.instance_added.subscribe()

    await service.init()

    assert service.current_instances() == ("foo",)
    assert await next_item(added) == "late"
    assert service.current_instances() == ("foo", "late")

    await service.dispose()


@pytest.mark.asyncio
async def test_transient_failure_keeps_stream_alive(client: FakeRemoteClient) -> None:
    """A failed fetch keeps the previous record and later events still apply."""
    service = InstanceService(client)
    await service.init()
    updated = service.instance_updated.subscribe()
    client.failures["get_instance:foo"] = FlakyError("timeout")

    client.emit(_event("op1", "foo"))
    client.emit(_event("op2", "bar"))

    assert await next_item(updated) == "bar"
    assert service.get_instance("foo").status_code is StatusCode.STOPPED

    await service.dispose()


@pytest.mark.asyncio
@pytest.mark.parametrize("failing", ["get_events", "get_instances", "get_operations"])
async def test_init_failure_is_fatal(client: FakeRemoteClient, failing: str) -> None:
    """Start-up errors surface as InitializationError and leave nothing behind."""
    client.failures[failing] = RemoteError("unreachable")
    service = InstanceService(client)

    with pytest.raises(InitializationError) as excinfo:
        await service.init()

    assert isinstance(excinfo.value.__cause__, RemoteError)
    assert service.current_instances() == ()
    assert not service.ready

    await service.dispose()


@pytest.mark.asyncio
async def test_init_twice_is_rejected(client: FakeRemoteClient) -> None:
    """A service initialises exactly once."""
    service = InstanceService(client)
    await service.init()

    with pytest.raises(InitializationError):
        await service.init()

    await service.dispose()
    with pytest.raises(InitializationError):
        await service.init()


@pytest.mark.asyncio
async def test_dispose_closes_channels_and_is_idempotent(client: FakeRemoteClient) -> None:
    """After dispose nothing is emitted and every subscription ends."""
    service = InstanceService(client)
    await service.init()
    added = service.instance_added.subscribe()
    stream = service.instance_stream.subscribe()

    await service.dispose()
    await service.dispose()

    assert service.disposed
    assert service.current_instances() == ()
    assert [name async for name in added] == []
    assert [names async for names in stream] == [("foo", "bar")]
    assert service.instance_removed.closed
    assert service.instance_updated.closed


@pytest.mark.asyncio
async def test_refresh_publishes_membership_changes(client: FakeRemoteClient) -> None:
    """refresh re-lists instances and reports the difference."""
    service = InstanceService(client)
    await service.init()
    added = service.instance_added.subscribe()
    removed = service.instance_removed.subscribe()
    client.add_instance("baz")
    client.remove_instance("foo")

    changes = await service.refresh()

    assert changes.added == ("baz",)
    assert changes.removed == ("foo",)
    assert added.drain() == ["baz"]
    assert removed.drain() == ["foo"]
    assert service.current_instances() == ("bar", "baz")

    await service.dispose()
    with pytest.raises(InitializationError):
        await service.refresh()


@pytest.mark.asyncio
async def test_async_context_manager(client: FakeRemoteClient) -> None:
    """The service can be used with ``async with``."""
    async with InstanceService(client, event_types=("operation", "lifecycle")) as service:
        assert service.ready
        assert service.current_instances() == ("foo", "bar")

    assert service.disposed
    assert client.subscribed_types == [("operation", "lifecycle")]


def _lxdsync_tasks() -> list[asyncio.Task[object]]:
    return [task for task in asyncio.all_tasks() if task.get_name() == "lxdsync-events"]


@pytest.mark.asyncio
async def test_dispose_during_listing_aborts_init() -> None:
    """A service disposed while init waits on the remote stays empty."""
    client = FakeRemoteClient("foo")
    entered = asyncio.Event()
    release = asyncio.Event()
    original = client.get_instances

    async def get_instances() -> list[str]:
        entered.set()
        await release.wait()
        return await original()

    client.get_instances = get_instances  # type: ignore[method-assign]
    service = InstanceService(client)
    stream = service.instance_stream.subscribe()
    starting = asyncio.create_task(service.init())
    await entered.wait()

    await service.dispose()
    release.set()

    with pytest.raises(InitializationError, match="disposed"):
        await starting
    assert service.current_instances() == ()
    assert not service.ready
    assert _lxdsync_tasks() == []
    assert [names async for names in stream] == [()]


@pytest.mark.asyncio
async def test_dispose_during_snapshot_fetch_commits_nothing() -> None:
    """Records fetched after dispose never reach the registry."""
    client = FakeRemoteClient("foo")
    entered = asyncio.Event()
    release = asyncio.Event()
    original = client.get_instance

    async def get_instance(name: str) -> dict[str, object]:
        entered.set()
        await release.wait()
        return await original(name)

    client.get_instance = get_instance  # type: ignore[method-assign]
    service = InstanceService(client)
    starting = asyncio.create_task(service.init())
    await entered.wait()

    await service.dispose()
    release.set()

    with pytest.raises(InitializationError, match="disposed"):
        await starting
    assert service.current_instances() == ()
    assert _lxdsync_tasks() == []


@pytest.mark.asyncio
async def test_operation_gone_before_fetch_is_skipped(client: FakeRemoteClient) -> None:
    """An operation listed but purged before it is fetched does not fail init."""
    client.add_operation(
        "running",
        operation_payload(
            "live",
            description="Stopping instance",
            status_code=StatusCode.RUNNING,
            instances=["foo"],
        ),
    )
    client.buckets["success"] = ["/1.0/operations/gone"]
    service = InstanceService(client)

    await service.init()

    assert client.count("get_operation", "gone") == 1
    assert service.current_instances() == ("foo", "bar")
    assert service.get_instance("foo").status_code is StatusCode.STOPPING

    await service.dispose()


@pytest.mark.asyncio
async def test_operation_fetch_failure_is_still_fatal(client: FakeRemoteClient) -> None:
    """Errors other than not-found while loading operations abort init."""
    client.add_operation("running", operation_payload("op", status_code=StatusCode.RUNNING))
    client.failures["get_operation:op"] = RemoteError("timeout")
    service = InstanceService(client)

    with pytest.raises(InitializationError, match="timeout"):
        await service.init()

    assert service.current_instances() == ()


@pytest.mark.asyncio
async def test_abandoned_observer_loop_is_released(client: FakeRemoteClient) -> None:
    """Breaking out of ``async for`` over a service channel unsubscribes."""
    service = InstanceService(client)
    await service.init()

    async for names in service.instance_stream:
        assert names == ("foo", "bar")
        break
    for _ in range(5):
        await asyncio.sleep(0)

    assert service.instance_stream.subscriber_count == 0

    await service.dispose()
