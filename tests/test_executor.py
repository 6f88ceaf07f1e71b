from concurrent.futures import Future

import pytest

from kernagg.buffer_registry import HostBufferProvider
from kernagg.executor import AggregatedExecutor, AllocatorSlice, ExecutorMode, ExecutorSlice


class RecordingExecutor:
    def __init__(self, ready=True):
        self.calls = []
        self.readiness = Future()
        if ready:
            self.readiness.set_result(None)

    def post(self, f, *args):
        self.calls.append((f, args))
        f(*args)

    def async_(self, f, *args):
        self.calls.append((f, args))
        future = Future()
        future.set_result(f(*args))
        return future

    def get_future(self):
        return self.readiness


class Factory:
    def __init__(self, ready=True):
        self.ready = ready
        self.created = []
        self.released = []

    def __call__(self, gpu_id):
        executor = RecordingExecutor(self.ready)
        self.created.append((gpu_id, executor))
        return executor

    def release(self, executor):
        self.released.append(executor)


def make(max_slices, mode=ExecutorMode.STRICT, ready=True, provider=None):
    factory = Factory(ready)
    executor = AggregatedExecutor(
        max_slices, mode, factory, provider=provider, release=factory.release
    )
    return executor, factory


def strict_team(executor, size):
    futures = [executor.request_executor_slice() for _ in range(size)]
    return [future.result(timeout=1) for future in futures]


def test_eager_with_idle_executor_starts_team_of_one():
    executor, factory = make(4, ExecutorMode.EAGER)
    future = executor.request_executor_slice()
    assert future.done()
    member = future.result()
    assert member.id == 0
    assert member.number_slices == 1
    assert executor.slice_available() is False
    assert len(factory.created) == 1


def test_eager_with_busy_executor_fills_team():
    executor, factory = make(3, ExecutorMode.EAGER, ready=False)
    futures = [executor.request_executor_slice() for _ in range(3)]
    assert [future.done() for future in futures] == [False, False, True]
    assert futures[2].result().id == 2
    assert executor.request_executor_slice() is None
    factory.created[0][1].readiness.set_result(None)
    members = [future.result(timeout=1) for future in futures]
    assert [member.id for member in members] == [0, 1, 2]
    assert all(member.number_slices == 3 for member in members)


def test_eager_busy_executor_launches_partial_team_when_idle():
    executor, factory = make(4, ExecutorMode.EAGER, ready=False)
    futures = [executor.request_executor_slice() for _ in range(2)]
    assert executor.slice_available() is True
    factory.created[0][1].readiness.set_result(None)
    members = [future.result(timeout=1) for future in futures]
    assert [member.number_slices for member in members] == [2, 2]
    assert executor.slice_available() is False


def test_strict_waits_for_full_team():
    executor, _ = make(2)
    first = executor.request_executor_slice()
    assert first.done() is False
    second = executor.request_executor_slice()
    assert first.done() and second.done()
    assert first.result().id == 0
    assert second.result().id == 1


def test_post_launches_once_for_team():
    executor, factory = make(2)
    first, second = strict_team(executor, 2)
    seen = []
    first.post(seen.append, 7)
    assert seen == []
    second.post(seen.append, 7)
    assert seen == [7]
    assert len(factory.created[0][1].calls) == 1


def test_sync_aggregation_slices_true_for_last_member_only():
    executor, _ = make(3)
    members = strict_team(executor, 3)
    results = [member.sync_aggregation_slices() for member in members]
    assert results == [False, False, True]


def test_async_futures_resolve_after_last_member():
    executor, _ = make(2)
    first, second = strict_team(executor, 2)
    seen = []
    future_one = first.async_(seen.append, 1)
    assert future_one.done() is False
    future_two = second.async_(seen.append, 1)
    assert future_one.result(timeout=1) is None
    assert future_two.result(timeout=1) is None
    assert seen == [1]


def test_wrap_async_calls_function_once():
    executor, _ = make(2)
    first, second = strict_team(executor, 2)
    launched = []

    def launch():
        launched.append(True)
        return RecordingExecutor().readiness

    futures = [first.wrap_async(launch), second.wrap_async(launch)]
    assert launched == [True]
    assert all(future.result(timeout=1) is None for future in futures)


def test_allocators_share_buffers_and_recycle():
    provider = HostBufferProvider()
    executor, _ = make(2, provider=provider)
    first, second = strict_team(executor, 2)
    alloc_one = first.make_allocator(float)
    alloc_two = second.make_allocator(float)
    buffer_one = alloc_one.allocate(8)
    buffer_two = alloc_two.allocate(8)
    assert buffer_one is buffer_two
    assert len(buffer_one) == 8
    alloc_one.deallocate(buffer_one, 8)
    assert provider.in_use_count == 1
    alloc_two.deallocate(buffer_two, 8)
    assert provider.in_use_count == 0
    assert provider.unused_count == 1


def test_buffer_size_mismatch_between_members():
    executor, _ = make(2)
    first, second = strict_team(executor, 2)
    first.get(4, int)
    with pytest.raises(ValueError):
        second.get(5, int)


def test_executor_released_after_slices_and_buffers_done():
    executor, factory = make(2)
    first, second = strict_team(executor, 2)
    buffer = first.get(3, int)
    second.get(3, int)
    first.close()
    second.close()
    assert factory.released == []
    assert executor.slice_available() is False
    executor.mark_unused(buffer, 3, int)
    executor.mark_unused(buffer, 3, int)
    assert factory.released == [factory.created[0][1]]
    assert executor.slice_available() is True
    assert executor.underlying_executor is None


def test_new_run_after_release():
    executor, factory = make(1)
    (member,) = strict_team(executor, 1)
    member.close()
    assert executor.slice_available() is True
    (again,) = strict_team(executor, 1)
    assert again.number_slices == 1
    assert len(factory.created) == 2
    assert executor.function_call_count == 0


def test_context_manager_closes_slice():
    executor, factory = make(1)
    (member,) = strict_team(executor, 1)
    with member as active:
        active.post(lambda: None)
    assert member.closed is True
    assert executor.current_slices == 0
    assert len(factory.released) == 1


def test_close_detects_skipped_calls():
    executor, _ = make(2)
    first, second = strict_team(executor, 2)
    first.post(lambda: None)
    second.post(lambda: None)
    first.post(lambda: None)
    with pytest.raises(RuntimeError):
        second.close()
    assert executor.current_slices == 1


def test_closed_slice_rejects_calls():
    executor, _ = make(1)
    (member,) = strict_team(executor, 1)
    member.close()
    with pytest.raises(RuntimeError):
        member.post(lambda: None)


def test_reduce_usage_counter_without_slices_raises():
    executor, _ = make(2)
    with pytest.raises(RuntimeError):
        executor.reduce_usage_counter()


def test_invalid_max_slices():
    with pytest.raises(ValueError):
        AggregatedExecutor(0, ExecutorMode.EAGER, Factory())


def test_mode_accepts_enum_value():
    executor = AggregatedExecutor(2, 2, Factory())
    assert executor.mode is ExecutorMode.STRICT


def test_allocator_slices_never_compare_equal():
    executor, _ = make(1)
    (member,) = strict_team(executor, 1)
    allocator = member.make_allocator(int)
    assert isinstance(allocator, AllocatorSlice)
    assert (allocator == allocator) is False


def test_executor_slice_requires_members():
    executor, _ = make(1)
    with pytest.raises(ValueError):
        ExecutorSlice(executor, 0, 0, 1)


def test_factory_gets_gpu_id():
    factory = Factory()
    executor = AggregatedExecutor(1, ExecutorMode.EAGER, factory, gpu_id=3)
    member = executor.request_executor_slice().result(timeout=1)
    assert factory.created[0][0] == 3
    assert member.underlying_executor is factory.created[0][1]