"""Aggregated executors that fuse the work of several tasks into one launch.

An :class:`AggregatedExecutor` hands out :class:`ExecutorSlice` objects. The
slices that are handed out together form a team. Every member makes the same
calls in the same order, but a call reaches the underlying executor only once,
when the last member makes it. Buffers requested through a slice are shared by
the whole team.

The underlying executor comes from ``executor_factory(gpu_id)``. It must provide
``post(f, *args)`` and ``async_(f, *args)``; the latter returns a
:class:`concurrent.futures.Future`. It may provide ``get_future()``, returning a
future that completes once the executor is idle. Without it the executor counts
as idle at once.
"""

import enum
import functools
import threading
from concurrent.futures import Future

from kernagg.buffer_registry import AggregatedBufferRegistry
from kernagg.config import NUMBER_INSTANCES, worker_thread_num
from kernagg.function_call import AggregatedFunctionCall


class ExecutorMode(enum.Enum):
    """When a team of slices starts to run."""

    #: Start as soon as the underlying executor is idle or the team is full.
    EAGER = 1
    #: Start only once the team is full.
    STRICT = 2
    #: Keep admitting slices until the underlying executor is idle.
    ENDLESS = 3


def _ready_future():
    future = Future()
    future.set_result(None)
    return future


class AggregatedExecutor:
    """Hands out teams of executor slices that share calls and buffers."""

    def __init__(
        self,
        max_slices,
        mode,
        executor_factory,
        gpu_id=0,
        provider=None,
        release=None,
        check_calls=False,
    ):
        if max_slices < 1:
            raise ValueError(f"max_slices must be at least 1, got {max_slices}")
        self.max_slices = max_slices
        self.mode = ExecutorMode(mode)
        self.gpu_id = gpu_id
        self.check_calls = check_calls
        self._executor_factory = executor_factory
        self._release = release
        self._lock = threading.RLock()
        self._registry = AggregatedBufferRegistry(provider)
        self._slices_exhausted = False
        self._slices_alive = False
        self._current_slices = 0
        self._launched_slices = 0
        self._run = 0
        self._pending: list[Future] = []
        self._function_calls: list[AggregatedFunctionCall] = []
        self._slices_full = Future()
        self._executor = None

    @property
    def provider(self):
        """The buffer provider the shared buffers come from."""
        return self._registry.provider

    @property
    def underlying_executor(self):
        """The executor of the current run, or None between runs."""
        with self._lock:
            return self._executor

    @property
    def current_slices(self):
        """Number of slices of the current run that are still alive."""
        with self._lock:
            return self._current_slices

    @property
    def launched_slices(self):
        """Team size of the current run once it has started."""
        with self._lock:
            return self._launched_slices

    @property
    def slices_exhausted(self):
        """True while no more slices may join the current team."""
        with self._lock:
            return self._slices_exhausted

    @property
    def function_call_count(self):
        """Number of distinct aggregated calls made in the current run."""
        with self._lock:
            return len(self._function_calls)

    @property
    def buffers_in_use(self):
        """True while any shared buffer of the current run is held."""
        return self._registry.buffers_in_use

    def slice_available(self):
        """True if a request for a slice would currently succeed."""
        with self._lock:
            return not self._slices_exhausted

    def request_executor_slice(self):
        """Join the current team.

        Returns a future that yields an :class:`ExecutorSlice` once the team
        starts, or None if the current team admits no more slices.
        """
        with self._lock:
            if self._slices_exhausted:
                return None
            self._current_slices += 1
            local_slice_id = self._current_slices
            if local_slice_id == 1:
                self._start_run()

            result = Future()
            if local_slice_id < self.max_slices:
                self._pending.append(result)
            else:
                self._launched_slices = self._current_slices
                result.set_result(
                    ExecutorSlice(
                        self, len(self._pending), self._launched_slices, self.max_slices
                    )
                )

            if local_slice_id == 1:
                self._executor = self._executor_factory(self.gpu_id)
                if self.mode is ExecutorMode.STRICT:
                    trigger = self._slices_full
                else:
                    trigger = self._readiness(self._executor)
                trigger.add_done_callback(
                    functools.partial(self._launch_pending, self._run)
                )

            if local_slice_id >= self.max_slices and self.mode is not ExecutorMode.ENDLESS:
                self._slices_exhausted = True
                if self.mode is ExecutorMode.STRICT and not self._slices_full.done():
                    self._slices_full.set_result(None)
            return result

    def reduce_usage_counter(self):
        """Record that one slice of the current run is done."""
        with self._lock:
            if not self._slices_exhausted or self._current_slices < 1:
                raise RuntimeError("no executor slice of this executor is in use")
            self._current_slices -= 1
            if self._current_slices == 0:
                self._slices_alive = False
                self._release_if_done()

    def mark_unused(self, buffer, size, buffer_kind):
        """Release one slice's hold on a shared buffer."""
        with self._lock:
            self._require_running()
        if self._registry.mark_unused(buffer, size, buffer_kind):
            with self._lock:
                self._release_if_done()

    def _start_run(self):
        self._function_calls.clear()
        self._registry.reset()
        self._slices_alive = True
        self._launched_slices = 0
        self._run += 1
        if self.mode is ExecutorMode.STRICT:
            self._slices_full = Future()

    @staticmethod
    def _readiness(executor):
        get_future = getattr(executor, "get_future", None)
        if get_future is None:
            return _ready_future()
        return get_future()

    def _launch_pending(self, run, _trigger):
        with self._lock:
            if run != self._run or self._executor is None:
                return
            if not self._slices_exhausted or self._launched_slices == 0:
                self._launched_slices = self._current_slices
            self._slices_exhausted = True
            pending, self._pending = self._pending, []
            slices = [
                ExecutorSlice(self, slice_id, self._launched_slices, self.max_slices)
                for slice_id in range(len(pending))
            ]
        for promise, executor_slice in zip(pending, slices):
            promise.set_result(executor_slice)

    def _release_if_done(self):
        if self._slices_alive or self._registry.buffers_in_use or self._executor is None:
            return
        executor, self._executor = self._executor, None
        self._slices_exhausted = False
        if self._release is not None:
            self._release(executor)

    def _require_running(self):
        if not self._slices_exhausted or self._executor is None:
            raise RuntimeError("aggregated executor has no running team of slices")

    def _function_call(self, slice_launch_counter, async_mode):
        with self._lock:
            self._require_running()
            known = len(self._function_calls)
            if slice_launch_counter > known:
                raise RuntimeError(
                    f"aggregated call {slice_launch_counter} made before call {known}"
                )
            if slice_launch_counter == known:
                self._function_calls.append(
                    AggregatedFunctionCall(
                        self._launched_slices, async_mode, self._executor, self.check_calls
                    )
                )
            return self._function_calls[slice_launch_counter]

    def _sync_aggregation_slices(self, slice_launch_counter):
        return self._function_call(slice_launch_counter, False).sync_aggregation_slices()

    def _post(self, slice_launch_counter, f, *args):
        self._function_call(slice_launch_counter, False).post_when(f, *args)

    def _async(self, slice_launch_counter, f, *args):
        return self._function_call(slice_launch_counter, True).async_when(f, *args)

    def _wrap_async(self, slice_launch_counter, f, *args):
        return self._function_call(slice_launch_counter, True).wrap_async(f, *args)

    def _get_buffer(self, size, buffer_kind, slice_alloc_counter):
        with self._lock:
            self._require_running()
        location_id = ((worker_thread_num() % NUMBER_INSTANCES) // 16) * 16
        return self._registry.get(
            size, buffer_kind, slice_alloc_counter, location_id, self.gpu_id
        )


class ExecutorSlice:
    """One team member's view of an aggregated executor."""

    def __init__(self, parent, slice_id, number_slices, max_slices):
        if number_slices < 1:
            raise ValueError(f"number_slices must be at least 1, got {number_slices}")
        self.parent = parent
        self.id = slice_id
        self.number_slices = number_slices
        self.max_slices = max_slices
        self.launch_counter = 0
        self.buffer_counter = 0
        self._closed = False

    @property
    def closed(self):
        """True once this slice has been closed."""
        return self._closed

    @property
    def underlying_executor(self):
        """The executor the team's calls are launched on."""
        executor = self.parent.underlying_executor
        if executor is None:
            raise RuntimeError("aggregated executor has no underlying executor")
        return executor

    def _check_open(self):
        if self._closed:
            raise RuntimeError("executor slice has been closed")

    def make_allocator(self, buffer_kind):
        """Return an allocator for buffers shared by the team."""
        self._check_open()
        return AllocatorSlice(self, buffer_kind)

    def sync_aggregation_slices(self):
        """Return True only for the last team member reaching this point."""
        self._check_open()
        result = self.parent._sync_aggregation_slices(self.launch_counter)
        self.launch_counter += 1
        return result

    def post(self, f, *args):
        """Post ``f(*args)`` once for the whole team."""
        self._check_open()
        self.parent._post(self.launch_counter, f, *args)
        self.launch_counter += 1

    def async_(self, f, *args):
        """Run ``f(*args)`` once for the team; return this member's future."""
        self._check_open()
        result = self.parent._async(self.launch_counter, f, *args)
        self.launch_counter += 1
        return result

    def wrap_async(self, f, *args):
        """Call the future-returning ``f(*args)`` once for the team."""
        self._check_open()
        result = self.parent._wrap_async(self.launch_counter, f, *args)
        self.launch_counter += 1
        return result

    def get(self, size, buffer_kind):
        """Return the team's next shared buffer, creating it if first."""
        self._check_open()
        buffer = self.parent._get_buffer(size, buffer_kind, self.buffer_counter)
        self.buffer_counter += 1
        return buffer

    def _close(self, check):
        if self._closed:
            return
        mismatch = check and self.launch_counter != self.parent.function_call_count
        self._closed = True
        self.parent.reduce_usage_counter()
        if mismatch:
            raise RuntimeError(
                f"slice {self.id} made {self.launch_counter} aggregated calls, "
                f"but its team made {self.parent.function_call_count}"
            )

    def close(self):
        """Leave the team; raises if this member skipped calls of its team."""
        self._close(check=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._close(check=exc_type is None)


class AllocatorSlice:
    """Allocator handing out buffers shared by all members of a team."""

    def __init__(self, executor_slice, buffer_kind):
        self.executor_slice = executor_slice
        self.parent = executor_slice.parent
        self.buffer_kind = buffer_kind

    def allocate(self, n):
        """Return the team's next shared buffer of ``n`` elements."""
        return self.executor_slice.get(n, self.buffer_kind)

    def deallocate(self, p, n):
        """Give up this member's hold on the shared buffer ``p``."""
        self.parent.mark_unused(p, n, self.buffer_kind)

    def __eq__(self, other):
        return False

    __hash__ = object.__hash__