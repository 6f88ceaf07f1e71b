# kernagg

Work aggregation for concurrent tasks. When many tasks each want to run the
same small piece of work on a busy executor, `kernagg` lets them team up. The
tasks that arrive together each receive a *slice* of one aggregated executor.
Each call made through a slice reaches the underlying executor only once, when
the last team member makes it. Buffers requested through a slice are shared by
the whole team and recycled afterwards.

## Installation

```
pip install kernagg
```

To run the tests:

```
pip install "kernagg[test]"
pytest
```

## Underlying executors

`kernagg` does not run work on its own. You supply an executor factory, a
callable `executor_factory(gpu_id)` that returns an object with:

- `post(f, *args)`, which runs `f(*args)` without returning a result;
- `async_(f, *args)`, which returns a `concurrent.futures.Future`;
- optionally `get_future()`, which returns a future that completes once the
  executor is idle. An executor without it counts as idle at once.

Both `AggregatedExecutor` and `AggregationPool` also accept a
`release(executor)` callback. It is called when a team is finished with its
executor.

## Concepts

- `kernagg.executor.AggregatedExecutor(max_slices, mode, executor_factory, ...)`
  hands out `ExecutorSlice` objects through `request_executor_slice()`. That
  method returns a future that yields the slice once the team starts, or `None`
  if the current team admits no more members. When a team starts depends on the
  `ExecutorMode`:
  - `EAGER` starts once the underlying executor is idle or the team is full;
  - `STRICT` starts only once the team is full (`max_slices` members);
  - `ENDLESS` keeps admitting members until the underlying executor is idle.
- `ExecutorSlice.post(f, *args)`, `ExecutorSlice.async_(f, *args)` and
  `ExecutorSlice.wrap_async(f, *args)` queue a call. Every member of a team
  must make the same calls in the same order. `async_` and `wrap_async` return
  a future for each member, and those futures complete when the one real call
  has finished. `wrap_async` expects `f` itself to return a future.
- `ExecutorSlice.sync_aggregation_slices()` returns `True` for exactly one team
  member per call site. Work inside that branch happens once per team.
- `ExecutorSlice.number_slices` is the team size and `ExecutorSlice.id` is the
  member's position in the team.
- `ExecutorSlice.close()` leaves the team. It raises `RuntimeError` if the
  member made fewer aggregated calls than its team. Slices are also context
  managers.
- `ExecutorSlice.make_allocator(buffer_kind)` returns an `AllocatorSlice`. The
  first member to call `allocate(n)` creates the buffer and the other members
  get the same object. Once every member has called `deallocate(p, n)`, the
  buffer goes back to the `kernagg.buffer_registry.HostBufferProvider` for
  reuse. A reused buffer keeps its previous contents. By default a buffer is a
  list of `n` copies of `buffer_kind()`. You can pass another
  `factory(size, buffer_kind)` to the provider.
- `kernagg.buffers.AggregatedDeviceBuffer(number_of_elements, allocator)` holds
  a buffer from an allocator in `device_side_buffer` and gives it back on
  `close()` or when its `with` block ends.
- `kernagg.pool.AggregationPool(name, executor_factory, ...)` keeps aggregated
  executors for each device. After `init(number_of_executors,
  slices_per_executor, mode, num_devices)`, `request_executor_slice()` joins a
  team on the caller's device. It moves round robin to the next free executor
  and adds a new one when all are busy. Pass `growing_pool=False` to get
  `None` in that case instead. Calling `init` twice raises `RuntimeError`, and
  so does asking for more devices than `kernagg.config.MAX_NUMBER_GPUS`.
- With `check_calls=True`, a member whose call differs from its team's first
  call in types or values raises `kernagg.function_call.CallMismatchError`.
  `kernagg.function_call.format_call` renders a call for such messages.

## Example

```python
from concurrent.futures import Future

from kernagg.buffers import AggregatedDeviceBuffer
from kernagg.executor import ExecutorMode
from kernagg.pool import AggregationPool


class InlineExecutor:
    def post(self, f, *args):
        f(*args)

    def async_(self, f, *args):
        future = Future()
        future.set_result(f(*args))
        return future


pool = AggregationPool("vector_add", lambda gpu_id: InlineExecutor())
pool.init(8, 4, ExecutorMode.EAGER, 1)

with pool.request_executor_slice().result() as team_member:
    if team_member.sync_aggregation_slices():
        print("runs once per team")
    allocator = team_member.make_allocator(float)
    with AggregatedDeviceBuffer(16, allocator) as shared:
        shared.device_side_buffer[team_member.id] = 1.0
```

`kernagg.pool.init_area_aggregation_pool(pool, max_slices)` initialises a pool
with 128 aggregated executors on each of `MAX_NUMBER_GPUS` devices. It uses
`STRICT` mode when `max_slices` is 1 and `EAGER` mode otherwise.

`kernagg.config.get_device_id(number_gpus, worker_id=None)` maps a worker to a
device as `worker_id % number_gpus`. By default the worker is the calling
thread.

## What it does not do

`kernagg` has no GPU support of its own. It does not allocate device or pinned
memory, launch kernels, or pick devices. All of that is left to the executors
and buffer factories you supply. It has no command-line program.