"""Pools of aggregated executors, one set per GPU.

A pool hands out executor slices from the aggregated executor it is currently
filling. When that executor admits no more slices it moves on round robin, and
when every executor of the device is busy a growing pool adds a new one.
"""

import threading
from dataclasses import dataclass, field

from kernagg.buffer_registry import HostBufferProvider
from kernagg.config import MAX_NUMBER_GPUS, get_device_id
from kernagg.executor import AggregatedExecutor, ExecutorMode

#: Number of aggregated executors per device created by init_area_aggregation_pool.
AREA_POOL_EXECUTORS = 128


@dataclass
class _DevicePool:
    slices_per_executor: int
    mode: ExecutorMode
    executors: list = field(default_factory=list)
    current_interface: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


class AggregationPool:
    """Named pool of aggregated executors, spread over one or more devices."""

    def __init__(
        self,
        name,
        executor_factory,
        *,
        provider=None,
        release=None,
        check_calls=False,
        growing_pool=True,
    ):
        self.name = name
        self.growing_pool = growing_pool
        self.provider = provider if provider is not None else HostBufferProvider()
        self._executor_factory = executor_factory
        self._release = release
        self._check_calls = check_calls
        self._init_lock = threading.Lock()
        self._devices: list[_DevicePool] = []
        self._initialized = False

    @property
    def initialized(self):
        """True once :meth:`init` has been called."""
        return self._initialized

    @property
    def number_devices(self):
        """Number of devices the pool is spread over."""
        return len(self._devices)

    def executors(self, device_id=0):
        """The aggregated executors of one device, in pool order."""
        self._require_initialized()
        device = self._devices[device_id]
        with device.lock:
            return tuple(device.executors)

    def _new_executor(self, device, gpu_id):
        return AggregatedExecutor(
            device.slices_per_executor,
            device.mode,
            self._executor_factory,
            gpu_id,
            self.provider,
            self._release,
            self._check_calls,
        )

    def _require_initialized(self):
        if not self._initialized:
            raise RuntimeError(
                "Trying to use aggregation pool without first calling init! "
                f"Agg pool name: {self.name}"
            )

    def init(self, number_of_executors, slices_per_executor, mode, num_devices=1):
        """Create ``number_of_executors`` aggregated executors on each device."""
        with self._init_lock:
            if self._initialized:
                raise RuntimeError(
                    "Trying to initialize aggregation pool twice. "
                    f"Agg pool name: {self.name}"
                )
            if num_devices > MAX_NUMBER_GPUS:
                raise RuntimeError(
                    "Trying to initialize aggregation with more devices than the "
                    f"maximum number of GPUs ({MAX_NUMBER_GPUS}). "
                    f"Agg pool name: {self.name}"
                )
            if num_devices < 1:
                raise ValueError(f"num_devices must be at least 1, got {num_devices}")
            if number_of_executors < 1:
                raise ValueError(
                    f"number_of_executors must be at least 1, got {number_of_executors}"
                )
            mode = ExecutorMode(mode)
            devices = []
            for gpu_id in range(num_devices):
                device = _DevicePool(slices_per_executor, mode)
                device.executors.extend(
                    self._new_executor(device, gpu_id) for _ in range(number_of_executors)
                )
                devices.append(device)
            self._devices = devices
            self._initialized = True

    def request_executor_slice(self):
        """Join a team on some executor of the caller's device.

        Returns a future yielding an executor slice, or None when every
        executor is busy and the pool may not grow.
        """
        self._require_initialized()
        gpu_id = get_device_id(len(self._devices))
        device = self._devices[gpu_id]
        with device.lock:
            executors = device.executors
            local_id = device.current_interface % len(executors)
            result = executors[local_id].request_executor_slice()
            if result is not None:
                return result
            for _ in range(len(executors) + 2):
                device.current_interface += 1
                local_id = device.current_interface % len(executors)
                result = executors[local_id].request_executor_slice()
                if result is not None:
                    return result
            if not self.growing_pool:
                return None
            executors.append(self._new_executor(device, gpu_id))
            device.current_interface = len(executors) - 1
            return executors[-1].request_executor_slice()


def init_area_aggregation_pool(pool, max_slices):
    """Initialise ``pool`` with the standard layout for an aggregation region."""
    mode = ExecutorMode.STRICT if max_slices == 1 else ExecutorMode.EAGER
    pool.init(AREA_POOL_EXECUTORS, max_slices, mode, MAX_NUMBER_GPUS)