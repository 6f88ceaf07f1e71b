"""Build-wide settings: instance buckets, GPU limits and device selection."""

import itertools
import threading

#: Number of buffer buckets (instances) kept by the recycling layer.
NUMBER_INSTANCES = 128
#: Largest number of GPUs a pool may be spread over.
MAX_NUMBER_GPUS = 4

_worker_ids = itertools.count()
_worker_lock = threading.Lock()
_worker_local = threading.local()


def worker_thread_num():
    """Return a small, stable index for the calling thread."""
    try:
        return _worker_local.number
    except AttributeError:
        with _worker_lock:
            number = next(_worker_ids)
        _worker_local.number = number
        return number


def get_device_id(number_gpus, worker_id=None):
    """Pick the GPU a worker should use by spreading workers over the GPUs.

    ``worker_id`` defaults to the index of the calling thread.
    """
    if number_gpus < 1:
        raise ValueError(f"number_gpus must be at least 1, got {number_gpus}")
    if number_gpus > MAX_NUMBER_GPUS:
        raise ValueError(
            f"number_gpus ({number_gpus}) exceeds the maximum number of GPUs "
            f"({MAX_NUMBER_GPUS})"
        )
    if worker_id is None:
        worker_id = worker_thread_num()
    if worker_id < 0:
        raise ValueError(f"worker_id must not be negative, got {worker_id}")
    return worker_id % number_gpus