"""Book-keeping for buffers shared by all slices of an aggregated executor.

The first slice to request the n-th buffer of a run draws it from a
:class:`HostBufferProvider`. Every later slice asking for the n-th buffer gets
the same object. Once every slice has released it, the buffer goes back to the
provider for reuse.
"""

import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable


def _default_factory(size, buffer_kind):
    return [buffer_kind()] * size


class HostBufferProvider:
    """Recycling source of buffers, bucketed by kind, size, location and device.

    Buffers are not cleared when they are reused: a recycled buffer keeps the
    content of its previous owner. ``factory(size, buffer_kind)`` creates new
    buffers. By default a buffer is a list of ``size`` copies of ``buffer_kind()``.
    """

    def __init__(self, factory: Callable[[int, Any], Any] = _default_factory):
        self._factory = factory
        self._lock = threading.Lock()
        self._unused: dict[tuple, list] = {}
        self._in_use: dict[int, tuple[Any, tuple]] = {}
        self.allocations = 0
        self.recycled = 0

    @staticmethod
    def _key(size, buffer_kind, location_id, device_id):
        return (buffer_kind, size, location_id, device_id)

    @property
    def in_use_count(self):
        """Number of buffers currently handed out."""
        with self._lock:
            return len(self._in_use)

    @property
    def unused_count(self):
        """Number of buffers waiting to be reused."""
        with self._lock:
            return sum(len(bucket) for bucket in self._unused.values())

    def get(self, size, buffer_kind, location_id=0, device_id=0):
        """Hand out a buffer, reusing a released one of the same bucket if any."""
        if size < 0:
            raise ValueError(f"buffer size must not be negative, got {size}")
        key = self._key(size, buffer_kind, location_id, device_id)
        with self._lock:
            bucket = self._unused.get(key)
            if bucket:
                buffer = bucket.pop()
                self.recycled += 1
            else:
                buffer = self._factory(size, buffer_kind)
                self.allocations += 1
            self._in_use[id(buffer)] = (buffer, key)
            return buffer

    def mark_unused(self, buffer, size, buffer_kind, location_id=0, device_id=0):
        """Return a buffer handed out by :meth:`get` so it can be reused."""
        key = self._key(size, buffer_kind, location_id, device_id)
        with self._lock:
            record = self._in_use.get(id(buffer))
            if record is None or record[0] is not buffer:
                raise ValueError("buffer was not handed out by this provider")
            if record[1] != key:
                raise ValueError(
                    f"buffer released with {key}, but it was handed out with {record[1]}"
                )
            del self._in_use[id(buffer)]
            self._unused.setdefault(key, []).append(buffer)


@dataclass
class BufferEntry:
    """One aggregated buffer and how many slices still use it."""

    buffer: Any
    size: int
    buffer_kind: Hashable
    slice_count: int
    valid: bool
    location_id: int
    device_id: int


class AggregatedBufferRegistry:
    """Buffers shared by the slices of one run of an aggregated executor."""

    def __init__(self, provider=None):
        self.provider = provider if provider is not None else HostBufferProvider()
        self._lock = threading.Lock()
        self._entries: list[BufferEntry] = []
        self._index_of: dict[int, int] = {}
        self._dealloc_counter = 0
        self._buffers_in_use = False

    @property
    def entries(self):
        """Snapshot of the buffer entries of the current run."""
        with self._lock:
            return list(self._entries)

    @property
    def buffer_count(self):
        """Number of aggregated buffers created in the current run."""
        with self._lock:
            return len(self._entries)

    @property
    def buffers_in_use(self):
        """True while any aggregated buffer of this run is still held."""
        with self._lock:
            return self._buffers_in_use

    def get(self, size, buffer_kind, slice_alloc_counter, location_id=0, device_id=0):
        """Return the slice's ``slice_alloc_counter``-th buffer, creating it if first."""
        with self._lock:
            buffer_counter = len(self._entries)
            if slice_alloc_counter > buffer_counter:
                raise RuntimeError(
                    f"buffer {slice_alloc_counter} requested before buffer "
                    f"{buffer_counter} was created"
                )
            if slice_alloc_counter == buffer_counter:
                self._buffers_in_use = True
                buffer = self.provider.get(size, buffer_kind, location_id, device_id)
                previous = self._index_of.get(id(buffer))
                if previous is not None and self._entries[previous].valid:
                    raise RuntimeError("provider handed out a buffer that is still in use")
                self._entries.append(
                    BufferEntry(buffer, size, buffer_kind, 1, True, location_id, device_id)
                )
                self._index_of[id(buffer)] = buffer_counter
                return buffer

            entry = self._entries[slice_alloc_counter]
            if not entry.valid or entry.slice_count < 1:
                raise RuntimeError(
                    f"aggregated buffer {slice_alloc_counter} has already been released"
                )
            if entry.size != size:
                raise ValueError(
                    f"aggregated buffer {slice_alloc_counter} has size {entry.size}, "
                    f"but {size} was requested"
                )
            if entry.buffer_kind != buffer_kind:
                raise ValueError(
                    f"aggregated buffer {slice_alloc_counter} is of kind "
                    f"{entry.buffer_kind!r}, but {buffer_kind!r} was requested"
                )
            entry.slice_count += 1
            return entry.buffer

    def mark_unused(self, buffer, size, buffer_kind):
        """Release one slice's hold on ``buffer``.

        Returns True when this release made every buffer of the run unused.
        """
        with self._lock:
            index = self._index_of.get(id(buffer))
            if index is None or self._entries[index].buffer is not buffer:
                raise ValueError("buffer is not an aggregated buffer of this registry")
            entry = self._entries[index]
            if not entry.valid:
                raise RuntimeError("aggregated buffer has already been released")
            if entry.size != size:
                raise ValueError(
                    f"aggregated buffer has size {entry.size}, but {size} was released"
                )
            if entry.buffer_kind != buffer_kind:
                raise ValueError(
                    f"aggregated buffer is of kind {entry.buffer_kind!r}, "
                    f"but {buffer_kind!r} was released"
                )
            entry.slice_count -= 1
            if entry.slice_count > 0:
                return False
            self.provider.mark_unused(
                entry.buffer, entry.size, entry.buffer_kind, entry.location_id, entry.device_id
            )
            entry.valid = False
            self._dealloc_counter += 1
            if self._dealloc_counter == len(self._entries):
                self._buffers_in_use = False
                return True
            return False

    def reset(self):
        """Forget the buffers of the finished run so a new run can start."""
        with self._lock:
            if any(entry.valid for entry in self._entries):
                raise RuntimeError("cannot reset while aggregated buffers are still in use")
            self._entries.clear()
            self._index_of.clear()
            self._dealloc_counter = 0
            self._buffers_in_use = False