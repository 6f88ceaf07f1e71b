"""Scoped device buffers drawn from an aggregated allocator."""


class AggregatedDeviceBuffer:
    """Buffer taken from an allocator (ideally an allocator slice) and given back on close."""

    def __init__(self, number_of_elements, allocator):
        self.number_of_elements = number_of_elements
        self._allocator = allocator
        self.device_side_buffer = allocator.allocate(number_of_elements)
        self._closed = False

    @property
    def closed(self):
        """True once the buffer has been given back."""
        return self._closed

    def close(self):
        """Give the buffer back to its allocator; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self._allocator.deallocate(self.device_side_buffer, self.number_of_elements)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()