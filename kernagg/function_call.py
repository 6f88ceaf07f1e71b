"""One aggregated function call shared by all slices of an aggregated executor.

Every slice of a team calls the same function in the same order; only the last
slice to arrive actually launches it on the underlying executor.  The underlying
executor must provide ``post(f, *args)`` and ``async_(f, *args)``, the latter
returning a :class:`concurrent.futures.Future`.
"""

import threading
from concurrent.futures import CancelledError, Future


class CallMismatchError(RuntimeError):
    """A slice made a call that differs from the team's first call."""


def print_if_possible(value):
    """Render strings, numbers and booleans; other values get a placeholder."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.6f}"
    return "cannot print value"


def format_call(call):
    """Describe a call given as a tuple ``(function, *arguments)``."""
    function, *arguments = call
    rendered = ", ".join(print_if_possible(argument) for argument in arguments)
    return f"Function address: {hex(id(function))} -- Arguments: ({rendered})"


class AggregatedFunctionCall:
    """Launch condition for a call that all slices of a team must make."""

    def __init__(self, number_slices, async_mode, executor, check_calls=False):
        if number_slices < 1:
            raise ValueError(f"number_slices must be at least 1, got {number_slices}")
        self.number_slices = number_slices
        self.async_mode = async_mode
        self.executor = executor
        self.check_calls = check_calls
        self._lock = threading.Lock()
        self._slice_counter = 0
        self._reference_call = None
        self._promises = [Future() for _ in range(number_slices)] if async_mode else []

    @property
    def slice_counter(self):
        """Number of slices that have reached this call so far."""
        with self._lock:
            return self._slice_counter

    @property
    def complete(self):
        """True once every slice has reached this call."""
        return self.slice_counter == self.number_slices

    def _check(self, call):
        if self._reference_call is None:
            self._reference_call = call
            return
        expected = self._reference_call
        expected_types = tuple(type(item) for item in expected)
        got_types = tuple(type(item) for item in call)
        if expected_types != got_types:
            raise CallMismatchError(
                "Mismatched types in aggregated call: expected "
                f"{[t.__name__ for t in expected_types]}, got "
                f"{[t.__name__ for t in got_types]}"
            )
        if call != expected:
            raise CallMismatchError(
                "Mismatched values in aggregated call: expected "
                f"{format_call(expected)}, got {format_call(call)}"
            )

    def _register(self, expect_async, call=None):
        with self._lock:
            if self.async_mode != expect_async:
                mode = "asynchronous" if self.async_mode else "synchronous"
                raise RuntimeError(f"Call does not match this {mode} aggregated call")
            if self._slice_counter >= self.number_slices:
                raise RuntimeError(
                    f"All {self.number_slices} slices have already made this call"
                )
            if call is not None and self.check_calls:
                self._check(call)
            local_counter = self._slice_counter
            self._slice_counter += 1
            return local_counter

    def _is_last(self, local_counter):
        return local_counter == self.number_slices - 1

    def _resolve_all(self, future):
        if future.cancelled():
            error = CancelledError()
        else:
            error = future.exception()
        for promise in self._promises:
            if error is None:
                promise.set_result(None)
            else:
                promise.set_exception(error)

    def sync_aggregation_slices(self):
        """Return True for the last slice to arrive, False for all others."""
        return self._is_last(self._register(False))

    def post_when(self, f, *args):
        """Post ``f(*args)`` on the executor once the last slice arrives."""
        local_counter = self._register(False, (f, *args))
        if self._is_last(local_counter):
            self.executor.post(f, *args)

    def async_when(self, f, *args):
        """Run ``f(*args)`` asynchronously once; every slice gets a future."""
        local_counter = self._register(True, (f, *args))
        result = self._promises[local_counter]
        if self._is_last(local_counter):
            launched = self.executor.async_(f, *args)
            launched.add_done_callback(self._resolve_all)
        return result

    def wrap_async(self, f, *args):
        """Call ``f(*args)``, which returns a future, once for the whole team."""
        local_counter = self._register(True)
        result = self._promises[local_counter]
        if self._is_last(local_counter):
            launched = f(*args)
            launched.add_done_callback(self._resolve_all)
        return result