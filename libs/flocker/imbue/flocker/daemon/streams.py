import threading
from collections.abc import Callable
from collections.abc import Iterator
from types import TracebackType
from typing import Generic
from typing import TypeVar

from loguru import logger

T = TypeVar("T")


class CancellableStream(Generic[T]):
    """A lazy stream of items that the consumer can cancel at any point.

    Wraps an iterator (typically a docker SDK stream) together with the callable
    that closes it. Once cancelled, no further items are delivered, even if the
    underlying iterator still has buffered data. Cancelling is idempotent and
    never raises, so a display loop can always cancel its stream on the way out
    without affecting the session around it.

    Use as a context manager to scope the stream to a block:

        with daemon.stream_stats(container_id) as stream:
            for sample in stream:
                ...
    """

    def __init__(self, items: Iterator[T], close: Callable[[], None] | None = None) -> None:
        self._items = items
        self._close = close
        self._lock = threading.Lock()
        self._is_cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._is_cancelled:
                return
            self._is_cancelled = True
        if self._close is not None:
            try:
                self._close()
            except Exception as e:
                # Closing an already-broken connection is not the consumer's problem
                logger.trace("Ignored error while closing stream: {}", e)

    def __iter__(self) -> Iterator[T]:
        return self

    def __next__(self) -> T:
        if self._is_cancelled:
            raise StopIteration
        item = next(self._items)
        if self._is_cancelled:
            raise StopIteration
        return item

    def __enter__(self) -> "CancellableStream[T]":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.cancel()
