"""
Streaming Emitter

Bridges the pipeline worker thread and a consumer iterating over events.
Events come out in emission order and are never dropped: an unbounded
emitter buffers, a bounded one blocks the producer until the consumer
catches up.
"""

import queue
import threading
from typing import Iterator

from .events import PipelineEvent

_CLOSED = object()


class StreamingEmitter:
    """
    Example:
        emitter = StreamingEmitter()
        threading.Thread(target=lambda: (emitter.emit(event), emitter.close())).start()
        for event in emitter:
            print(event.type)
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: PipelineEvent) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Cannot emit on a closed stream")
        self._queue.put(event)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[PipelineEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item
