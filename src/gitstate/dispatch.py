"""Main-context task dispatch.

Package unlink/reload must run on the editor's main context. The engine only
needs "ran before the next step", so each call submits a task and blocks until
the main context has executed it.
"""

from __future__ import annotations

import atexit
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Sequence

from .observability import log_debug


class PackageReloader(Protocol):
    """Editor collaborator that releases and reloads asset packages."""

    def unlink(self, paths: Sequence[str]) -> None:
        ...

    def reload(self, paths: Sequence[str]) -> None:
        ...


class NullPackageReloader:
    """Reloader for headless use; there are no loaded packages to release."""

    def unlink(self, paths: Sequence[str]) -> None:
        log_debug("[DISPATCH] unlink (no-op)", count=len(paths))

    def reload(self, paths: Sequence[str]) -> None:
        log_debug("[DISPATCH] reload (no-op)", count=len(paths))


@dataclass
class _Task:
    fn: Callable[..., Any]
    args: tuple
    done: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: Optional[BaseException] = None


class MainContextDispatcher:
    """Runs submitted callables one at a time on a dedicated thread.

    Stands in for the editor's main context: everything submitted here is
    serialized with respect to other main-context work.
    """

    def __init__(self, name: str = "gitstate-main") -> None:
        self._queue: "queue.Queue[Optional[_Task]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self._worker = threading.Thread(target=self._worker_loop, name=name, daemon=True)
        self._worker.start()
        atexit.register(self.shutdown)

    def _worker_loop(self) -> None:
        while True:
            task = self._queue.get()
            if task is None:
                return
            try:
                task.result = task.fn(*task.args)
            except BaseException as exc:  # re-raised in the submitting thread
                task.error = exc
            finally:
                task.done.set()

    def is_main_context(self) -> bool:
        return threading.current_thread() is self._worker

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None) -> Any:
        """Run ``fn(*args)`` on the main context and wait for it.

        Calls made from the main context itself run inline.
        """
        if self.is_main_context():
            return fn(*args)
        with self._lock:
            if self._stop_event.is_set():
                raise RuntimeError("Main context dispatcher is shut down")
            task = _Task(fn=fn, args=args)
            self._queue.put(task)
        if not task.done.wait(timeout):
            raise TimeoutError(f"Main context task {getattr(fn, '__name__', fn)!r} did not finish")
        if task.error is not None:
            raise task.error
        return task.result

    def shutdown(self) -> None:
        with self._lock:
            if self._stop_event.is_set():
                return
            self._stop_event.set()
            self._queue.put(None)
        if self._worker.is_alive() and not self.is_main_context():
            self._worker.join(timeout=2.0)


def unlink_and_reload(
    dispatcher: MainContextDispatcher,
    reloader: PackageReloader,
    paths: List[str],
    operation: Callable[[], Any],
) -> Any:
    """Unlink ``paths``, run ``operation``, then reload, each step joined."""
    if paths:
        dispatcher.call(reloader.unlink, paths)
    try:
        return operation()
    finally:
        if paths:
            dispatcher.call(reloader.reload, paths)
