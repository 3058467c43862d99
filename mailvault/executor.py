#!/usr/bin/env python3

"""
executor.py

Batch execution for mailvault operations.

Each batch of files is one task on a managed thread pool. Batches may run
concurrently; the files inside a batch are handled sequentially by the task.
A process-wide interrupt manager lets the signal handler stop every pool.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, List, Optional, TypeVar

from mailvault.logger import get_logger

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskResult(Generic[R]):
    """Outcome of one task."""
    success: bool
    result: Optional[R] = None
    exception: Optional[BaseException] = None
    item: Optional[Any] = None


class InterruptManager:
    """
    Process-wide interrupt switch shared by all executors.

    The signal handler calls interrupt_all(); running tasks finish their
    current file and pending tasks are cancelled.
    """

    def __init__(self):
        self._flag = threading.Event()
        self._executors: List[ManagedThreadPoolExecutor] = []
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def register(self, executor: ManagedThreadPoolExecutor) -> None:
        with self._lock:
            if executor not in self._executors:
                self._executors.append(executor)

    def unregister(self, executor: ManagedThreadPoolExecutor) -> None:
        with self._lock:
            if executor in self._executors:
                self._executors.remove(executor)

    def interrupt_all(self) -> None:
        self.logger.warning("Interrupt signaled - stopping all executors...")
        self._flag.set()
        with self._lock:
            executors = list(self._executors)
        for executor in executors:
            executor.shutdown(wait=False)

    def is_interrupted(self) -> bool:
        return self._flag.is_set()

    def executor_count(self) -> int:
        with self._lock:
            return len(self._executors)

    def reset(self) -> None:
        self._flag.clear()
        with self._lock:
            self._executors.clear()


_interrupt_manager = InterruptManager()


def get_interrupt_manager() -> InterruptManager:
    return _interrupt_manager


class ManagedThreadPoolExecutor:
    """
    Thread pool used as a context manager. Registers with the interrupt
    manager on entry and cancels outstanding futures on exit.
    """

    def __init__(self, max_workers: int, name: str = "Batch", progress_interval: int = 10):
        self.logger = get_logger(__name__)
        self.max_workers = max(1, max_workers)
        self.name = name
        self.progress_interval = max(1, progress_interval)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._lock = threading.Lock()

    def __enter__(self) -> ManagedThreadPoolExecutor:
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=self.name)
        _interrupt_manager.register(self)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _interrupt_manager.unregister(self)
        self.shutdown(wait=True)
        return False

    def submit(self, fn: Callable[[T], R], item: T) -> Future:
        if self._pool is None:
            raise RuntimeError("Executor not started. Use it as a context manager.")
        if _interrupt_manager.is_interrupted():
            raise InterruptedError("Executor has been interrupted")

        def run() -> R:
            if _interrupt_manager.is_interrupted():
                raise InterruptedError("Task cancelled due to interrupt")
            return fn(item)

        future = self._pool.submit(run)
        with self._lock:
            self._futures.append(future)
        return future

    def map(
            self,
            fn: Callable[[T], R],
            items: Iterable[T],
            on_result: Optional[Callable[[TaskResult[R]], None]] = None,
    ) -> List[TaskResult[R]]:
        """Run fn over items, collecting a TaskResult per item in completion order."""
        items_list = list(items)
        total = len(items_list)
        results: List[TaskResult[R]] = []
        if total == 0:
            return results

        self.logger.info(f"Starting {self.name}: {total} tasks on {self.max_workers} workers")
        futures = {}
        for item in items_list:
            if _interrupt_manager.is_interrupted():
                self.logger.warning(f"{self.name} interrupted before all tasks were submitted")
                break
            futures[self.submit(fn, item)] = item

        for done, future in enumerate(as_completed(futures), start=1):
            item = futures[future]
            try:
                task_res = TaskResult(success=True, result=future.result(), item=item)
            except InterruptedError as e:
                self.logger.warning(f"{self.name} task interrupted")
                task_res = TaskResult(success=False, exception=e, item=item)
            except Exception as e:
                self.logger.error(f"{self.name} task failed: {e}", exc_info=True)
                task_res = TaskResult(success=False, exception=e, item=item)
            results.append(task_res)
            if on_result is not None:
                on_result(task_res)
            if done % self.progress_interval == 0 or done == total:
                self.logger.info(f"[{self.name} Progress] {done}/{total} tasks completed")

        return results

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is None:
            return
        with self._lock:
            for future in self._futures:
                future.cancel()
            self._futures.clear()
        self._pool.shutdown(wait=wait, cancel_futures=True)
        self._pool = None


def with_retries(
        fn: Callable[[T], R],
        retries: int,
        delay: float,
        sleep: Callable[[float], None] = time.sleep,
) -> Callable[[T], R]:
    """
    Wrap a task so an unexpected exception re-runs the whole task.
    Tasks must be idempotent; per-file failures are already counted inside.
    """
    logger = get_logger(__name__)

    def run(item: T) -> R:
        attempt = 0
        while True:
            try:
                return fn(item)
            except (KeyboardInterrupt, InterruptedError):
                raise
            except Exception as e:
                if attempt >= retries or _interrupt_manager.is_interrupted():
                    raise
                wait = delay * 2 ** attempt
                attempt += 1
                logger.warning(f"Task failed ({e}); retry {attempt}/{retries} in {wait:.0f}s")
                sleep(wait)

    return run


def run_batches(
        batches: Iterable[T],
        fn: Callable[[T], R],
        max_workers: int,
        name: str = "Batch",
        on_result: Optional[Callable[[TaskResult[R]], None]] = None,
        retries: int = 0,
        retry_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
) -> List[TaskResult[R]]:
    task = with_retries(fn, retries, retry_delay, sleep) if retries > 0 else fn
    with ManagedThreadPoolExecutor(max_workers=max_workers, name=name) as executor:
        return executor.map(task, batches, on_result)
