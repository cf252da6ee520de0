# perpbt/pipeline/parallel/executor.py
from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, TypeVar

from perpbt import logs

T = TypeVar("T")


class ParallelExecutor:
    """
    ParallelExecutor

    - ThreadPoolExecutor 封装（每个 item 独立，不共享可变状态）
    - 结果顺序与输入顺序一致
    - handler 抛出的异常原样向上传播
    """

    @staticmethod
    def run(
            *,
            items: Iterable[T],
            handler: Callable[[T], Any],
            max_workers: int | None = None,
            label: str = "task",
    ) -> List[Any]:
        items = list(items)
        if not items:
            logs.info("[ParallelExecutor] no items to process")
            return []

        workers = ParallelExecutor._resolve_workers(items, max_workers)

        logs.info(
            f"[ParallelExecutor] start "
            f"label={label} total={len(items)} workers={workers}"
        )

        if workers == 1:
            return ParallelExecutor._run_sequential(items, handler)
        return ParallelExecutor._run_parallel(items, handler, workers)

    # ---------------- internal ----------------

    @staticmethod
    def _resolve_workers(items: list, max_workers: int | None) -> int:
        cpu = os.cpu_count() or 1
        if max_workers is None:
            return min(cpu, len(items))
        return max(1, min(max_workers, len(items)))

    @staticmethod
    def _run_sequential(items: list, handler: Callable[[Any], Any]) -> List[Any]:
        return [handler(item) for item in items]

    @staticmethod
    def _run_parallel(items: list, handler: Callable[[Any], Any], workers: int) -> List[Any]:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(handler, item) for item in items]
            # 按提交顺序收集，保证与输入对齐
            return [fut.result() for fut in futures]
