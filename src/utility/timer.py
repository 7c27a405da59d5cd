"""협력자 호출 시간 측정 유틸리티."""

import time
from contextlib import contextmanager

from loguru import logger


@contextmanager
def timer(label: str = "", slow_threshold: float | None = None):
    """컨텍스트 매니저: 블록 실행 시간을 측정한다.

    await가 들어 있는 블록에도 쓸 수 있다 (벽시계 기준).
    slow_threshold(초)를 넘으면 WARNING, 아니면 DEBUG로 기록한다.

    사용법:
        with timer("process img-0") as t:
            await processor.process(...)
        t.elapsed
    """
    t = _TimerResult()
    start = time.perf_counter()
    try:
        yield t
    finally:
        t.elapsed = time.perf_counter() - start
        if label:
            if slow_threshold is not None and t.elapsed > slow_threshold:
                logger.warning(f"[{label}] {t.elapsed:.3f}s (slow)")
            else:
                logger.debug(f"[{label}] {t.elapsed:.3f}s")


class _TimerResult:
    elapsed: float = 0.0
