"""배치 처리 감독자.

queued 이미지를 AI 처리기에 넘기고 결과를 BatchStore에 반영한다.

동시성 모델:
    이벤트 루프 하나 위에서 이미지별 코루틴을 pool_size개까지 동시에 진행시킨다.
    queued -> processing 전이로 이미지를 "점유"하므로 같은 이미지가 두 번 제출될 수 없다.

실패 처리:
    TransientError / 타임아웃 → 지수 백오프로 max_attempts까지 자동 재시도
    PermanentError / 분류되지 않은 예외 → 즉시 failed, 수동 requeue 필요

취소:
    모든 결과는 발행 당시의 batch_id 태그를 달고 스토어에 반영된다.
    배치가 리셋/교체되면 진행 중 태스크를 취소하고, 그래도 늦게 도착한 결과는
    StaleBatch로 버려진다.
"""

import asyncio
from collections.abc import AsyncIterator, Mapping
from typing import Any

from loguru import logger

from core.exceptions import (
    BatchNotFound,
    CollaboratorError,
    Conflict,
    InvalidState,
    PermanentError,
    StaleBatch,
)
from model.batch import LogLevel, ProgressSnapshot
from model.image import ErrorKind, ImageError, ImageRecord, ImageStatus, RetouchEntry
from service.batch_store import BatchStore, StoreEvent
from service.collaborators import AIProcessor, to_image_error
from utility.timer import timer


class ProcessingSupervisor:
    def __init__(
        self,
        store: BatchStore,
        processor: AIProcessor,
        *,
        pool_size: int = 4,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        timeout: float = 60.0,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._processor = processor
        self.pool_size = pool_size
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout

        # (batch_id, image_id) -> 처리 태스크
        self._in_flight: dict[tuple[str, str], asyncio.Task] = {}
        # batch_id -> advance 태스크
        self._runners: dict[str, asyncio.Task] = {}
        self._wake_events: dict[str, asyncio.Event] = {}

        store.subscribe(self._on_store_event)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def backoff(self, attempt: int) -> float:
        """attempt번째 실패 후 다음 시도까지 기다릴 시간(초)."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    # --- 실행 ---

    def start(self, batch_id: str) -> asyncio.Task:
        """advance(batch_id)를 백그라운드 태스크로 띄운다. 이미 돌고 있으면 깨우기만 한다."""
        runner = self._runners.get(batch_id)
        if runner is not None and not runner.done():
            self._wake(batch_id)
            return runner

        runner = asyncio.get_running_loop().create_task(
            self.advance(batch_id), name=f"advance-{batch_id}"
        )
        self._runners[batch_id] = runner
        runner.add_done_callback(lambda task: self._on_runner_done(batch_id, task))
        return runner

    async def join(self, batch_id: str) -> ProgressSnapshot | None:
        """돌고 있는 advance가 끝날 때까지 기다린다. 없으면 현재 스냅샷을 바로 돌려준다."""
        runner = self._runners.get(batch_id)
        if runner is not None:
            return await runner
        if not self._store.is_current(batch_id):
            return None
        return self._store.snapshot(batch_id)

    async def advance(self, batch_id: str) -> ProgressSnapshot | None:
        """queued 이미지를 모두 처리할 때까지 진행한다.

        배치가 종료 상태가 되면 마지막 스냅샷을 반환한다.
        도중에 배치가 교체되면 None을 반환한다.
        """
        wake = self._wake_events.setdefault(batch_id, asyncio.Event())
        # 처리 태스크 -> image_id
        running: dict[asyncio.Task, str] = {}
        try:
            while self._store.is_current(batch_id):
                running.update(self._fill_pool(batch_id))
                if not running:
                    break
                wake.clear()
                waiter = asyncio.ensure_future(wake.wait())
                try:
                    done, _ = await asyncio.wait(
                        {*running, waiter}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    waiter.cancel()
                for task in done:
                    image_id = running.pop(task, None)
                    if image_id is not None and not task.cancelled() and task.exception() is not None:
                        self._fail_crashed(batch_id, image_id, task.exception())
        finally:
            if self._wake_events.get(batch_id) is wake:
                del self._wake_events[batch_id]

        if not self._store.is_current(batch_id):
            logger.info(f"[{batch_id}] batch replaced, supervisor stopped")
            return None
        if self._store.is_terminal():
            self._finish(batch_id)
        return self._store.snapshot(batch_id)

    def _fill_pool(self, batch_id: str) -> dict[asyncio.Task, str]:
        started: dict[asyncio.Task, str] = {}
        batch = self._store.require_batch(batch_id)
        for record in batch.images:
            if len(self._in_flight) >= self.pool_size:
                break
            if record.status != ImageStatus.QUEUED or (batch_id, record.id) in self._in_flight:
                continue
            # queued -> processing 전이가 곧 점유다
            claimed = self._store.update_image(
                record.id,
                {"status": ImageStatus.PROCESSING, "attempts": 1},
                batch_id=batch_id,
            )
            task = asyncio.get_running_loop().create_task(
                self._process_one(batch_id, batch.instructions, claimed),
                name=f"process-{batch_id}-{record.id}",
            )
            key = (batch_id, record.id)
            self._in_flight[key] = task
            task.add_done_callback(lambda t, key=key: self._release(key, t))
            started[task] = record.id
        return started

    async def _process_one(self, batch_id: str, instructions: str, record: ImageRecord) -> None:
        attempt = record.attempts
        while True:
            try:
                with timer(f"process {batch_id}/{record.id} #{attempt}", slow_threshold=self.timeout / 2):
                    processed_ref = await asyncio.wait_for(
                        self._processor.process(record.original_ref, instructions),
                        timeout=self.timeout,
                    )
                if not isinstance(processed_ref, str) or not processed_ref:
                    raise PermanentError(f"처리기가 올바르지 않은 결과를 돌려주었습니다: {processed_ref!r}")
            except Exception as exc:
                error = to_image_error(exc, attempts=attempt)
                if not isinstance(exc, (CollaboratorError, TimeoutError)):
                    logger.opt(exception=exc).error(f"[{batch_id}] {record.id} unexpected processor error")
            else:
                entry = RetouchEntry(instruction=instructions, processed_ref=processed_ref, kind="process")
                if self._apply(
                    batch_id,
                    record.id,
                    {
                        "status": ImageStatus.COMPLETED,
                        "processed_ref": processed_ref,
                        "retouch_history": record.retouch_history + (entry,),
                    },
                ):
                    logger.info(f"[{batch_id}] {record.id} completed (attempt {attempt})")
                    self._store.add_log(
                        f"{record.filename} 처리 완료", LogLevel.SUCCESS, batch_id=batch_id
                    )
                return

            if error.kind == ErrorKind.TRANSIENT and attempt < self.max_attempts:
                delay = self.backoff(attempt)
                logger.warning(
                    f"[{batch_id}] {record.id} transient failure ({error.message}), "
                    f"retry {attempt + 1}/{self.max_attempts} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
                if not self._apply(batch_id, record.id, {"attempts": attempt}):
                    return
                continue

            if self._apply(batch_id, record.id, {"status": ImageStatus.FAILED, "error": error}):
                logger.warning(f"[{batch_id}] {record.id} failed ({error.kind}): {error.message}")
                self._store.add_log(
                    f"{record.filename} 처리 실패: {error.reason}", LogLevel.ERROR, batch_id=batch_id
                )
            return

    def _apply(self, batch_id: str, image_id: str, patch: Mapping[str, Any]) -> bool:
        """batch_id 태그를 확인하고 결과를 반영한다. 교체된 배치의 결과면 버리고 False."""
        try:
            self._store.update_image(image_id, patch, batch_id=batch_id)
        except StaleBatch:
            logger.info(f"[{batch_id}] {image_id}: late result for replaced batch discarded")
            return False
        return True

    def _fail_crashed(self, batch_id: str, image_id: str, exc: BaseException) -> None:
        """결과 반영 중 죽은 태스크의 이미지를 영구 실패로 기록한다. processing에 남겨 두지 않는다."""
        logger.opt(exception=exc).error(f"[{batch_id}] {image_id} processing task crashed")
        if not self._store.is_current(batch_id):
            return
        record = self._store.get_image(image_id, batch_id)
        if record.status != ImageStatus.PROCESSING:
            return
        error = ImageError(
            kind=ErrorKind.PERMANENT,
            message=str(exc) or type(exc).__name__,
            attempts=record.attempts,
        )
        if self._apply(batch_id, image_id, {"status": ImageStatus.FAILED, "error": error}):
            self._store.add_log(
                f"{record.filename} 처리 실패: {error.reason}", LogLevel.ERROR, batch_id=batch_id
            )

    def _finish(self, batch_id: str) -> None:
        snapshot = self._store.snapshot(batch_id)
        batch = self._store.require_batch(batch_id)
        summary = (
            f"{snapshot.total_count}장 중 {snapshot.completed_count}장을 처리했습니다"
            + (f" ({snapshot.failed_count}장 실패)" if snapshot.failed_count else "")
            + f". 적용한 지시문: {batch.instructions}"
        )
        self._store.set_summary(summary, generated=True, batch_id=batch_id)
        level = LogLevel.WARNING if snapshot.failed_count else LogLevel.SUCCESS
        self._store.add_log("모든 이미지 처리가 끝났습니다", level, batch_id=batch_id)
        logger.info(
            f"[{batch_id}] terminal: {snapshot.completed_count} completed, "
            f"{snapshot.failed_count} failed"
        )

    # --- 수동 재시도 ---

    def requeue(self, image_id: str, batch_id: str | None = None) -> ImageRecord:
        """failed 이미지 하나를 다시 queued로 돌리고 처리를 재개한다.

        다른 이미지나 배치의 created_at / instructions는 건드리지 않는다.
        """
        batch = self._store.require_batch(batch_id)
        record = self._store.get_image(image_id, batch.id)
        if record.status == ImageStatus.PROCESSING:
            raise Conflict(f"{image_id}는 이미 처리 중입니다")
        if record.status != ImageStatus.FAILED:
            raise InvalidState(f"실패한 이미지만 다시 처리할 수 있습니다 (현재: {record.status})")
        if record.original_ref is None:
            raise InvalidState(f"{image_id}의 원본이 저장되지 않았습니다. 다시 업로드하세요")

        updated = self._store.update_image(
            image_id, {"status": ImageStatus.QUEUED, "attempts": 0}, batch_id=batch.id
        )
        self._store.add_log(f"{record.filename} 다시 처리 대기", batch_id=batch.id)
        logger.info(f"[{batch.id}] {image_id} requeued")
        self.start(batch.id)
        return updated

    # --- 진행률 ---

    async def snapshots(self, batch_id: str, interval: float = 1.0) -> AsyncIterator[ProgressSnapshot]:
        """폴링용 스냅샷 시퀀스. 호출할 때마다 처음부터 다시 시작한다.

        종료 상태 스냅샷을 내보낸 뒤, 또는 배치가 교체되면 끝난다.
        """
        while True:
            try:
                snapshot = self._store.snapshot(batch_id)
            except BatchNotFound:
                return
            yield snapshot
            if snapshot.terminal:
                return
            await asyncio.sleep(interval)

    # --- 취소 ---

    def cancel(self, keep_batch_id: str | None = None) -> int:
        """keep_batch_id가 아닌 배치의 진행 중 태스크를 모두 취소한다."""
        cancelled = 0
        for (batch_id, image_id), task in list(self._in_flight.items()):
            if batch_id != keep_batch_id:
                task.cancel()
                self._in_flight.pop((batch_id, image_id), None)
                cancelled += 1
        for batch_id, runner in list(self._runners.items()):
            if batch_id != keep_batch_id:
                runner.cancel()
                self._runners.pop(batch_id, None)
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight processing task(s)")
        return cancelled

    async def shutdown(self) -> None:
        tasks = list(self._in_flight.values()) + list(self._runners.values())
        self.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_store_event(self, event: StoreEvent) -> None:
        if event.kind == "batch_reset":
            self.cancel()
        elif event.kind == "batch_created":
            self.cancel(keep_batch_id=event.batch_id)

    def _wake(self, batch_id: str) -> None:
        event = self._wake_events.get(batch_id)
        if event is not None:
            event.set()

    def _release(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # 자리가 났으니 advance 루프를 깨운다
        self._wake(key[0])

    def _on_runner_done(self, batch_id: str, task: asyncio.Task) -> None:
        if self._runners.get(batch_id) is task:
            del self._runners[batch_id]
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error(f"[{batch_id}] supervisor crashed")
