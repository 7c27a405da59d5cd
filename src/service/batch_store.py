"""현재 배치를 보관하는 단일 상태 컨테이너.

모든 컴포넌트(업로드, 처리, 리터치, 내보내기, HTTP 라우터)가 같은 BatchStore를
참조로 받아 쓴다. 모듈 전역 변수가 아니라 Workflow(조립 루트)가 소유한다.

규칙:
- 배치는 한 번에 하나만 존재한다. create_batch는 이전 배치를 통째로 교체한다.
- 이미지 레코드 변경은 update_image 하나로만 한다. 상태 전이 검증,
  processed_ref 보존, error 정리, last_updated 갱신이 여기서 한 번에 일어난다.
- 커밋마다 구독자에게 동기적으로 StoreEvent를 보낸다.
- batch_id 태그가 현재 배치와 다르면 StaleBatch를 던진다. 리셋 후 늦게 도착한
  결과가 새 배치에 쓰이는 것을 막는 장치다.
"""

import itertools
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger

from core.exceptions import BatchNotFound, ImageNotFound, InvalidInput, InvalidState, StaleBatch
from model.batch import Batch, LogEntry, LogLevel, ProgressSnapshot, new_batch_id
from model.image import (
    ImageRecord,
    ImageStatus,
    can_transition,
    utcnow,
)

EventKind = Literal["batch_created", "image_updated", "summary_set", "log_added", "batch_reset"]


@dataclass(frozen=True)
class StoreEvent:
    kind: EventKind
    batch_id: str
    batch: Batch | None
    image_id: str | None = None


Subscriber = Callable[[StoreEvent], None]

_PATCHABLE_FIELDS = frozenset(ImageRecord.model_fields) - {"id", "last_updated"}


class BatchStore:
    def __init__(self) -> None:
        self._batch: Batch | None = None
        # FastAPI가 동기 핸들러를 스레드풀에서 돌려도 커밋이 찢어지지 않도록 잠근다.
        self._lock = threading.RLock()
        self._subscribers: list[Subscriber] = []
        self._log_seq = itertools.count(1)

    # --- 구독 ---

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """커밋 알림을 받을 콜백을 등록하고, 해제 함수를 반환한다."""
        with self._lock:
            self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _commit(
        self,
        batch: Batch | None,
        kind: EventKind,
        batch_id: str,
        image_id: str | None = None,
    ) -> None:
        self._batch = batch
        event = StoreEvent(kind=kind, batch_id=batch_id, batch=batch, image_id=image_id)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # 구독자 하나의 오류가 이미 커밋된 변경을 되돌리지는 않는다
                logger.exception(f"store subscriber failed on {kind} ({batch_id})")

    # --- 조회 ---

    def get_batch(self) -> Batch | None:
        return self._batch

    def require_batch(self, batch_id: str | None = None) -> Batch:
        """현재 배치를 반환한다. batch_id가 주어지면 현재 배치와 일치해야 한다."""
        batch = self._batch
        if batch is None:
            raise BatchNotFound("진행 중인 배치가 없습니다")
        if batch_id is not None and batch.id != batch_id:
            raise BatchNotFound(f"배치를 찾을 수 없습니다: {batch_id}")
        return batch

    def get_image(self, image_id: str, batch_id: str | None = None) -> ImageRecord:
        record = self.require_batch(batch_id).find(image_id)
        if record is None:
            raise ImageNotFound(f"이미지를 찾을 수 없습니다: {image_id}")
        return record

    def is_current(self, batch_id: str) -> bool:
        batch = self._batch
        return batch is not None and batch.id == batch_id

    def count_by_status(self) -> dict[ImageStatus, int]:
        counts = {status: 0 for status in ImageStatus}
        if self._batch is not None:
            for img in self._batch.images:
                counts[img.status] += 1
        return counts

    def progress(self) -> float:
        """(completed + failed) / total. 배치가 없으면 0.0.

        리터치 중인 이미지는 completed로 센다. 같은 배치에서 진행률이 줄지 않는다.
        """
        batch = self._batch
        if batch is None or not batch.images:
            return 0.0
        done = sum(1 for img in batch.images if img.is_settled)
        return done / len(batch.images)

    def is_terminal(self) -> bool:
        batch = self._batch
        return batch is not None and all(img.is_settled for img in batch.images)

    def snapshot(self, batch_id: str | None = None) -> ProgressSnapshot:
        with self._lock:
            batch = self.require_batch(batch_id)
            completed = batch.count_completed()
            failed = batch.count(ImageStatus.FAILED)
            total = len(batch.images)
            return ProgressSnapshot(
                batch_id=batch.id,
                completed_count=completed,
                failed_count=failed,
                total_count=total,
                approved_count=sum(1 for img in batch.images if img.approved),
                progress=(completed + failed) / total if total else 0.0,
                terminal=all(img.is_settled for img in batch.images),
                per_image_status={img.id: img.status for img in batch.images},
            )

    # --- 변경 ---

    def create_batch(
        self,
        images: Iterable[ImageRecord],
        instructions: str,
        batch_id: str | None = None,
    ) -> Batch:
        images = tuple(images)
        if not images:
            raise InvalidInput("이미지가 한 장 이상 필요합니다")
        if not instructions or not instructions.strip():
            raise InvalidInput("처리 지시문이 비어 있습니다")
        ids = [img.id for img in images]
        if len(set(ids)) != len(ids):
            raise InvalidInput("이미지 id가 중복되었습니다")

        batch = Batch(
            id=batch_id or new_batch_id(),
            images=images,
            instructions=instructions.strip(),
        )
        with self._lock:
            previous = self._batch
            if previous is not None:
                logger.info(f"Replacing batch {previous.id} with {batch.id}")
            self._commit(batch, "batch_created", batch.id)
        logger.info(f"Batch {batch.id} created ({len(images)} images)")
        return batch

    def update_image(
        self,
        image_id: str,
        patch: Mapping[str, Any],
        *,
        batch_id: str | None = None,
    ) -> ImageRecord:
        """이미지 레코드 하나에 부분 변경을 적용한다.

        호출 순서대로 적용되며, 같은 필드에 대한 경쟁 변경은 병합하지 않는다.

        Raises:
            StaleBatch: batch_id 태그가 현재 배치와 다를 때
            BatchNotFound / ImageNotFound: 대상이 없을 때
            InvalidState: 허용되지 않는 전이, processed_ref 삭제 시도,
                이력 수정 시도
            ValueError: 변경할 수 없는 필드를 넘겼을 때 (프로그래밍 오류)
        """
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"patch에 허용되지 않는 필드: {sorted(unknown)}")

        with self._lock:
            batch = self._batch
            if batch_id is not None and (batch is None or batch.id != batch_id):
                raise StaleBatch(f"배치 {batch_id}는 이미 교체되었습니다")
            if batch is None:
                raise BatchNotFound("진행 중인 배치가 없습니다")

            index = next((i for i, img in enumerate(batch.images) if img.id == image_id), None)
            if index is None:
                raise ImageNotFound(f"이미지를 찾을 수 없습니다: {image_id}")
            current = batch.images[index]

            changes = dict(patch)
            status = current.status
            if "status" in changes:
                status = ImageStatus(changes["status"])
                if not can_transition(current.status, status):
                    raise InvalidState(
                        f"{image_id}: {current.status} -> {status} 전이는 허용되지 않습니다"
                    )
                changes["status"] = status
                changes["last_updated"] = utcnow()
                if status != ImageStatus.FAILED:
                    changes["error"] = None

            processed_ref = changes.get("processed_ref", current.processed_ref)
            if current.processed_ref is not None and processed_ref is None:
                raise InvalidState(f"{image_id}: processed_ref는 지울 수 없습니다")
            if status == ImageStatus.COMPLETED and processed_ref is None:
                raise InvalidState(f"{image_id}: completed 상태에는 processed_ref가 필요합니다")

            error = changes.get("error", current.error)
            if status == ImageStatus.FAILED and error is None:
                raise InvalidState(f"{image_id}: failed 상태에는 error가 필요합니다")
            if status != ImageStatus.FAILED and error is not None:
                raise InvalidState(f"{image_id}: error는 failed 상태에서만 기록됩니다")

            if "retouch_history" in changes:
                history = tuple(changes["retouch_history"])
                if history[: len(current.retouch_history)] != current.retouch_history:
                    raise InvalidState(f"{image_id}: 이력은 추가만 할 수 있습니다")
                changes["retouch_history"] = history

            updated = current.model_copy(update=changes)
            images = batch.images[:index] + (updated,) + batch.images[index + 1 :]
            self._commit(batch.model_copy(update={"images": images}), "image_updated", batch.id, image_id)

        if "status" in patch and current.status != updated.status:
            logger.debug(f"[{batch.id}] {image_id}: {current.status} -> {updated.status}")
        return updated

    def set_summary(
        self,
        text: str,
        *,
        generated: bool = False,
        batch_id: str | None = None,
    ) -> Batch:
        """요약문을 기록한다.

        generated=True는 자동 생성 요약이다. 사용자가 이미 편집한 요약은 덮어쓰지 않는다.
        """
        with self._lock:
            batch = self._batch
            if batch_id is not None and (batch is None or batch.id != batch_id):
                raise StaleBatch(f"배치 {batch_id}는 이미 교체되었습니다")
            if batch is None:
                raise BatchNotFound("진행 중인 배치가 없습니다")
            if generated and batch.summary_edited:
                return batch
            updated = batch.model_copy(
                update={
                    "summary": text.strip(),
                    "summary_edited": batch.summary_edited or not generated,
                }
            )
            self._commit(updated, "summary_set", batch.id)
            return updated

    def add_log(
        self,
        message: str,
        level: LogLevel = LogLevel.INFO,
        *,
        batch_id: str | None = None,
    ) -> LogEntry | None:
        """배치 활동 로그를 추가한다. 대상 배치가 없거나 교체되었으면 버린다."""
        with self._lock:
            batch = self._batch
            if batch is None or (batch_id is not None and batch.id != batch_id):
                logger.debug(f"Dropping activity log for stale batch {batch_id}: {message}")
                return None
            entry = LogEntry(id=f"log-{next(self._log_seq)}", message=message, level=level)
            self._commit(batch.model_copy(update={"logs": batch.logs + (entry,)}), "log_added", batch.id)
            return entry

    def reset_batch(self) -> Batch | None:
        """현재 배치를 폐기한다 ("새 프로젝트"). 폐기된 배치를 반환한다."""
        with self._lock:
            previous = self._batch
            if previous is None:
                return None
            self._commit(None, "batch_reset", previous.id)
        logger.info(f"Batch {previous.id} reset")
        return previous
