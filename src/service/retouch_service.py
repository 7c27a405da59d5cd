import asyncio

from loguru import logger

from core.exceptions import (
    CollaboratorError,
    Conflict,
    InvalidInput,
    InvalidState,
    PermanentError,
    StaleBatch,
    TransientError,
)
from model.batch import LogLevel
from model.image import ErrorKind, ImageRecord, ImageStatus, RetouchEntry
from service.batch_store import BatchStore
from service.collaborators import AIProcessor, to_image_error
from utility.timer import timer


class RetouchController:
    """처리 완료된 이미지 한 장에 보정 지시를 적용한다.

    retouching 상태가 이미지별 잠금 역할을 한다. 같은 이미지에 두 번째 요청이 오면
    Conflict, 다른 이미지끼리는 완전히 독립적으로 동시에 진행된다.
    """

    def __init__(self, store: BatchStore, processor: AIProcessor, *, timeout: float = 60.0):
        self._store = store
        self._processor = processor
        self.timeout = timeout

    def _require_completed(self, image_id: str, batch_id: str | None) -> ImageRecord:
        record = self._store.get_image(image_id, batch_id)
        if record.status == ImageStatus.RETOUCHING:
            raise Conflict(f"{image_id}는 이미 리터치 중입니다")
        if record.status != ImageStatus.COMPLETED:
            raise InvalidState(f"처리가 완료된 이미지만 수정할 수 있습니다 (현재: {record.status})")
        return record

    async def retouch(
        self, image_id: str, instruction: str, batch_id: str | None = None
    ) -> ImageRecord:
        """리터치를 적용하고 갱신된 레코드를 반환한다.

        실패하면 이미지는 이전 processed_ref 그대로 completed로 돌아가고,
        분류된 협력자 예외(TransientError / PermanentError)가 호출자에게 전달된다.
        """
        if not instruction or not instruction.strip():
            raise InvalidInput("리터치 지시문이 비어 있습니다")
        instruction = instruction.strip()

        batch = self._store.require_batch(batch_id)
        record = self._require_completed(image_id, batch.id)

        # completed -> retouching 전이가 잠금 획득이다
        self._store.update_image(image_id, {"status": ImageStatus.RETOUCHING}, batch_id=batch.id)
        self._store.add_log(f"{record.filename} 리터치 시작", batch_id=batch.id)

        try:
            with timer(f"retouch {batch.id}/{image_id}", slow_threshold=self.timeout / 2):
                new_ref = await asyncio.wait_for(
                    self._processor.retouch(record.processed_ref, instruction),
                    timeout=self.timeout,
                )
            if not isinstance(new_ref, str) or not new_ref:
                raise PermanentError(f"처리기가 올바르지 않은 결과를 돌려주었습니다: {new_ref!r}")
        except Exception as exc:
            error = to_image_error(exc)
            self._release(batch.id, image_id, {"status": ImageStatus.COMPLETED})
            self._store.add_log(
                f"{record.filename} 리터치 실패: {error.message}", LogLevel.ERROR, batch_id=batch.id
            )
            logger.opt(exception=exc).warning(f"[{batch.id}] {image_id} retouch failed")
            if isinstance(exc, CollaboratorError):
                raise
            # 타임아웃, 분류되지 않은 예외도 분류된 협력자 예외로 바꿔 전달한다
            classified = TransientError if error.kind == ErrorKind.TRANSIENT else PermanentError
            raise classified(error.message) from exc
        except asyncio.CancelledError:
            self._release(batch.id, image_id, {"status": ImageStatus.COMPLETED})
            raise

        entry = RetouchEntry(instruction=instruction, processed_ref=new_ref, kind="retouch")
        updated = self._release(
            batch.id,
            image_id,
            {
                "status": ImageStatus.COMPLETED,
                "processed_ref": new_ref,
                "retouch_history": record.retouch_history + (entry,),
                "approved": False,
            },
        )
        if updated is None:
            raise StaleBatch(f"배치 {batch.id}는 리터치 도중 교체되었습니다")
        self._store.add_log(f"{record.filename} 리터치 완료", LogLevel.SUCCESS, batch_id=batch.id)
        logger.info(f"[{batch.id}] {image_id} retouched (version {updated.version_count})")
        return updated

    def _release(self, batch_id: str, image_id: str, patch: dict) -> ImageRecord | None:
        try:
            return self._store.update_image(image_id, patch, batch_id=batch_id)
        except StaleBatch:
            logger.info(f"[{batch_id}] {image_id}: retouch result for replaced batch discarded")
            return None

    def revert(self, image_id: str, version: int, batch_id: str | None = None) -> ImageRecord:
        """이력의 version번째 결과를 다시 표시 버전으로 삼는다. 재계산하지 않는다."""
        batch = self._store.require_batch(batch_id)
        record = self._require_completed(image_id, batch.id)
        if not 0 <= version < len(record.retouch_history):
            raise InvalidInput(
                f"버전은 0 이상 {len(record.retouch_history) - 1} 이하여야 합니다"
            )
        ref = record.retouch_history[version].processed_ref
        updated = self._store.update_image(
            image_id,
            {"status": ImageStatus.COMPLETED, "processed_ref": ref, "approved": False},
            batch_id=batch.id,
        )
        self._store.add_log(f"{record.filename} 버전 {version}(으)로 되돌림", batch_id=batch.id)
        return updated

    def approve(self, image_id: str, approved: bool = True, batch_id: str | None = None) -> ImageRecord:
        """검토 승인 플래그를 바꾼다. completed 이미지만 가능하다."""
        batch = self._store.require_batch(batch_id)
        record = self._require_completed(image_id, batch.id)
        updated = self._store.update_image(
            image_id, {"status": ImageStatus.COMPLETED, "approved": approved}, batch_id=batch.id
        )
        if approved and not record.approved:
            self._store.add_log(f"{record.filename} 승인", LogLevel.SUCCESS, batch_id=batch.id)
        return updated
