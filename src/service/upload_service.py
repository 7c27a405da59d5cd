import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from core.exceptions import InvalidInput, StaleBatch
from model.batch import LogLevel, new_batch_id
from model.image import ImageRecord, ImageStatus
from service.batch_store import BatchStore
from service.collaborators import Storage, to_image_error
from service.processing_service import ProcessingSupervisor


@dataclass(frozen=True)
class RawImage:
    """업로드로 받은 원본 이미지 한 장."""

    filename: str
    data: bytes
    content_type: str | None = None


class UploadCoordinator:
    """원본 이미지 묶음 + 지시문을 받아 배치를 만들고 처리 대기열에 넣는다.

    pending -> uploading -> queued 전이를 거친다. "받음"과 "처리 대기"를 UI가
    구분해서 보여줄 수 있게 하려는 것이고, ProcessingSupervisor는 queued 상태만 집는다.
    """

    def __init__(
        self,
        store: BatchStore,
        storage: Storage,
        supervisor: ProcessingSupervisor | None = None,
        *,
        timeout: float = 30.0,
    ):
        self._store = store
        self._storage = storage
        self._supervisor = supervisor
        self.timeout = timeout

    @staticmethod
    def validate(raw_images: Sequence[RawImage], instructions: str | None) -> str:
        if not raw_images:
            raise InvalidInput("이미지가 한 장 이상 필요합니다")
        if instructions is None or not instructions.strip():
            raise InvalidInput("처리 지시문이 비어 있습니다")
        empty = [img.filename for img in raw_images if not img.data]
        if empty:
            raise InvalidInput(f"빈 파일이 포함되어 있습니다: {', '.join(empty)}")
        return instructions.strip()

    async def submit(self, raw_images: Sequence[RawImage], instructions: str | None) -> str:
        """배치를 생성하고 batch_id를 반환한다.

        검증에 실패하면 InvalidInput을 던지고 스토어는 건드리지 않는다.
        원본 저장에 실패한 이미지는 failed로 기록되고 나머지는 계속 진행한다.
        """
        instructions = self.validate(raw_images, instructions)

        batch_id = new_batch_id()
        records = [
            ImageRecord(id=f"img-{i}", filename=raw.filename or f"image-{i + 1}.jpg")
            for i, raw in enumerate(raw_images)
        ]
        self._store.create_batch(records, instructions, batch_id=batch_id)
        self._store.add_log(f"{len(records)}장의 이미지를 받았습니다", batch_id=batch_id)

        await asyncio.gather(
            *(
                self._store_original(batch_id, record.id, raw)
                for record, raw in zip(records, raw_images)
            )
        )

        if self._supervisor is not None and self._store.is_current(batch_id):
            self._supervisor.start(batch_id)
        return batch_id

    async def _store_original(self, batch_id: str, image_id: str, raw: RawImage) -> None:
        try:
            self._store.update_image(
                image_id, {"status": ImageStatus.UPLOADING}, batch_id=batch_id
            )
            try:
                ref = await asyncio.wait_for(
                    self._storage.put_original(raw.data, raw.filename), timeout=self.timeout
                )
            except Exception as exc:
                logger.opt(exception=exc).warning(f"[{batch_id}] {image_id} upload failed")
                error = to_image_error(exc)
                self._store.update_image(
                    image_id,
                    {"status": ImageStatus.FAILED, "error": error},
                    batch_id=batch_id,
                )
                self._store.add_log(
                    f"{raw.filename} 업로드 실패: {error.message}", LogLevel.ERROR, batch_id=batch_id
                )
                return
            self._store.update_image(
                image_id,
                {"status": ImageStatus.QUEUED, "original_ref": ref},
                batch_id=batch_id,
            )
        except StaleBatch:
            logger.debug(f"[{batch_id}] {image_id}: batch replaced during upload, result discarded")
