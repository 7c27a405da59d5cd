"""배치 워크플로 조립 루트.

BatchStore 하나와 네 개의 코디네이터를 만들어 묶고, UI 계층(HTTP 라우터)에
노출하는 경계 API를 제공한다. 앱에서는 lifespan이 하나를 만들어 app.state에 둔다.
"""

from collections.abc import Sequence

from loguru import logger

from core.config import Settings
from model.batch import Batch, LogEntry, ProgressSnapshot
from model.export import ArchiveResult, DamConnection, ExportProgress, ExportReport
from model.image import ImageRecord
from service.batch_store import BatchStore
from service.collaborators import AIProcessor, ArchiveBuilder, DamClientFactory, Storage
from service.export_service import ExportCoordinator
from service.processing_service import ProcessingSupervisor
from service.retouch_service import RetouchController
from service.upload_service import RawImage, UploadCoordinator


class Workflow:
    def __init__(
        self,
        storage: Storage,
        processor: AIProcessor,
        archive_builder: ArchiveBuilder,
        dam_client_factory: DamClientFactory,
        settings: Settings,
        store: BatchStore | None = None,
    ):
        self.store = store or BatchStore()
        self.supervisor = ProcessingSupervisor(
            self.store,
            processor,
            pool_size=settings.PROCESSING_POOL_SIZE,
            max_attempts=settings.MAX_ATTEMPTS,
            backoff_base=settings.BACKOFF_BASE_SECONDS,
            backoff_max=settings.BACKOFF_MAX_SECONDS,
            timeout=settings.PROCESS_TIMEOUT_SECONDS,
        )
        self.uploads = UploadCoordinator(
            self.store, storage, self.supervisor, timeout=settings.UPLOAD_TIMEOUT_SECONDS
        )
        self.retoucher = RetouchController(
            self.store, processor, timeout=settings.RETOUCH_TIMEOUT_SECONDS
        )
        self.exporter = ExportCoordinator(
            self.store,
            archive_builder,
            dam_client_factory,
            pool_size=settings.EXPORT_POOL_SIZE,
            timeout=settings.EXPORT_TIMEOUT_SECONDS,
            source_name=settings.APP_NAME,
        )
        self.progress_interval = settings.PROGRESS_INTERVAL_SECONDS

    # --- 제출 / 조회 ---

    async def submit(self, raw_images: Sequence[RawImage], instructions: str | None) -> str:
        return await self.uploads.submit(raw_images, instructions)

    def current_batch(self) -> Batch:
        return self.store.require_batch()

    def get_batch(self, batch_id: str) -> Batch:
        return self.store.require_batch(batch_id)

    def progress(self, batch_id: str) -> ProgressSnapshot:
        return self.store.snapshot(batch_id)

    def snapshots(self, batch_id: str):
        return self.supervisor.snapshots(batch_id, interval=self.progress_interval)

    def logs(self, batch_id: str, since: int = 0) -> tuple[LogEntry, ...]:
        return self.store.require_batch(batch_id).logs[since:]

    # --- 이미지 단위 작업 ---

    def retry(self, batch_id: str, image_id: str) -> ImageRecord:
        return self.supervisor.requeue(image_id, batch_id)

    async def retouch(self, batch_id: str, image_id: str, instruction: str) -> ImageRecord:
        return await self.retoucher.retouch(image_id, instruction, batch_id)

    def revert(self, batch_id: str, image_id: str, version: int) -> ImageRecord:
        return self.retoucher.revert(image_id, version, batch_id)

    def approve(self, batch_id: str, image_id: str, approved: bool = True) -> ImageRecord:
        return self.retoucher.approve(image_id, approved, batch_id)

    def set_summary(self, batch_id: str, text: str) -> Batch:
        """사용자가 편집한 요약문. 이후 자동 생성 요약이 덮어쓰지 않는다."""
        self.store.require_batch(batch_id)
        return self.store.set_summary(text, batch_id=batch_id)

    # --- 내보내기 ---

    async def export_download(
        self, batch_id: str, image_ids: Sequence[str] | None = None
    ) -> ArchiveResult:
        return await self.exporter.export_download(batch_id, image_ids)

    async def export_to_dam(
        self,
        batch_id: str,
        connection: DamConnection,
        image_ids: Sequence[str] | None = None,
    ) -> ExportReport:
        return await self.exporter.export_to_dam(batch_id, connection, image_ids)

    def export_progress(self, batch_id: str) -> list[ExportProgress]:
        self.store.require_batch(batch_id)
        return self.exporter.progress(batch_id)

    # --- 리셋 ---

    def reset(self) -> str | None:
        """현재 배치를 폐기하고 진행 중 작업을 취소한다. 폐기된 batch_id를 반환한다."""
        previous = self.store.reset_batch()
        if previous is None:
            return None
        logger.info(f"Workflow reset, discarded {previous.id}")
        return previous.id

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()
