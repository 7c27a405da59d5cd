"""처리 결과 내보내기: ZIP 아카이브 다운로드, DAM 전송.

내보내기는 이미지 레코드 상태를 바꾸지 않는다. 대상별 진행률은
처리 진행률과 별도로 ExportProgress에 집계한다.
"""

import asyncio
from collections.abc import Sequence
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any

from loguru import logger

from core.exceptions import ImageNotFound, InvalidState, TransientError
from model.batch import Batch, LogLevel
from model.export import ArchiveResult, DamConnection, DeliveryResult, ExportProgress, ExportReport
from model.image import ImageRecord, ImageStatus, utcnow
from service.batch_store import BatchStore, StoreEvent
from service.collaborators import ArchiveBuilder, DamClientFactory, to_image_error


def subfolder_for(pattern: str, batch_id: str, now: datetime) -> str:
    """DAM 하위 폴더 이름을 만든다. 알 수 없는 패턴은 문자열 그대로 쓴다."""
    match pattern:
        case "YYYY/MM/DD":
            return now.strftime("%Y/%m/%d")
        case "YYYY-MM":
            return now.strftime("%Y-%m")
        case "batch-id":
            return batch_id
        case "project":
            return "project-default"
        case "user":
            return "user-uploads"
        case _:
            return pattern


def _segments(text: str) -> list[str]:
    """경로 문자열을 안전한 조각으로 나눈다. 빈 조각, ".", ".."는 버린다."""
    return [part for part in text.replace("\\", "/").split("/") if part not in ("", ".", "..")]


def basename(filename: str) -> str:
    """클라이언트가 보낸 파일명에서 디렉토리 부분을 떼어 낸다."""
    return (_segments(filename) or ["image"])[-1]


def target_path(connection: DamConnection, batch_id: str, filename: str, now: datetime) -> str:
    """DAM 업로드 경로. 결과는 항상 target_folder 아래에 있다."""
    path = PurePosixPath("/", *_segments(connection.target_folder))
    if connection.create_subfolders:
        path = path.joinpath(*_segments(subfolder_for(connection.subfolder_pattern, batch_id, now)))
    return str(path / basename(filename))


def _unique_filenames(records: Sequence[ImageRecord]) -> dict[str, str]:
    """image_id -> 파일명. 같은 파일명이 겹치면 image_id를 앞에 붙인다."""
    names = {r.id: basename(r.filename) for r in records}
    seen: dict[str, int] = {}
    for name in names.values():
        seen[name] = seen.get(name, 0) + 1
    return {
        image_id: name if seen[name] == 1 else f"{image_id}_{name}" for image_id, name in names.items()
    }


class ExportCoordinator:
    def __init__(
        self,
        store: BatchStore,
        archive_builder: ArchiveBuilder,
        dam_client_factory: DamClientFactory,
        *,
        pool_size: int = 4,
        timeout: float = 30.0,
        source_name: str = "batchflow",
    ):
        self._store = store
        self._archive_builder = archive_builder
        self._dam_client_factory = dam_client_factory
        self.pool_size = pool_size
        self.timeout = timeout
        self.source_name = source_name
        # (batch_id, target) -> 진행률
        self._progress: dict[tuple[str, str], ExportProgress] = {}

        store.subscribe(self._on_store_event)

    def export_set(self, batch: Batch, image_ids: Sequence[str] | None = None) -> list[ImageRecord]:
        """내보낼 이미지 목록. failed 이미지는 오류 없이 제외된다."""
        if image_ids:
            records = []
            for image_id in dict.fromkeys(image_ids):
                record = batch.find(image_id)
                if record is None:
                    raise ImageNotFound(f"이미지를 찾을 수 없습니다: {image_id}")
                if record.status == ImageStatus.FAILED:
                    continue
                if record.status != ImageStatus.COMPLETED:
                    raise InvalidState(f"{image_id}는 아직 완료되지 않았습니다 (현재: {record.status})")
                records.append(record)
        else:
            busy = [r.id for r in batch.images if r.status not in (ImageStatus.COMPLETED, ImageStatus.FAILED)]
            if busy:
                raise InvalidState(f"아직 작업 중인 이미지가 있습니다: {', '.join(busy)}")
            records = [r for r in batch.images if r.status == ImageStatus.COMPLETED]

        if not records:
            raise InvalidState("내보낼 수 있는 완료된 이미지가 없습니다")
        return records

    async def export_download(
        self, batch_id: str, image_ids: Sequence[str] | None = None
    ) -> ArchiveResult:
        batch = self._store.require_batch(batch_id)
        records = self.export_set(batch, image_ids)
        refs = [r.processed_ref for r in records]

        try:
            archive_ref = await asyncio.wait_for(
                self._archive_builder.build(refs, batch.summary), timeout=self.timeout
            )
        except TimeoutError:
            raise TransientError("아카이브 생성 시간이 초과되었습니다")

        self._store.add_log(
            f"{len(refs)}장을 아카이브로 내보냈습니다", LogLevel.SUCCESS, batch_id=batch.id
        )
        logger.info(f"[{batch.id}] archive {archive_ref} built ({len(refs)} images)")
        return ArchiveResult(batch_id=batch.id, archive_ref=archive_ref, image_count=len(refs))

    def metadata_for(
        self, connection: DamConnection, batch: Batch, record: ImageRecord, now: datetime
    ) -> dict[str, Any]:
        if not connection.add_metadata:
            return {}
        return {
            "source": self.source_name,
            "processingType": "AI Enhanced",
            "uploadDate": now.isoformat(),
            "batchId": batch.id,
            "imageId": record.id,
            "instructions": batch.instructions,
            "visibility": str(connection.visibility),
            **connection.custom_metadata,
        }

    async def export_to_dam(
        self,
        batch_id: str,
        connection: DamConnection,
        image_ids: Sequence[str] | None = None,
    ) -> ExportReport:
        """이미지별로 DAM에 전송하고 결과 보고서를 반환한다.

        한 장의 실패가 다른 이미지의 전송을 중단시키지 않는다 (fan-out).
        """
        batch = self._store.require_batch(batch_id)
        records = self.export_set(batch, image_ids)
        filenames = _unique_filenames(records)
        client = self._dam_client_factory(connection)
        now = utcnow()

        progress = ExportProgress(batch_id=batch.id, target=connection.target_key, total=len(records))
        self._progress[(batch.id, connection.target_key)] = progress
        pool = asyncio.Semaphore(self.pool_size)

        async def deliver(record: ImageRecord) -> DeliveryResult:
            path = target_path(connection, batch.id, filenames[record.id], now)
            metadata = self.metadata_for(connection, batch, record, now)
            async with pool:
                try:
                    remote_ref = await asyncio.wait_for(
                        client.upload(record.processed_ref, path, metadata), timeout=self.timeout
                    )
                except Exception as exc:
                    error = to_image_error(exc)
                    progress.failed += 1
                    logger.opt(exception=exc).warning(
                        f"[{batch.id}] {record.id} -> {connection.provider}{path} failed"
                    )
                    return DeliveryResult(
                        image_id=record.id, outcome="failure", target_path=path, error=error.message
                    )
            progress.delivered += 1
            return DeliveryResult(
                image_id=record.id, outcome="success", target_path=path, remote_ref=remote_ref
            )

        results = await asyncio.gather(*(deliver(r) for r in records))
        report = ExportReport(batch_id=batch.id, provider=connection.provider, results=tuple(results))

        level = LogLevel.WARNING if report.failure_count else LogLevel.SUCCESS
        self._store.add_log(
            f"{connection.provider}에 {report.success_count}/{len(results)}장 전송 완료",
            level,
            batch_id=batch.id,
        )
        logger.info(
            f"[{batch.id}] DAM export to {connection.target_key}: "
            f"{report.success_count} ok, {report.failure_count} failed"
        )
        return report

    def progress(self, batch_id: str) -> list[ExportProgress]:
        return [p for (b, _), p in self._progress.items() if b == batch_id]

    def _on_store_event(self, event: StoreEvent) -> None:
        if event.kind in ("batch_reset", "batch_created"):
            keep = event.batch.id if event.batch is not None else None
            for key in [k for k in self._progress if k[0] != keep]:
                del self._progress[key]
