from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from pydantic import BaseModel

from core.dependencies import get_archives, get_workflow
from core.exceptions import NotFound
from model.export import ArchiveResult, DamConnection, ExportProgress, ExportReport
from processor.local_backend import ZipArchiveBuilder
from service.workflow import Workflow

router = APIRouter(prefix="/api/exports", tags=["exports"])


class DownloadRequest(BaseModel):
    image_ids: list[str] | None = None


class DownloadResponse(ArchiveResult):
    download_url: str


class DamExportRequest(BaseModel):
    connection: DamConnection
    image_ids: list[str] | None = None


@router.post("/{batch_id}/download", response_model=DownloadResponse)
async def export_download(
    batch_id: str,
    req: DownloadRequest | None = None,
    workflow: Workflow = Depends(get_workflow),
):
    """완료된 이미지 + 요약문을 ZIP으로 묶는다. 실패한 이미지는 제외된다."""
    result = await workflow.export_download(batch_id, req.image_ids if req else None)
    return DownloadResponse(
        **result.model_dump(),
        download_url=f"{router.prefix}/archives/{result.archive_ref}",
    )


@router.get("/archives/{archive_ref}")
def download_archive(archive_ref: str, archives: ZipArchiveBuilder = Depends(get_archives)):
    path = archives.path_for(archive_ref)
    if not path.exists():
        raise NotFound("아카이브를 찾을 수 없습니다")
    return FileResponse(path, media_type="application/zip", filename=archive_ref)


@router.post("/{batch_id}/dam", response_model=ExportReport)
async def export_to_dam(
    batch_id: str,
    req: DamExportRequest,
    workflow: Workflow = Depends(get_workflow),
):
    """이미지별로 DAM에 전송한다. 일부 실패해도 200과 함께 이미지별 결과를 돌려준다."""
    return await workflow.export_to_dam(batch_id, req.connection, req.image_ids)


@router.get("/{batch_id}/progress", response_model=list[ExportProgress])
def get_export_progress(batch_id: str, workflow: Workflow = Depends(get_workflow)):
    return workflow.export_progress(batch_id)
