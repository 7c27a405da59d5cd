from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from core.dependencies import get_workflow
from model.batch import Batch, LogEntry, ProgressSnapshot
from model.image import ImageRecord
from service.upload_service import RawImage
from service.workflow import Workflow

router = APIRouter(prefix="/api/batches", tags=["batches"])


# --- 요청/응답 스키마 ---

class SubmitResponse(BaseModel):
    batch_id: str
    image_count: int


class ResetResponse(BaseModel):
    batch_id: str | None


class RetouchRequest(BaseModel):
    instruction: str


class RevertRequest(BaseModel):
    version: int


class ApproveRequest(BaseModel):
    approved: bool = True


class SummaryRequest(BaseModel):
    summary: str


# --- 배치 ---

@router.post("", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_batch(
    images: list[UploadFile] | None = File(default=None),
    instructions: str | None = Form(default=None),
    instruction_file: UploadFile | None = File(default=None),
    workflow: Workflow = Depends(get_workflow),
):
    """이미지 여러 장 + 지시문으로 새 배치를 시작한다. 기존 배치는 교체된다.

    지시문은 instructions 폼 필드나 instruction_file(텍스트 파일)로 받는다.
    """
    if not instructions and instruction_file is not None:
        instructions = (await instruction_file.read()).decode("utf-8", errors="replace")

    raw_images = [
        RawImage(
            filename=file.filename or "unknown",
            data=await file.read(),
            content_type=file.content_type,
        )
        for file in images or []
    ]
    batch_id = await workflow.submit(raw_images, instructions)
    return SubmitResponse(batch_id=batch_id, image_count=len(raw_images))


@router.get("/current", response_model=Batch)
def get_current_batch(workflow: Workflow = Depends(get_workflow)):
    return workflow.current_batch()


@router.delete("/current", response_model=ResetResponse)
async def reset_batch(workflow: Workflow = Depends(get_workflow)):
    """새 프로젝트: 현재 배치를 폐기하고 진행 중 작업을 취소한다."""
    return ResetResponse(batch_id=workflow.reset())


@router.get("/{batch_id}", response_model=Batch)
def get_batch(batch_id: str, workflow: Workflow = Depends(get_workflow)):
    return workflow.get_batch(batch_id)


@router.put("/{batch_id}/summary", response_model=Batch)
async def update_summary(batch_id: str, req: SummaryRequest, workflow: Workflow = Depends(get_workflow)):
    return workflow.set_summary(batch_id, req.summary)


# --- 진행률 ---

@router.get("/{batch_id}/progress", response_model=ProgressSnapshot)
def get_progress(batch_id: str, workflow: Workflow = Depends(get_workflow)):
    return workflow.progress(batch_id)


@router.get("/{batch_id}/progress/stream")
async def stream_progress(batch_id: str, workflow: Workflow = Depends(get_workflow)):
    """server-sent events로 스냅샷을 흘려보낸다. 종료 상태가 되면 스트림이 닫힌다."""
    workflow.get_batch(batch_id)

    async def events():
        async for snapshot in workflow.snapshots(batch_id):
            yield f"event: progress\ndata: {snapshot.model_dump_json()}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/{batch_id}/logs", response_model=list[LogEntry])
def get_logs(batch_id: str, since: int = 0, workflow: Workflow = Depends(get_workflow)):
    return list(workflow.logs(batch_id, since))


# --- 이미지 단위 ---

@router.post("/{batch_id}/images/{image_id}/retry", response_model=ImageRecord)
async def retry_image(batch_id: str, image_id: str, workflow: Workflow = Depends(get_workflow)):
    """실패한 이미지 한 장만 다시 처리 대기열에 넣는다."""
    return workflow.retry(batch_id, image_id)


@router.post("/{batch_id}/images/{image_id}/retouch", response_model=ImageRecord)
async def retouch_image(
    batch_id: str,
    image_id: str,
    req: RetouchRequest,
    workflow: Workflow = Depends(get_workflow),
):
    return await workflow.retouch(batch_id, image_id, req.instruction)


@router.post("/{batch_id}/images/{image_id}/revert", response_model=ImageRecord)
async def revert_image(
    batch_id: str,
    image_id: str,
    req: RevertRequest,
    workflow: Workflow = Depends(get_workflow),
):
    return workflow.revert(batch_id, image_id, req.version)


@router.post("/{batch_id}/images/{image_id}/approve", response_model=ImageRecord)
async def approve_image(
    batch_id: str,
    image_id: str,
    req: ApproveRequest,
    workflow: Workflow = Depends(get_workflow),
):
    return workflow.approve(batch_id, image_id, req.approved)
