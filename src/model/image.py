from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(UTC)


class ImageStatus(StrEnum):
    PENDING = "pending"
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETOUCHING = "retouching"


TERMINAL_STATUSES = frozenset({ImageStatus.COMPLETED, ImageStatus.FAILED})

# 리터치 중인 이미지는 이미 결과가 있으므로 진행률과 종료 판정에서는 완료로 센다.
SETTLED_STATUSES = TERMINAL_STATUSES | {ImageStatus.RETOUCHING}

# 허용되는 상태 전이. BatchStore.update_image만 이 표를 통해 상태를 바꾼다.
# 일시적 실패의 자동 재시도는 processing 상태를 유지한 채 이루어진다.
# completed -> completed: 버전 되돌리기, 승인 플래그 변경
ALLOWED_TRANSITIONS: dict[ImageStatus, frozenset[ImageStatus]] = {
    ImageStatus.PENDING: frozenset(
        {ImageStatus.UPLOADING, ImageStatus.QUEUED, ImageStatus.FAILED}
    ),
    ImageStatus.UPLOADING: frozenset({ImageStatus.QUEUED, ImageStatus.FAILED}),
    ImageStatus.QUEUED: frozenset({ImageStatus.PROCESSING}),
    ImageStatus.PROCESSING: frozenset({ImageStatus.COMPLETED, ImageStatus.FAILED}),
    ImageStatus.COMPLETED: frozenset({ImageStatus.RETOUCHING, ImageStatus.COMPLETED}),
    ImageStatus.RETOUCHING: frozenset({ImageStatus.COMPLETED}),
    ImageStatus.FAILED: frozenset({ImageStatus.QUEUED}),
}


def can_transition(current: ImageStatus, target: ImageStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ImageError(BaseModel):
    """실패한 이미지에 기록되는 구조화된 실패 사유."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    attempts: int = 1

    @computed_field
    @property
    def reason(self) -> str:
        """UI에 그대로 보여줄 수 있는 문장."""
        if self.kind == ErrorKind.TRANSIENT:
            return f"일시적인 오류로 {self.attempts}회 시도 후 실패했습니다: {self.message}"
        return f"처리가 거부되었습니다: {self.message}"


class RetouchEntry(BaseModel):
    """processed_ref 이력 한 건. 추가만 되고 수정되지 않는다."""

    model_config = ConfigDict(frozen=True)

    instruction: str
    processed_ref: str
    kind: Literal["process", "retouch"] = "retouch"
    created_at: datetime = Field(default_factory=utcnow)


class ImageRecord(BaseModel):
    """파이프라인을 통과하는 이미지 한 장의 상태.

    불변 모델이다. 변경은 BatchStore가 model_copy()로 새 레코드를 만들어 커밋한다.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    original_ref: str | None = None
    processed_ref: str | None = None
    retouch_history: tuple[RetouchEntry, ...] = ()
    status: ImageStatus = ImageStatus.PENDING
    error: ImageError | None = None
    attempts: int = 0
    approved: bool = False
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def is_settled(self) -> bool:
        """처리 단계를 벗어났는지. retouching은 completed의 연장으로 본다."""
        return self.status in SETTLED_STATUSES

    @property
    def version_count(self) -> int:
        return len(self.retouch_history)
