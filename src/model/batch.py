import secrets
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, computed_field

from model.image import ImageRecord, ImageStatus, utcnow


def new_batch_id() -> str:
    return f"batch-{int(utcnow().timestamp() * 1000)}-{secrets.token_hex(3)}"


class LogLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class LogEntry(BaseModel):
    """배치 활동 로그 한 줄 (UI 처리 패널 표시용)."""

    model_config = ConfigDict(frozen=True)

    id: str
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = Field(default_factory=utcnow)


class Batch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    images: tuple[ImageRecord, ...]
    instructions: str
    summary: str | None = None
    summary_edited: bool = False
    logs: tuple[LogEntry, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)

    def find(self, image_id: str) -> ImageRecord | None:
        return next((img for img in self.images if img.id == image_id), None)

    def count(self, status: ImageStatus) -> int:
        return sum(1 for img in self.images if img.status == status)

    def count_completed(self) -> int:
        """결과가 있는 이미지 수. 리터치 중인 이미지도 포함한다."""
        return self.count(ImageStatus.COMPLETED) + self.count(ImageStatus.RETOUCHING)


class ProgressSnapshot(BaseModel):
    """폴링용 진행률 스냅샷. BatchStore 상태를 읽기만 해서 만든다."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    completed_count: int
    failed_count: int
    total_count: int
    approved_count: int = 0
    progress: float
    terminal: bool
    per_image_status: dict[str, ImageStatus]

    @computed_field
    @property
    def percent(self) -> float:
        return round(self.progress * 100, 1)
