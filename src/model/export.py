from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class Visibility(StrEnum):
    PRIVATE = "private"
    PUBLIC = "public"
    RESTRICTED = "restricted"


class DamConnection(BaseModel):
    """DAM 내보내기 대상 설정.

    읽기 전용으로 ExportCoordinator에 전달된다. credentials_ref는 외부 비밀 저장소의
    참조일 뿐이며 엔진은 자격 증명을 저장하지 않는다.

    subfolder_pattern:
        "YYYY/MM/DD", "YYYY-MM"  날짜 기준
        "batch-id"               배치 기준
        "project", "user"        고정 이름
        그 외                     문자열 그대로 사용
    """

    model_config = ConfigDict(frozen=True)

    provider: str
    api_url: str
    target_folder: str = "/uploads"
    credentials_ref: str | None = None
    workspace: str = ""
    create_subfolders: bool = True
    subfolder_pattern: str = "YYYY/MM/DD"
    add_metadata: bool = True
    custom_metadata: dict[str, str] = Field(default_factory=dict)
    visibility: Visibility = Visibility.PRIVATE

    @field_validator("provider", "api_url")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @property
    def target_key(self) -> str:
        return f"{self.provider}:{self.api_url.rstrip('/')}{self.target_folder}"


class DeliveryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_id: str
    outcome: Literal["success", "failure"]
    target_path: str
    remote_ref: str | None = None
    error: str | None = None


class ExportReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    provider: str
    results: tuple[DeliveryResult, ...]

    @computed_field
    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.outcome == "success")

    @computed_field
    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if r.outcome == "failure")


class ArchiveResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    archive_ref: str
    image_count: int


class ExportProgress(BaseModel):
    """대상별 내보내기 진행률. 처리 진행률과는 별개로 집계한다."""

    batch_id: str
    target: str
    total: int
    delivered: int = 0
    failed: int = 0

    @computed_field
    @property
    def done(self) -> bool:
        return self.delivered + self.failed >= self.total
