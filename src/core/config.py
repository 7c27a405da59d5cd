from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 앱 설정
    APP_NAME: str = "batchflow"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # 로깅
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None

    # 파일 저장 경로 (로컬 협력자 구현용)
    UPLOAD_DIR: str = "/app/uploads"
    OUTPUT_DIR: str = "/app/outputs"
    DAM_ROOT: str = "/app/dam"

    # 처리 파이프라인 튜닝값 (정확성 조건이 아니라 조정 가능한 값)
    PROCESSING_POOL_SIZE: int = 4
    MAX_ATTEMPTS: int = 3
    BACKOFF_BASE_SECONDS: float = 0.5
    BACKOFF_MAX_SECONDS: float = 8.0
    PROCESS_TIMEOUT_SECONDS: float = 60.0
    RETOUCH_TIMEOUT_SECONDS: float = 60.0
    UPLOAD_TIMEOUT_SECONDS: float = 30.0

    # 내보내기
    EXPORT_POOL_SIZE: int = 4
    EXPORT_TIMEOUT_SECONDS: float = 30.0

    # 진행률 스트림 폴링 주기
    PROGRESS_INTERVAL_SECONDS: float = 1.0

    @field_validator("PROCESSING_POOL_SIZE", "EXPORT_POOL_SIZE", "MAX_ATTEMPTS")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "PROCESS_TIMEOUT_SECONDS",
        "RETOUCH_TIMEOUT_SECONDS",
        "UPLOAD_TIMEOUT_SECONDS",
        "EXPORT_TIMEOUT_SECONDS",
        "PROGRESS_INTERVAL_SECONDS",
    )
    @classmethod
    def must_be_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
