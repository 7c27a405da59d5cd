"""엔진이 호출하는 외부 협력자 인터페이스.

실제 구현(네트워크, 오브젝트 스토리지, AI 모델, DAM 프로토콜)은 엔진 밖의 일이다.
로컬 개발용 구현은 processor/local_backend.py에 있다.

협력자는 실패를 TransientError(자동 재시도 대상) 또는
PermanentError(사용자 조치 필요)로 알린다.
"""

from typing import Any, Protocol

from core.exceptions import CollaboratorError, PermanentError, TransientError
from model.export import DamConnection
from model.image import ErrorKind, ImageError

__all__ = [
    "AIProcessor",
    "ArchiveBuilder",
    "DamClient",
    "DamClientFactory",
    "PermanentError",
    "Storage",
    "TransientError",
    "to_image_error",
]


class Storage(Protocol):
    async def put_original(self, data: bytes, filename: str | None = None) -> str: ...

    async def get(self, ref: str) -> bytes: ...


class AIProcessor(Protocol):
    async def process(self, original_ref: str, instructions: str) -> str: ...

    async def retouch(self, processed_ref: str, instruction: str) -> str: ...


class DamClient(Protocol):
    async def upload(self, ref: str, target_path: str, metadata: dict[str, Any]) -> str: ...


class DamClientFactory(Protocol):
    def __call__(self, connection: DamConnection) -> DamClient: ...


class ArchiveBuilder(Protocol):
    async def build(self, refs: list[str], summary: str | None) -> str: ...


def to_image_error(exc: BaseException, attempts: int = 1) -> ImageError:
    """협력자 예외를 레코드에 남길 ImageError로 분류한다.

    타임아웃은 일시적 실패, 분류되지 않은 예외는 영구 실패로 본다.
    """
    if isinstance(exc, CollaboratorError):
        kind = ErrorKind.TRANSIENT if exc.transient else ErrorKind.PERMANENT
        return ImageError(kind=kind, message=exc.message, attempts=attempts)
    if isinstance(exc, TimeoutError):
        return ImageError(kind=ErrorKind.TRANSIENT, message="응답 대기 시간을 초과했습니다", attempts=attempts)
    return ImageError(
        kind=ErrorKind.PERMANENT,
        message=str(exc) or type(exc).__name__,
        attempts=attempts,
    )
