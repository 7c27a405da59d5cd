"""앱 전역 커스텀 예외 클래스.

AppException을 상속하면 전역 핸들러(error_handlers.py)가 자동으로
{"error_code": "...", "message": "..."} 형식의 JSON 응답을 생성한다.

분류:
- InvalidInput: 요청 데이터가 잘못됨 (호출자 책임, 재시도 안 함)
- NotFound: 존재하지 않는 배치/이미지 참조
- Conflict: 같은 대상에 대한 작업이 이미 진행 중
- InvalidState: 상태 전제조건 위반 (예: 처리 완료 전 리터치)
- TransientError / PermanentError: 외부 협력자 실패 분류
"""


class AppException(Exception):
    """앱 전역 베이스 예외.

    서브클래스에서 status_code, error_code, message를 클래스 변수로 정의하면
    전역 핸들러가 해당 값을 읽어 HTTP 응답을 생성한다.
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    message: str = "서버 내부 오류가 발생했습니다"

    def __init__(self, message: str | None = None):
        if message:
            self.message = message
        super().__init__(self.message)


# --- 요청 검증 ---


class InvalidInput(AppException):
    status_code = 400
    error_code = "INVALID_INPUT"
    message = "요청 데이터가 올바르지 않습니다"


# --- 조회 ---


class NotFound(AppException):
    status_code = 404
    error_code = "NOT_FOUND"
    message = "대상을 찾을 수 없습니다"


class BatchNotFound(NotFound):
    error_code = "BATCH_NOT_FOUND"
    message = "배치를 찾을 수 없습니다"


class ImageNotFound(NotFound):
    error_code = "IMAGE_NOT_FOUND"
    message = "이미지를 찾을 수 없습니다"


# --- 상태/동시성 ---


class Conflict(AppException):
    status_code = 409
    error_code = "CONFLICT"
    message = "이미 진행 중인 작업이 있습니다"


class StaleBatch(Conflict):
    """리셋으로 폐기된 배치에 대한 결과가 늦게 도착한 경우."""

    error_code = "STALE_BATCH"
    message = "이미 교체된 배치에 대한 요청입니다"


class InvalidState(AppException):
    status_code = 409
    error_code = "INVALID_STATE"
    message = "현재 상태에서는 허용되지 않는 작업입니다"


# --- 외부 협력자 실패 ---


class CollaboratorError(AppException):
    """외부 협력자(스토리지, AI 처리기, DAM) 실패의 베이스.

    transient 여부로 자동 재시도 대상인지 구분한다.
    """

    transient: bool = False


class TransientError(CollaboratorError):
    status_code = 503
    error_code = "TRANSIENT_FAILURE"
    message = "일시적인 오류가 발생했습니다. 잠시 후 다시 시도하세요"
    transient = True


class PermanentError(CollaboratorError):
    status_code = 422
    error_code = "PERMANENT_FAILURE"
    message = "요청이 거부되었습니다"
