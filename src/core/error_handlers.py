"""전역 예외 핸들러.

모든 에러 응답을 {"error_code": ..., "message": ...} 한 가지 형식으로 맞춘다.
- AppException 계열: 예외 클래스의 status_code / error_code 그대로
- 요청 검증 실패(RequestValidationError): 422 VALIDATION_ERROR, 첫 번째 오류를 message로
main.py에서 app.add_exception_handler()로 등록한다.
"""

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from core.exceptions import AppException, CollaboratorError


def _error_response(status_code: int, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error_code": error_code, "message": message},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    if isinstance(exc, CollaboratorError):
        # 리터치/내보내기 중 외부 서비스 실패. 재시도 가능 여부는 error_code로 구분된다
        logger.warning(f"{request.method} {request.url.path} -> {exc.error_code}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.error_code}: {exc.message}")
    return _error_response(exc.status_code, exc.error_code, exc.message)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    reason = first.get("msg", "요청 형식이 올바르지 않습니다")
    message = f"{field}: {reason}" if field else reason
    logger.debug(f"{request.method} {request.url.path} -> VALIDATION_ERROR ({len(errors)}건): {message}")
    return _error_response(422, "VALIDATION_ERROR", message)
