import time
import uuid

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

SLOW_THRESHOLD_MS = 500

# UI가 주기적으로 폴링하는 경로. INFO로 남기면 로그가 폴링으로 도배된다.
QUIET_SUFFIXES = ("/progress", "/logs", "/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """모든 HTTP 요청을 로깅하는 미들웨어.

    기록 항목: 요청 ID, 메서드, 경로, 클라이언트 IP, 상태코드, 처리시간(ms)
    처리시간이 500ms를 초과하면 WARNING, 폴링 경로는 DEBUG로 기록.
    요청 ID는 X-Request-ID 응답 헤더로 돌려주고, 요청 처리 중 찍히는 로그에도 붙는다.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        start = time.perf_counter()

        with logger.contextualize(request_id=request_id):
            response = await call_next(request)

        elapsed_ms = (time.perf_counter() - start) * 1000
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        line = f"[{request_id}] {request.method} {path} | {client_ip} | {response.status_code} | {elapsed_ms:.0f}ms"

        if elapsed_ms > SLOW_THRESHOLD_MS:
            logger.warning(f"{line} (slow)")
        elif path.endswith(QUIET_SUFFIXES):
            logger.debug(line)
        else:
            logger.info(line)

        response.headers["X-Request-ID"] = request_id
        return response
