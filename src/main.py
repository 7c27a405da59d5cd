import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from core.config import settings
from core.error_handlers import app_exception_handler, validation_exception_handler
from core.exceptions import AppException
from core.lifespan import lifespan
from core.middleware import RequestLoggingMiddleware
from router.batch_router import router as batch_router
from router.export_router import router as export_router

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="배치 이미지 처리 워크플로: 업로드, AI 처리, 리터치, 내보내기",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

app.include_router(batch_router)
app.include_router(export_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        access_log=False,
    )
