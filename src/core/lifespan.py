from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from core.config import settings
from processor.local_backend import (
    LocalStorage,
    PillowProcessor,
    ZipArchiveBuilder,
    filesystem_dam_factory,
)
from service.workflow import Workflow
from utility.logger import setup_logger


def build_workflow() -> tuple[Workflow, PillowProcessor, ZipArchiveBuilder]:
    """로컬 협력자로 Workflow를 조립한다. 종료 시 닫아야 하는 processor와
    다운로드 라우트가 쓰는 archive builder도 함께 돌려준다."""
    storage = LocalStorage(settings.UPLOAD_DIR)
    processor = PillowProcessor(storage, workers=settings.PROCESSING_POOL_SIZE)
    archives = ZipArchiveBuilder(storage, settings.OUTPUT_DIR)
    workflow = Workflow(
        storage=storage,
        processor=processor,
        archive_builder=archives,
        dam_client_factory=filesystem_dam_factory(settings.DAM_ROOT, storage),
        settings=settings,
    )
    return workflow, processor, archives


@asynccontextmanager
async def lifespan(app: FastAPI):
    # === 시작 ===
    setup_logger(settings.LOG_LEVEL, settings.LOG_FILE)
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(
        f"Processing pool={settings.PROCESSING_POOL_SIZE}, attempts={settings.MAX_ATTEMPTS}, "
        f"timeout={settings.PROCESS_TIMEOUT_SECONDS}s"
    )

    # 테스트가 미리 넣어 둔 Workflow가 있으면 그대로 쓴다
    processor = None
    if getattr(app.state, "workflow", None) is None:
        app.state.workflow, processor, app.state.archives = build_workflow()
        logger.info(f"Local storage ready ({settings.UPLOAD_DIR})")

    app.state.settings = settings

    yield

    # === 종료 ===
    logger.info("Shutting down, cancelling in-flight work")
    await app.state.workflow.shutdown()
    if processor is not None:
        processor.close()
        app.state.workflow = None
