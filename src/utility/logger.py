import sys

from loguru import logger


def setup_logger(level: str = "INFO", log_file: str | None = None):
    """Loguru 기본 설정. 앱 시작 시 한 번 호출.

    log_file을 주면 같은 포맷으로 파일에도 남긴다 (1 MB 단위 회전, 7일 보관).
    """
    fmt = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )
    logger.remove()
    logger.add(sys.stderr, format=fmt, level=level.upper())
    if log_file:
        logger.add(
            log_file,
            format=fmt,
            level=level.upper(),
            rotation="1 MB",
            retention="7 days",
            colorize=False,
        )
    return logger
