import re
import sys
from loguru import logger
from mailsync.config import settings

# Token-looking values that must never reach a sink
_SECRET_PATTERNS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), r"\1***"),
    (re.compile(r"((?:access|refresh)_token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,&}]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"((?:token|validationToken|code|state|client_secret)=)[^&\s]+"), r"\1***"),
]


def redact(message: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def _redact_record(record):
    record["message"] = redact(record["message"])


def setup_logging():
    """Configure Loguru sinks for the API process and Celery workers."""
    logger.remove()

    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
               "<level>{level: <8}</level> | "
               "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
               "<level>{message}</level>",
        level=settings.log_level,
        colorize=True,
        backtrace=True,
        diagnose=settings.debug,
    )

    if settings.log_file:
        logger.add(
            settings.log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} | {message}",
            level=settings.log_level,
            rotation="500 MB",
            retention="10 days",
            compression="zip",
            backtrace=True,
            # Local variables may hold credentials
            diagnose=False,
        )

    return logger


logger.configure(extra={"name": "mailsync"}, patcher=_redact_record)


def get_logger(name: str = None):
    """Get a logger bound to a component name."""
    if name:
        return logger.bind(name=name)
    return logger
