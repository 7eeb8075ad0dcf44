"""Logging helpers shared by the API, the CLI and the sync runner.

Sync jobs run as background tasks and can outlive the stdout they started
with (uvicorn reloads, a CLI piped into ``head``). SafeStreamHandler keeps
those jobs from dying on a closed stream. JobLogger tags records with the
job that produced them.
"""
import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty at INFO about every request they make
NOISY_LOGGERS = ("aiohttp", "httpx", "httpcore", "openai")

_CLOSED_STREAM_ERRORS = (BrokenPipeError, ValueError)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that drops records once its stream has gone away.

    BrokenPipeError (reader exited) and ValueError (write on a closed file)
    are swallowed; any other failure propagates as usual. File handlers on
    the same logger keep receiving the record either way.
    """

    def emit(self, record):
        try:
            super().emit(record)
        except _CLOSED_STREAM_ERRORS:
            pass


def quiet_noisy_loggers(level=logging.WARNING):
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def configure_safe_logging(level=logging.INFO):
    """Attach a SafeStreamHandler to the root logger, once.

    Repeated calls do not stack handlers. The root level is only ever made
    more verbose, never less: the openai SDK can leave it at WARNING after
    import, which would hide job progress in CLI runs.
    """
    root = logging.getLogger()
    if not any(isinstance(h, SafeStreamHandler) for h in root.handlers):
        handler = SafeStreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(level)
        root.addHandler(handler)
        if root.level == logging.NOTSET or root.level > level:
            root.setLevel(level)

    quiet_noisy_loggers()


class JobLogger(logging.LoggerAdapter):
    """Prefix log messages with the sync job they belong to.

    Usage:
        log = JobLogger(logger, job_id)
        log.info("Batch 1 complete")   # -> "[Sync <job_id>] Batch 1 complete"
    """

    def __init__(self, logger: logging.Logger, job_id: str):
        super().__init__(logger, {"job_id": job_id})

    def process(self, msg, kwargs):
        return f"[Sync {self.extra['job_id']}] {msg}", kwargs


def configure_file_logging(path, level=logging.INFO, max_bytes=10 * 1024 * 1024, backup_count=3):
    """Add a rotating file handler for ``path`` to the root logger, once per path.

    Background sync failures are only visible in the log, so the API keeps
    a file copy that survives a detached terminal.
    """
    path = os.fspath(path)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == os.path.abspath(path):
            return handler

    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)
    root.addHandler(handler)
    return handler
