"""Process entry points and logging setup."""

import logging
import sys

import structlog

from attune.config import settings


def configure_logging(level: str | None = None, *, json_output: bool | None = None) -> None:
    """Configure structured logging.

    Args:
        level: Log level name; defaults to ``settings.log_level``.
        json_output: Force JSON (True) or console (False) rendering.
            Defaults to console on a tty and JSON otherwise.
    """
    level = (level or settings.log_level).upper()
    if json_output is None:
        json_output = not sys.stderr.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
            if json_output
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def run_worker() -> None:
    """Run the arq job worker in the foreground."""
    from arq import run_worker as arq_run_worker

    from attune.jobs.worker import WorkerSettings

    configure_logging()
    log = structlog.get_logger()
    log.info(
        "Starting Attune job worker",
        version="0.1.0",
        environment=settings.environment,
        redis_host=settings.redis_host,
        redis_db=settings.redis_jobs_db,
    )
    arq_run_worker(WorkerSettings)  # type: ignore[arg-type]


def main() -> None:
    """Main entry point for the worker process."""
    run_worker()


if __name__ == "__main__":
    main()
