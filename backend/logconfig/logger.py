from loguru import logger
import sys
import os
from pathlib import Path
import contextvars
from dotenv import load_dotenv

load_dotenv()
# ----------------------------------------------------
# Environment & Paths
# ----------------------------------------------------
ENV = os.getenv("APP_ENV", "development")
APP_NAME = os.getenv("APP_NAME", "MigrationKit")
LOG_LEVEL = os.getenv("LOG_LEVEL") or ("DEBUG" if ENV == "development" else "INFO")

# File sinks are only attached when a log directory is configured; the JIT host
# and the console runner both run fine with console output alone.
LOG_DIR = Path(os.environ["LOG_DIR"]) if os.getenv("LOG_DIR") else None

# ----------------------------------------------------
# Context Management (Async + Threads safe)
# ----------------------------------------------------
env_var = contextvars.ContextVar("env", default=ENV)
app_name_var = contextvars.ContextVar("app_name", default=APP_NAME)
extra_context_var = contextvars.ContextVar("extra", default={})


class ContextFilter:
    """Inject environment, app name, and run/request context into logs."""
    def set_context(self, **kwargs):
        extra_context_var.set(kwargs)

    def clear_context(self):
        extra_context_var.set({})

    def __call__(self, record):
        record["extra"]["env"] = env_var.get()
        record["extra"]["app_name"] = app_name_var.get()
        record["extra"].update(extra_context_var.get())
        return record


context_filter = ContextFilter()
logger.configure(patcher=context_filter)

# ----------------------------------------------------
# Formats
# ----------------------------------------------------
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[env]}</magenta> | <blue>{extra[app_name]}</blue> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} | env={extra[env]} | app={extra[app_name]} | {message}"
)

# ----------------------------------------------------
# Handlers
# ----------------------------------------------------
logger.remove()

# Console logging goes to stderr; stdout carries command output.
_console_sink_id = logger.add(
    sys.stderr,
    colorize=True,
    format=CONSOLE_FORMAT,
    level=LOG_LEVEL,
    backtrace=True,
    diagnose=False,
)

if LOG_DIR is not None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    # Migration run log
    logger.add(
        LOG_DIR / "migration.log",
        format=FILE_FORMAT,
        level="INFO",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        enqueue=True
    )

    # Error log
    logger.add(
        LOG_DIR / "error.log",
        format=FILE_FORMAT,
        level="ERROR",
        rotation="5 MB",
        retention="60 days",
        compression="zip",
        enqueue=True
    )

    # Structured JSON logs
    logger.add(
        LOG_DIR / "structured.json",
        serialize=True,
        level="DEBUG" if ENV == "development" else "INFO",
        rotation="10 MB",
        retention="15 days",
        compression="gz",
        enqueue=True,
        delay=True
    )

# ----------------------------------------------------
# Exception Handling
# ----------------------------------------------------
def log_exceptions(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.opt(exception=(exc_type, exc_value, exc_traceback)).error("Unhandled exception")


sys.excepthook = log_exceptions


def asyncio_exception_handler(loop, context):
    msg = context.get("exception", context["message"])
    logger.error(f"Unhandled async exception: {msg}")


def set_verbose(enabled: bool) -> None:
    """Re-attach the console sink at DEBUG (or the env default) level."""
    global _console_sink_id
    logger.remove(_console_sink_id)
    _console_sink_id = logger.add(
        sys.stderr,
        colorize=True,
        format=CONSOLE_FORMAT,
        level="DEBUG" if enabled else LOG_LEVEL,
        backtrace=True,
        diagnose=False,
    )

# ----------------------------------------------------
# Export
# ----------------------------------------------------
def get_logger():
    return logger


def get_context_filter():
    return context_filter
