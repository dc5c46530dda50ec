"""
Logging for digest runs.

Console output goes to stderr so stdout stays free for the JSON run summary.
Optional file output writes a daily-rotated ``catchup.log`` plus an
``errors.log`` that only receives ERROR and above. Nothing is configured on
import; the entry point calls :func:`setup_logging` once.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-36s | %(message)s'
ERROR_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'

# Module loggers and the level they run at regardless of the root level
COMPONENT_LEVELS = {
    'catchup.utils.date_parser': logging.INFO,
    'catchup.services.article_fetcher': logging.INFO,
    'catchup.services.email_service': logging.INFO,
    'catchup.services.storage_service': logging.INFO,
    'aiosqlite': logging.WARNING,
    'cssutils': logging.ERROR,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; phase metrics land under ``metrics``."""

    def format(self, record):
        entry: Dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
            'where': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        metrics = getattr(record, 'metrics', None)
        if metrics:
            entry['metrics'] = metrics
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Short coloured lines for interactive runs."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        # catchup.pipeline.batch_runner -> pipeline.batch_runner
        name = record.name[len('catchup.'):] if record.name.startswith('catchup.') else record.name
        line = f"{self.formatTime(record, '%H:%M:%S')} {record.levelname[0]} {name:<28} {record.getMessage()}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return f"{color}{line}{self.RESET}"


def _file_handlers(log_dir: Path, structured: bool):
    log_dir.mkdir(parents=True, exist_ok=True)

    run_log = logging.handlers.TimedRotatingFileHandler(
        log_dir / "catchup.log", when='midnight', backupCount=7, encoding='utf-8'
    )
    run_log.setLevel(logging.DEBUG)
    run_log.setFormatter(StructuredFormatter() if structured else logging.Formatter(FILE_FORMAT))

    error_log = logging.FileHandler(log_dir / "errors.log", encoding='utf-8')
    error_log.setLevel(logging.ERROR)
    error_log.setFormatter(logging.Formatter(ERROR_FORMAT))
    return [run_log, error_log]


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
    enable_file_logging: bool = True,
    enable_structured_logging: bool = False,
) -> None:
    """
    Configure the root logger for one process.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for ``catchup.log`` and ``errors.log``
        enable_file_logging: Also write to files under ``log_dir``
        enable_structured_logging: JSON lines instead of coloured text
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(StructuredFormatter() if enable_structured_logging else ColoredConsoleFormatter())
    root.addHandler(console)

    if enable_file_logging and log_dir:
        for handler in _file_handlers(Path(log_dir), enable_structured_logging):
            root.addHandler(handler)

    configure_pipeline_loggers(level)


def configure_pipeline_loggers(level: int) -> None:
    logging.getLogger('catchup.pipeline').setLevel(level)
    for name, component_level in COMPONENT_LEVELS.items():
        if level == logging.DEBUG and name.startswith('catchup.'):
            component_level = logging.DEBUG
        logging.getLogger(name).setLevel(component_level)


class PerformanceTracker:
    """
    Times one orchestrator phase.

    ``duration_ms`` is available after the ``with`` block; exceptions are
    logged and propagate.
    """

    def __init__(self, phase: str, logger: Optional[logging.Logger] = None):
        self.phase = phase
        self.logger = logger or logging.getLogger(__name__)
        self.duration_ms = 0.0
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.debug(f"⏱️ {self.phase} phase started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        if exc_type:
            self.logger.error(f"💥 {self.phase} phase failed after {self.duration_ms:.1f}ms: {exc_val}")
        else:
            self.logger.info(f"✅ {self.phase} phase done in {self.duration_ms:.1f}ms")
        return False


def log_pipeline_metrics(
    logger: logging.Logger,
    stage: str,
    input_count: int,
    output_count: int,
    duration_ms: float = 0.0,
    **extra: Any,
) -> None:
    """Log a phase's in/out counts; the structured formatter emits them as ``metrics``."""
    metrics = {
        'stage': stage,
        'in': input_count,
        'out': output_count,
        'duration_ms': round(duration_ms, 1),
        **extra,
    }
    logger.info(f"📊 {stage}: {input_count} → {output_count}", extra={'metrics': metrics})
