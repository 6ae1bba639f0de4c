"""
Structured logging for the Deal Workflow engine.

structlog is configured once at import. Events are dotted names
(`om.generate.started`, `gate.buyer_authorized`) and carry the workflow
context bound with `logging_context`: trace, deal, actor and OM version ids.
Set LOG_JSON=true for JSON lines in production.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from .config import config

CONTEXT_KEYS = ('trace_id', 'deal_id', 'actor_id', 'version_id')

_workflow_context: ContextVar[dict[str, str]] = ContextVar('workflow_context', default={})


def current_context() -> dict[str, str]:
    """Copy of the ids bound by the innermost logging_context."""
    return dict(_workflow_context.get())


def get_trace_id() -> str | None:
    return _workflow_context.get().get('trace_id')


def get_deal_id() -> str | None:
    return _workflow_context.get().get('deal_id')


def get_actor_id() -> str | None:
    return _workflow_context.get().get('actor_id')


def add_context_info(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Processor: fill workflow ids into the event unless the call site passed them."""
    for key, value in _workflow_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


@contextmanager
def logging_context(**ids: str | None) -> Iterator[dict[str, str]]:
    """
    Bind workflow ids for every log event emitted inside the block.

    Nested blocks inherit the outer ids and may override them. Unknown keys
    raise TypeError; None values are ignored.

    Usage:
        with logging_context(deal_id=deal.id, actor_id=actor.id):
            logger.info('om.generate.started')
    """
    unknown = set(ids) - set(CONTEXT_KEYS)
    if unknown:
        raise TypeError(f'Unknown logging context keys: {sorted(unknown)}')

    bound = {**_workflow_context.get(), **{k: v for k, v in ids.items() if v is not None}}
    token = _workflow_context.set(bound)
    try:
        yield bound
    finally:
        _workflow_context.reset(token)


def configure_logging(json_output: bool | None = None, log_level: str | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        json_output: JSON lines when True, colored console otherwise
                     (defaults to config.LOG_JSON)
        log_level: Minimum level name (defaults to config.LOG_LEVEL)
    """
    if json_output is None:
        json_output = config.LOG_JSON
    level = logging.getLevelName((log_level or config.LOG_LEVEL).upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=level)

    renderer: list[Processor] = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_context_info,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt='iso', utc=True),
            structlog.processors.StackInfoRenderer(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class StageTimer:
    """
    Millisecond timings for the named stages of one operation.

        timer = StageTimer()
        with timer.stage('facts'):
            ...
        logger.info('om.generate.completed', **timer.log_fields())
    """

    def __init__(self):
        self._started = time.perf_counter()
        self.stages: dict[str, float] = {}

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        begin = time.perf_counter()
        try:
            yield
        finally:
            # repeated stage names accumulate
            self.stages[name] = self.stages.get(name, 0.0) + (time.perf_counter() - begin) * 1000

    @property
    def total_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    def log_fields(self) -> dict[str, Any]:
        """Flat `<stage>_ms` fields plus `total_ms`."""
        fields = {f'{name}_ms': round(ms, 2) for name, ms in self.stages.items()}
        fields['total_ms'] = round(self.total_ms, 2)
        return fields


configure_logging()
