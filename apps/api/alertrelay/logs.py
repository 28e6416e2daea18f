from __future__ import annotations

import logging

import structlog

from alertrelay.config import Settings


def configure_logging(cfg: Settings) -> None:
  level = logging.getLevelName(cfg.log_level.upper())
  if not isinstance(level, int):
    level = logging.INFO
  processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
  ]
  if cfg.log_json:
    processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
  else:
    processors.append(structlog.dev.ConsoleRenderer())
  structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(level),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
  )
