"""Centralised logging configuration used by the StatsD exporter.

This module builds a single Loguru logger that:
  • Streams to stdout with pretty formatting
  • Ships WARNING+ records to Datadog Logs when DD_API_KEY is set
  • Intercepts the standard‑library ``logging`` calls so host applications
    that still use ``logging.getLogger`` end up in the same sinks

Nothing is configured on import. Package modules log through Loguru's
shared ``logger``; a standalone process (or a host that wants this setup)
calls ``init_logging()`` once at startup. It replaces existing Loguru sinks
and root ``logging`` handlers.
"""

from __future__ import annotations

import inspect
import logging
import os
import sys

from datadog_api_client.v2 import ApiClient, Configuration
from datadog_api_client.v2.api.logs_api import LogsApi
from datadog_api_client.v2.model.content_encoding import ContentEncoding
from datadog_api_client.v2.model.http_log import HTTPLog
from datadog_api_client.v2.model.http_log_item import HTTPLogItem
from loguru import logger as loguru_logger

from statsd_exporter.core.config import settings


class InterceptHandler(logging.Handler):
    """Routes standard‑library *logging* calls into Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401
        try:
            level: str | int = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that called into ``logging``
        frame, depth = inspect.currentframe(), 0
        while frame:
            if depth > 0 and frame.f_code.co_filename != logging.__file__:
                break
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


class DatadogLogSink:
    """Loguru sink that submits each record to Datadog Logs over HTTPS.

    The Datadog client reads DD_SITE / DD_API_KEY from the environment.
    """

    def __init__(self, service: str, environment: str) -> None:
        self.service = service
        self.environment = environment
        self.hostname = os.getenv("HOSTNAME", "unknown")
        self.api_instance = LogsApi(ApiClient(Configuration()))

    def __call__(self, message) -> None:
        record = message.record
        level = record["level"].name

        extras = {key: str(value) for key, value in record["extra"].items()}

        item = HTTPLogItem(
            ddsource="loguru",
            ddtags=f"level:{level},env:{self.environment}",
            hostname=self.hostname,
            message=record["message"],
            service=self.service,
            status=level,
            **extras,
        )
        self.api_instance.submit_log(
            content_encoding=ContentEncoding.DEFLATE, body=HTTPLog([item])
        )


def init_logging():  # noqa: D401
    """Initialise Loguru *once* and return the configured logger."""

    if getattr(init_logging, "_configured", False):
        return loguru_logger

    loguru_logger.remove()

    loguru_logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS Z}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level> | <level>{extra}</level>",
        level=settings.log_level,
    )

    if os.getenv("DD_API_KEY"):
        loguru_logger.add(
            DatadogLogSink(settings.service_name, settings.environment),
            level=settings.log_level_datadog,
            catch=True,
        )

    # Let Loguru perform the level filtering for std-lib records
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    init_logging._configured = True  # type: ignore[attr-defined]
    return loguru_logger

