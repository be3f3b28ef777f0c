"""
Centralized logging configuration.

Logs go to stderr: stdout carries the MCP stdio transport.
"""

import logging
import sys

from whatsapp_indexer.config import IndexerConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: IndexerConfig | None = None, level: str | None = None) -> None:
    """
    Configure the root logger once for the process.

    Args:
        config: IndexerConfig instance, read from the environment if None
        level: Explicit level name, overrides config.log_level
    """
    if level is None:
        cfg = config or IndexerConfig.from_env()
        level = cfg.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
