import logging

from agentloop_core.config import AgentLoopConfig


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Set the level of the ``agentloop_core`` logger.

    Args:
        level: Level name or number. Defaults to ``AgentLoopConfig().log_level``.

    Returns:
        The package logger.
    """
    logger = logging.getLogger("agentloop_core")
    logger.setLevel(level if level is not None else AgentLoopConfig().log_level.upper())
    return logger
