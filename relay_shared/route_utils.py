import sys
from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """
    Replace loguru's default sink with a single stderr sink at `level`.
    Called once by the CLI before the server or the client starts.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
    )


def log_connection(event: str, client: str, extra: dict | None = None) -> None:
    """
    Single structured log entry for a connection lifecycle change.
    Writes: client, event, and any extra fields as key=value pairs.
    The websocket route calls this on connect, on reject and on disconnect.
    """
    log_str = f"client={client} event={event}"
    for k, v in (extra or {}).items():
        log_str += f" {k}={v}"
    logger.info(log_str)
