# ProjectBot package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("PROJECTBOT_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("projectbot")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[PROJECTBOT][%(levelname)s] %(name)s %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    delivery_level_name = (os.getenv("PROJECTBOT_DELIVERY_LOG_LEVEL") or level_name).upper()
    logging.getLogger("projectbot.delivery").setLevel(getattr(logging, delivery_level_name, level))


_configure_logging()
