# flow_logging.py

import logging
import os
import time

# --- Logging Setup ---
logger = logging.getLogger("Flows")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
logger.propagate = False # Prevent duplicate logs if root logger is configured


def get_logger(component: str) -> logging.Logger:
    """Child logger of 'Flows' so every component shares the same handler."""
    return logger.getChild(component)


def configure_logging(debug: bool):
    """Switch the Flows logger tree between INFO and DEBUG."""
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)
    logger.debug(f"Flows log level set to {logging.getLevelName(level)}.")
