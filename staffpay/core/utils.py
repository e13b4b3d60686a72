import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from staffpay.core.config import Settings, settings as default_settings

def mkdir_safe(path: str):
    Path(path).mkdir(parents=True, exist_ok=True)

def setup_logging(tenant_id: str = "system", *, log_level: str = None, config: Optional[Settings] = None):
    config = config or default_settings
    logger_name = f"{config.APP_NAME}.{tenant_id}"
    logger = logging.getLogger(logger_name)
    if logger.handlers:
        return logger
    level = log_level or config.LOG_LEVEL
    logger.setLevel(getattr(logging, level))
    mkdir_safe(config.AUDIT_LOG_PATH)
    logfile = Path(config.AUDIT_LOG_PATH) / f"{tenant_id}.log"
    handler = RotatingFileHandler(str(logfile), maxBytes=10_000_000, backupCount=5)
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    if os.getenv("DEV", "").lower() in ("1","true","yes"):
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        logger.addHandler(ch)
    logger.propagate = False
    return logger
