import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

from . import config

FIELDS = '%(asctime)s %(levelname)s %(name)s %(message)s'


def setup_logger(level: Optional[str] = None, json: Optional[bool] = None):
    """Attach a stream handler to the root logger.

    Records are rendered as JSON unless ``LOG_JSON`` is off.
    """
    logHandler = logging.StreamHandler()
    use_json = config.LOG_JSON if json is None else json
    if use_json:
        formatter = jsonlogger.JsonFormatter(
            FIELDS,
            rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
        )
    else:
        formatter = logging.Formatter(FIELDS)
    logHandler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.addHandler(logHandler)
    logger.setLevel(level or config.LOG_LEVEL)
    return logHandler
