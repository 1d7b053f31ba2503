import logging

logger = logging.getLogger("dmarcfetch")
logger.addHandler(logging.NullHandler())
