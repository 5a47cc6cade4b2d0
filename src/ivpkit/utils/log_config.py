import logging
import sys

_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level=logging.INFO, format_string=_FORMAT):
    """Attach a stdout handler to the ``ivpkit`` logger and set its level.

    Calling it again replaces the handler, so the level and format can be
    changed at any time without duplicating output. The root logger is left
    untouched.
    """
    package_logger = logging.getLogger("ivpkit")
    for handler in list(package_logger.handlers):
        if getattr(handler, "_ivpkit_handler", False):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(format_string))
    handler._ivpkit_handler = True
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False
    return package_logger


# Setup logging when this module is imported
logger = setup_logging()
