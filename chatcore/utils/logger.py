import logging
import os

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logger(name='chatcore', level=None, log_dir=None):
    """Set up a logger with console and file output.

    Creates a logger that writes:
    - the configured level (INFO by default) and above to console
    - DEBUG and above to file (<log_dir>/server.log)

    Calling it twice for the same name returns the already configured
    logger instead of stacking another pair of handlers.

    Args:
        name (str, optional): Logger name. Defaults to 'chatcore'
        level (str, optional): Console level name. Defaults to CHAT_LOG_LEVEL or INFO
        log_dir (str, optional): Directory for server.log. Defaults to CHAT_LOG_DIR
            or the package's logs directory

    Returns:
        logging.Logger: Configured logger instance

    Side Effects:
        - Creates logs directory if it doesn't exist
        - Creates/appends to server.log file
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    level = (level or os.getenv('CHAT_LOG_LEVEL') or 'INFO').upper()
    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(getattr(logging, level, logging.INFO))

    # File handler - ensure log directory exists
    log_dir = log_dir or os.getenv('CHAT_LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(__file__)), 'logs')
    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_dir, 'server.log'))
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    # Children of "chatcore" would otherwise log twice through the root logger
    logger.propagate = False

    return logger


def configure_logging(level=None, log_dir=None, root='chatcore'):
    """Re-point loggers created by setup_logger at runtime settings.

    Module loggers are set up at import time, before any settings are loaded,
    so the server calls this once at startup. Console handlers of ``root`` and
    its children get the new level and file handlers are reopened on
    ``<log_dir>/server.log``. Arguments left as None keep the current value.

    Args:
        level (str, optional): Console level name, e.g. "DEBUG"
        log_dir (str, optional): Directory for server.log
        root (str, optional): Name of the logger tree to reconfigure
    """
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    console_level = getattr(logging, level.upper(), None) if level else None
    names = [n for n in list(logging.Logger.manager.loggerDict) if n == root or n.startswith(root + '.')]
    for name in names:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler):
                if not log_dir:
                    continue
                file_handler = logging.FileHandler(os.path.join(log_dir, 'server.log'))
                file_handler.setFormatter(handler.formatter)
                file_handler.setLevel(handler.level)
                logger.removeHandler(handler)
                handler.close()
                logger.addHandler(file_handler)
            elif isinstance(handler, logging.StreamHandler) and console_level is not None:
                handler.setLevel(console_level)
