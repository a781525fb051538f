import logging

from proxy_dispatch.options import Options

LOGGER_NAME = "uvicorn.error.proxy"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "silent": logging.CRITICAL + 1,
}


def get_instance() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def configure_logger(options: Options) -> logging.Logger:
    """
    Return the logger a proxy mount should use.

    ``log_level`` sets the threshold of the default logger; ``log_provider``
    receives that logger and may hand back a replacement with the same
    ``debug``/``info``/``warning``/``error`` interface.
    """
    logger = get_instance()
    logger.setLevel(_LEVELS[options.log_level])

    if options.log_provider is not None:
        logger = options.log_provider(logger)
    return logger


def get_arrow(original_path, new_path, original_target, new_target) -> str:
    """
    Marker for the debug summary line:
    ``->`` nothing changed, ``~>`` path changed, ``=>`` target changed,
    ``≈>`` both changed.
    """
    arrow = ["-", ">"]

    is_new_path = original_path != new_path
    is_new_target = str(original_target) != str(new_target)

    if is_new_path and not is_new_target:
        arrow[0] = "~"
    elif not is_new_path and is_new_target:
        arrow[0] = "="
    elif is_new_path and is_new_target:
        arrow[0] = "≈"

    return "".join(arrow)
