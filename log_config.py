from __future__ import annotations

import logging
from typing import Optional

from volume import ConfigurationError

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# third-party loggers that are noise below WARNING during a run
QUIET_LOGGERS = ('numba',)


def configure_logging(log_level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """Root logging for the object_finder / plot_regions drivers.

    Console always, plus `log_file` (UTF-8) when given. Library modules only
    call logging.getLogger(__name__); this is the one place handlers are set.
    """
    level = logging.getLevelName(str(log_level).upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"unknown log level '{log_level}'")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
