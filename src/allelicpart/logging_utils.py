import logging
from pathlib import Path
from typing import Iterable, Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("__cvxpy__", "cvxpy", "numba")


def _as_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"Unknown log level: {level!r}")
        return value
    return int(level)


def init_logging(
    logfile: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """
    Send records to stderr and, when ``logfile`` is given, to that file
    (overwritten). Handlers left on the root logger by a previous command are
    replaced; ``quiet`` loggers only pass warnings and above.
    """
    level = _as_level(level)
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
