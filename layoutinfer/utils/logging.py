import os
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Union

__all__ = [
    "Color", "LOG_LEVELS", "debug", "info", "warn", "error",
    "set_log_level", "get_log_level", "log_level_scope",
]

# https://no-color.org
_USE_COLOR = 'NO_COLOR' not in os.environ

class Color(Enum):
    RED            = '\033[31m'
    GREEN          = '\033[32m'
    YELLOW         = '\033[33m'
    MAGENTA        = '\033[35m'
    CYAN           = '\033[36m'
    RESET          = '\033[0m'

    def __str__(self):
        return self.value if _USE_COLOR else ''

    def __call__(self, s):
        return str(self) + str(s) + str(Color.RESET)

LOG_LEVELS = {
    'debug': 0,
    'info':  1,
    'warn':  2,
    'error': 3,
}

_LABELS = {
    'debug': (Color.CYAN, 'DEBUG:'),
    'info':  (Color.GREEN, 'INFO:'),
    'warn':  (Color.YELLOW, 'WARNING:'),
    'error': (Color.RED, 'ERROR:'),
}

log_level = LOG_LEVELS['info']

def _to_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        if level not in LOG_LEVELS:
            raise ValueError(
                f'Unknown verbosity: {level}. Choose one of {list(LOG_LEVELS.keys())}.'
            )
        return LOG_LEVELS[level]
    return int(level)

def set_log_level(level: Union[str, int]):
    global log_level
    log_level = _to_level(level)

def get_log_level():
    return log_level

@contextmanager
def log_level_scope(level: Union[str, int]) -> Iterator[None]:
    """Temporarily switch the verbosity, restoring the previous one on exit."""
    previous = log_level
    set_log_level(level)
    try:
        yield
    finally:
        set_log_level(previous)

def _emit(level: str, args, prefix: bool):
    if log_level > LOG_LEVELS[level]:
        return
    if prefix and any(args):
        color, label = _LABELS[level]
        print(color(label), *args)
    else:
        print(*args)

def debug(*args, prefix=False):
    _emit('debug', args, prefix)

def info(*args, prefix=False):
    _emit('info', args, prefix)

def warn(*args, prefix=True):
    _emit('warn', args, prefix)

def error(*args, prefix=True):
    _emit('error', args, prefix)
