"""
Модуль для конфигурации логирования.

Один формат для всех логгеров портала; уровень задается числом или именем
(LOG_LEVEL=DEBUG в окружении).
"""

import logging
import sys

LOG_FORMAT = (
    "%(asctime)s - [%(levelname)s] - %(name)s - "
    "(%(filename)s).%(funcName)s(%(lineno)d) - %(message)s"
)

NOISY_LOGGERS = ("urllib3", "requests")


def resolve_level(level: int | str) -> int:
    """'debug', 'INFO' или число -> числовой уровень; неизвестное имя дает INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: int | str = logging.INFO) -> None:
    """
    Настраивает корневой логгер с выводом в stdout.

    Повторный вызов заменяет ранее установленные обработчики.
    """
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=resolve_level(level), handlers=[stdout_handler], force=True)

    # Сетевые библиотеки слишком разговорчивы на уровне INFO
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
