# ./utils.py
"""
Общие утилиты для проекта CRL Monitor
"""
import os
import re
import logging

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def parse_duration(value) -> float:
    """
    Разбор длительности вида "1h", "30m", "1h30m", "45s", "500ms" в секунды.
    Число без единиц трактуется как секунды.
    """
    text = str(value).strip()
    if not text:
        raise ValueError("пустая длительность")
    try:
        seconds = float(text)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos != len(text):
            raise ValueError(f"неверная длительность: {value!r}")
    if seconds <= 0:
        raise ValueError(f"длительность должна быть положительной: {value!r}")
    return seconds


def setup_logging(level='INFO', log_file=None):
    """Настройка логирования для процесса"""
    handlers = [logging.StreamHandler()]
    if log_file:
        # Создаем директорию для логов если не существует
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
