# ./config.py
import os
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import yaml

from errors import ConfigError

logger = logging.getLogger(__name__)

# --- HTTP сервер метрик ---
METRICS_HOST = os.getenv('METRICS_HOST', '0.0.0.0')
METRICS_PORT = int(os.getenv('METRICS_PORT', '2112'))

# --- Загрузка CRL ---
# Общий лимит на запрос (соединение + передача), в секундах
FETCH_TIMEOUT = float(os.getenv('FETCH_TIMEOUT', '30'))

# Проверка TLS-сертификатов при загрузке CRL
# Можно отключить в средах с нестандартными цепочками: VERIFY_TLS=false
VERIFY_TLS = os.getenv('VERIFY_TLS', 'true').lower() == 'true'

USER_AGENT = os.getenv('USER_AGENT', 'crl-monitor/1.0')

# --- Расписание ---
# Интервал опроса точек распространения по умолчанию (в секундах)
DEFAULT_REFRESH_INTERVAL = 60 * 60

# Период проверки файла конфигурации на изменения (в секундах)
CONFIG_POLL_INTERVAL = float(os.getenv('CONFIG_POLL_INTERVAL', '2'))

# --- Логирование ---
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FILE = os.getenv('LOG_FILE', '')


@dataclass(frozen=True)
class MonitorConfig:
    """Снимок конфигурации: упорядоченный список точек распространения CRL."""
    crls: Tuple[str, ...] = ()
    source: str = ''
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def parse_config_document(data, source=''):
    """Проверка YAML-документа и построение MonitorConfig."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: ожидается YAML-словарь, получено {type(data).__name__}")

    raw_crls = data.get('crls')
    if raw_crls is None:
        raw_crls = []
    if not isinstance(raw_crls, list):
        raise ConfigError(f"{source}: поле 'crls' должно быть списком строк")

    crls = []
    seen = set()
    for index, url in enumerate(raw_crls):
        if not isinstance(url, str) or not url:
            raise ConfigError(f"{source}: crls[{index}] должен быть непустой строкой, получено {url!r}")
        # URL используется как есть: без нормализации регистра и пробелов
        if url in seen:
            logger.warning(f"Повторяющийся URL CRL в конфигурации пропущен: {url}")
            continue
        seen.add(url)
        crls.append(url)

    return MonitorConfig(crls=tuple(crls), source=source)


def file_signature(st):
    return (st.st_mtime_ns, st.st_size, st.st_ino)


class ConfigStore:
    """
    Хранилище текущей конфигурации.
    Снимок заменяется целиком под блокировкой, читатели никогда не видят
    частично загруженный список URL.
    """

    def __init__(self, path):
        self.path = str(path)
        self._lock = threading.Lock()
        self._current: Optional[MonitorConfig] = None
        self._subscribers: List[Callable[[MonitorConfig], None]] = []
        # Подпись файла на момент последнего чтения, по ней ConfigWatcher видит изменения
        self.signature = None

    @classmethod
    def load(cls, path):
        """Создание хранилища с первичной загрузкой. ConfigError здесь фатален для вызывающего."""
        store = cls(path)
        store.reload()
        return store

    def current(self) -> MonitorConfig:
        with self._lock:
            config = self._current
        if config is None:
            raise ConfigError(f"конфигурация {self.path} ещё не загружена")
        return config

    def subscribe(self, callback: Callable[[MonitorConfig], None]):
        """Регистрирует обработчик, вызываемый после каждой успешной перезагрузки."""
        with self._lock:
            self._subscribers.append(callback)

    def reload(self) -> MonitorConfig:
        """
        Перечитывает файл и атомарно заменяет снимок.
        При ошибке прежний снимок сохраняется, исключение ConfigError пробрасывается.
        """
        try:
            # Байты отдаются PyYAML целиком: ошибки кодировки приходят как yaml.ReaderError
            with open(self.path, 'rb') as f:
                self.signature = file_signature(os.fstat(f.fileno()))
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"не удалось прочитать конфигурацию {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"ошибка разбора YAML {self.path}: {e}") from e

        config = parse_config_document(data, source=self.path)

        with self._lock:
            self._current = config
            subscribers = list(self._subscribers)

        logger.info(f"Конфигурация загружена из {self.path}: {len(config.crls)} URL CRL")

        for callback in subscribers:
            try:
                callback(config)
            except Exception as e:
                logger.error(f"Ошибка обработчика перезагрузки конфигурации: {e}", exc_info=True)
        return config


class ConfigWatcher:
    """Следит за файлом конфигурации и перезагружает ConfigStore при изменении."""

    def __init__(self, store: ConfigStore, interval: float = CONFIG_POLL_INTERVAL, on_result=None):
        self.store = store
        self.interval = interval
        # on_result(ok: bool) используется для метрик перезагрузок
        self.on_result = on_result
        self._stop = threading.Event()
        self._thread = None

    def _stat(self):
        try:
            return file_signature(os.stat(self.store.path))
        except OSError:
            return None

    def check(self):
        """Одна проверка файла. Возвращает True, если была попытка перезагрузки."""
        signature = self._stat()
        if signature is None:
            logger.warning(f"Ошибка наблюдения: файл конфигурации {self.store.path} недоступен")
            return False
        if signature == self.store.signature:
            return False

        logger.info("Конфигурация изменена, перезагрузка ...")
        try:
            self.store.reload()
        except ConfigError as e:
            logger.error(f"Перезагрузка конфигурации не удалась, используется прежняя: {e}")
            if self.on_result:
                self.on_result(False)
            return True
        if self.on_result:
            self.on_result(True)
        return True

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.check()
            except Exception as e:
                logger.error(f"Ошибка в цикле наблюдения за конфигурацией: {e}", exc_info=True)

    def start(self):
        self._thread = threading.Thread(target=self._run, name='ConfigWatcher', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
