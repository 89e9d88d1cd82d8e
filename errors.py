# ./errors.py
"""
Иерархия исключений CRL Monitor
"""


class CRLMonitorError(Exception):
    """Базовое исключение монитора."""


class ConfigError(CRLMonitorError):
    """Конфигурация не найдена, не читается или не проходит проверку."""


class FetchError(CRLMonitorError):
    """Ошибка загрузки CRL с точки распространения."""

    TIMEOUT = 'timeout'
    TRANSPORT = 'transport'

    def __init__(self, url, kind, detail=''):
        self.url = url
        self.kind = kind
        self.detail = detail
        super().__init__(f"ошибка загрузки CRL {url} ({kind}): {detail}")


class DecodeError(CRLMonitorError):
    """Загруженные данные не удалось разобрать как CRL."""

    def __init__(self, detail):
        self.detail = detail
        super().__init__(detail)
