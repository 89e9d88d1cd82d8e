# ./crl_parser.py
import logging
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import requests
import urllib3
from cryptography import x509

from config import FETCH_TIMEOUT, USER_AGENT, VERIFY_TLS
from errors import DecodeError, FetchError

# Отключаем предупреждения urllib3 при отключенной проверке TLS
if not VERIFY_TLS:
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class CrlFacts:
    """Время выпуска (thisUpdate) и время истечения (nextUpdate) CRL."""
    generation_time: datetime
    expiration_time: datetime

    @property
    def generation_timestamp(self) -> float:
        return self.generation_time.timestamp()

    @property
    def expiration_timestamp(self) -> float:
        return self.expiration_time.timestamp()


class CRLFetcher:
    """
    Загрузка CRL по URL одним запросом.
    Повторов нет: следующая попытка будет на следующем цикле опроса.

    Сокет ограничен self.timeout на каждую операцию, а чтение тела дополнительно
    ограничено общим сроком: по его истечении сторожевой таймер закрывает сокет.
    """

    def __init__(self, timeout=FETCH_TIMEOUT, verify=VERIFY_TLS, session=None):
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})

    def fetch(self, url) -> bytes:
        """Скачивание CRL. Весь запрос ограничен self.timeout секундами."""
        logger.info(f"Загрузка CRL {url}")
        expired = threading.Event()
        try:
            content = self._download(url, expired)
        except FetchError:
            raise
        except requests.exceptions.Timeout as e:
            raise FetchError(url, FetchError.TIMEOUT, str(e)) from e
        except requests.exceptions.RequestException as e:
            if expired.is_set() or _is_read_timeout(e):
                raise FetchError(url, FetchError.TIMEOUT, str(e)) from e
            raise FetchError(url, FetchError.TRANSPORT, str(e)) from e
        except Exception as e:
            if expired.is_set():
                raise FetchError(url, FetchError.TIMEOUT, str(e)) from e
            raise

        # Тело могло оборваться «чисто», если у ответа нет Content-Length
        if expired.is_set():
            raise FetchError(url, FetchError.TIMEOUT, f"превышен общий лимит {self.timeout:g} с")
        if not content:
            raise FetchError(url, FetchError.TRANSPORT, "пустой ответ")
        logger.debug(f"CRL загружен: {url} ({len(content)} байт)")
        return content

    def _download(self, url, expired):
        deadline = time.monotonic() + self.timeout
        with self.session.get(url, timeout=self.timeout, stream=True, verify=self.verify) as response:
            response.raise_for_status()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                expired.set()
                return b''

            watchdog = threading.Timer(remaining, _abort_response, args=(response, expired))
            watchdog.daemon = True
            watchdog.start()
            try:
                return b''.join(response.iter_content(chunk_size=CHUNK_SIZE))
            finally:
                watchdog.cancel()


def _abort_response(response, expired):
    """Прерывает чтение тела: shutdown будит поток, заблокированный в recv."""
    expired.set()
    connection = getattr(response.raw, 'connection', None)
    sock = getattr(connection, 'sock', None)
    if sock is None:
        response.close()
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug(f"Не удалось закрыть сокет по истечении срока: {e}")


def _is_read_timeout(exc):
    """requests оборачивает ReadTimeoutError при чтении тела в ConnectionError."""
    causes = list(exc.args) + [exc.__cause__, exc.__context__]
    return any(isinstance(cause, urllib3.exceptions.ReadTimeoutError) for cause in causes)


def _as_utc(dt):
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class CRLDecoder:
    """Разбор CRL (PEM или DER) и извлечение thisUpdate/nextUpdate."""

    def load(self, crl_data) -> x509.CertificateRevocationList:
        if not crl_data:
            raise DecodeError("данные CRL пусты")

        pem_error = None
        # PEM более специфичен, пробуем его первым при наличии сигнатуры
        if b'-BEGIN X509 CRL-' in crl_data and b'-END X509 CRL-' in crl_data:
            try:
                return x509.load_pem_x509_crl(crl_data)
            except ValueError as e:
                pem_error = e
                logger.debug(f"Ошибка парсинга CRL как PEM: {e}")

        try:
            return x509.load_der_x509_crl(crl_data)
        except ValueError as e:
            details = [f"DER: {e}"]
            if pem_error:
                details.insert(0, f"PEM: {pem_error}")
            raise DecodeError("не удалось распарсить CRL (" + "; ".join(details) + ")") from e

    def decode(self, crl_data) -> CrlFacts:
        crl = self.load(crl_data)
        this_update = crl.last_update_utc
        next_update = crl.next_update_utc
        if next_update is None:
            raise DecodeError("в CRL отсутствует nextUpdate")
        return CrlFacts(generation_time=_as_utc(this_update), expiration_time=_as_utc(next_update))
