#!/usr/bin/env python3
# ./crl_monitor.py
import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import schedule

from config import (
    ConfigStore, ConfigWatcher, DEFAULT_REFRESH_INTERVAL, LOG_FILE, LOG_LEVEL,
    METRICS_HOST, METRICS_PORT, MonitorConfig,
)
from crl_parser import CRLDecoder, CRLFetcher
from errors import ConfigError, DecodeError, FetchError
from metrics import MetricSink, MonitorMetrics, build_registry
from metrics_server import MetricsServer
from utils import parse_duration, setup_logging

logger = logging.getLogger(__name__)

# Верхняя граница ожидания в простое, чтобы внешний stop_event замечался быстро
MAX_IDLE_WAIT = 1.0


@dataclass
class SweepResult:
    attempted: int = 0
    succeeded: int = 0
    failed: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None


class CRLMonitor:
    """
    Цикл опроса точек распространения CRL.

    Состояния: IDLE (ожидание таймера или сигнала перезагрузки) и SWEEPING
    (обход всех URL из снимка конфигурации). Все обходы выполняются в потоке
    цикла, поэтому одновременно идет не больше одного обхода; сигнал
    перезагрузки во время обхода откладывается до его завершения.
    """

    IDLE = 'idle'
    SWEEPING = 'sweeping'

    def __init__(self, config_store: ConfigStore, sink: MetricSink, fetcher=None, decoder=None,
                 refresh_interval=DEFAULT_REFRESH_INTERVAL, metrics: Optional[MonitorMetrics] = None):
        self.config_store = config_store
        self.sink = sink
        self.fetcher = fetcher or CRLFetcher()
        self.decoder = decoder or CRLDecoder()
        self.refresh_interval = refresh_interval
        self.metrics = metrics
        self.state = self.IDLE
        self.last_sweep: Optional[SweepResult] = None

        self.scheduler = schedule.Scheduler()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._stop_event: Optional[threading.Event] = None
        self._sweep_lock = threading.Lock()
        self._thread = None

        config_store.subscribe(self.on_config_reloaded)

    def on_config_reloaded(self, config: MonitorConfig):
        """Сигнал от ConfigStore: внеочередной обход после успешной перезагрузки."""
        logger.info(f"Конфигурация перезагружена ({len(config.crls)} URL), запланирован внеочередной обход")
        self._wake.set()

    def request_sweep(self):
        self._wake.set()

    def _count_error(self, stage):
        if self.metrics:
            self.metrics.errors_total.labels(stage=stage).inc()

    def process_crl(self, url) -> bool:
        """Загрузка, разбор и публикация одного CRL. Ошибки логируются и не прерывают обход."""
        try:
            crl_data = self.fetcher.fetch(url)
            facts = self.decoder.decode(crl_data)
        except FetchError as e:
            logger.error(f"Ошибка загрузки CRL: {e}")
            self._count_error(e.kind)
            return False
        except DecodeError as e:
            logger.error(f"Ошибка разбора CRL {url}: {e}")
            self._count_error('decode')
            return False
        except Exception as e:
            logger.error(f"Непредвиденная ошибка обработки CRL {url}: {e}", exc_info=True)
            self._count_error('unexpected')
            return False

        self.sink.set(url, facts)
        logger.info(f"CRL {url}: thisUpdate={facts.generation_time.isoformat()}, "
                    f"nextUpdate={facts.expiration_time.isoformat()}")
        return True

    def run_sweep(self) -> SweepResult:
        """Один полный обход по снимку конфигурации, взятому в начале обхода."""
        with self._sweep_lock:
            self.state = self.SWEEPING
            try:
                config = self.config_store.current()
                removed = self.sink.retain(config.crls)
                for url in removed:
                    logger.info(f"URL {url} удален из конфигурации, серии метрик удалены")

                logger.info(f"Начало обхода CRL: {len(config.crls)} URL")
                if self.metrics:
                    self.metrics.sweeps_total.inc()
                    self.metrics.configured_crls.set(len(config.crls))

                result = SweepResult()
                for url in config.crls:
                    result.attempted += 1
                    if self.process_crl(url):
                        result.succeeded += 1
                    else:
                        result.failed.append(url)

                result.finished_at = datetime.now(timezone.utc)
                self.last_sweep = result
                logger.info(f"Обход CRL завершен: успешно {result.succeeded} из {result.attempted}")
                return result
            finally:
                self.state = self.IDLE

    def _stopping(self):
        return self._stop.is_set() or (self._stop_event is not None and self._stop_event.is_set())

    def _idle_timeout(self):
        idle = self.scheduler.idle_seconds
        if idle is None:
            return MAX_IDLE_WAIT
        return min(max(idle, 0), MAX_IDLE_WAIT)

    def run(self, stop_event: Optional[threading.Event] = None):
        """Запуск цикла до вызова stop() или установки stop_event."""
        self._stop_event = stop_event
        logger.info(f"Запуск CRL Monitor, интервал опроса {self.refresh_interval:g} с")

        self.scheduler.clear()
        self.scheduler.every(self.refresh_interval).seconds.do(self.request_sweep)

        # Первая проверка сразу при запуске
        self._wake.set()
        while not self._stopping():
            try:
                self._wake.wait(self._idle_timeout())
                if self._stopping():
                    break
                self.scheduler.run_pending()
                if self._wake.is_set():
                    self._wake.clear()
                    self.run_sweep()
            except Exception as e:
                logger.error(f"Ошибка в основном цикле: {e}", exc_info=True)
        logger.info("CRL Monitor остановлен")

    def start(self, stop_event: Optional[threading.Event] = None):
        self._thread = threading.Thread(target=self.run, args=(stop_event,), name='CRLMonitorThread', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self._stop.set()
        self._wake.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def health(self):
        """Состояние для /healthz."""
        issues = []
        try:
            config = self.config_store.current()
        except ConfigError as e:
            config = None
            issues.append(str(e))

        status = {
            "is_healthy": not issues,
            "status": "healthy" if not issues else "unhealthy",
            "state": self.state,
            "configured_crls": len(config.crls) if config else 0,
            "published_crls": len(self.sink),
        }
        if issues:
            status["issues"] = issues
        if self.last_sweep is not None:
            status["last_sweep"] = {
                "finished_at": self.last_sweep.finished_at.isoformat(),
                "attempted": self.last_sweep.attempted,
                "succeeded": self.last_sweep.succeeded,
                "failed": self.last_sweep.failed,
            }
        return status


def _duration(value):
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='crl-monitor',
                                     description='Экспорт времени выпуска и истечения CRL в Prometheus')
    parser.add_argument('--refresh-interval', '-refresh-interval', dest='refresh_interval',
                        type=_duration, default=float(DEFAULT_REFRESH_INTERVAL),
                        help='интервал загрузки CRL с точек распространения (по умолчанию 1h)')
    parser.add_argument('--config', '-config', dest='config', required=True,
                        help='YAML-файл со списком отслеживаемых CRL')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(LOG_LEVEL, LOG_FILE or None)

    try:
        store = ConfigStore.load(args.config)
    except ConfigError as e:
        logger.critical(f"Ошибка загрузки конфигурации: {e}")
        return 1

    sink = MetricSink()
    registry, monitor_metrics = build_registry(sink)
    monitor_metrics.record_reload(True)

    monitor = CRLMonitor(store, sink, refresh_interval=args.refresh_interval, metrics=monitor_metrics)
    watcher = ConfigWatcher(store, on_result=monitor_metrics.record_reload)

    try:
        server = MetricsServer(registry, METRICS_HOST, METRICS_PORT, health_check=monitor.health).start()
    except OSError as e:
        logger.critical(f"Не удалось запустить HTTP сервер метрик на порту {METRICS_PORT}: {e}")
        return 1

    signal.signal(signal.SIGTERM, lambda signum, frame: monitor.stop())
    watcher.start()
    try:
        monitor.run()
    except KeyboardInterrupt:
        logger.info("Получен сигнал завершения")
    finally:
        watcher.stop()
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
