# ./metrics.py
"""
Метрики CRL Monitor: хранилище опубликованных значений и собственные счетчики
"""
import threading
from typing import Dict, Iterable, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge
from prometheus_client.core import GaugeMetricFamily

from crl_parser import CrlFacts

GENERATE_TIME_METRIC = 'crl_monitor_generate_time_seconds'
EXPIRE_TIME_METRIC = 'crl_monitor_expire_time_seconds'
CRLDP_LABEL = 'crldp'


class MetricSink:
    """
    Потокобезопасное отображение URL точки распространения -> CrlFacts.
    Значение заменяется целиком, поэтому пара времен никогда не бывает «разорванной».
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._facts: Dict[str, CrlFacts] = {}

    def set(self, key: str, facts: CrlFacts):
        if not key:
            raise ValueError("ключ серии не может быть пустым")
        with self._lock:
            self._facts[key] = facts

    def get(self, key: str) -> Optional[CrlFacts]:
        with self._lock:
            return self._facts.get(key)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._facts.pop(key, None) is not None

    def retain(self, keys: Iterable[str]) -> List[str]:
        """Удаляет все серии, ключей которых нет в keys. Возвращает удаленные ключи."""
        keep = set(keys)
        with self._lock:
            removed = [key for key in self._facts if key not in keep]
            for key in removed:
                del self._facts[key]
        return removed

    def snapshot(self) -> Dict[str, CrlFacts]:
        with self._lock:
            return dict(self._facts)

    def __len__(self):
        with self._lock:
            return len(self._facts)


class CRLFactsCollector:
    """Отдает содержимое MetricSink как два gauge-семейства на каждый scrape."""

    def __init__(self, sink: MetricSink):
        self.sink = sink

    def describe(self):
        return []

    def collect(self):
        generate = GaugeMetricFamily(GENERATE_TIME_METRIC,
                                     'Generation time of CRLs in seconds since epoch',
                                     labels=[CRLDP_LABEL])
        expire = GaugeMetricFamily(EXPIRE_TIME_METRIC,
                                   'Expiration time of CRLs in seconds since epoch',
                                   labels=[CRLDP_LABEL])
        # Один снимок на scrape: обе серии берутся из одной и той же пары
        for crldp, facts in sorted(self.sink.snapshot().items()):
            generate.add_metric([crldp], facts.generation_timestamp)
            expire.add_metric([crldp], facts.expiration_timestamp)
        yield generate
        yield expire


class MonitorMetrics:
    """Собственные метрики монитора в явно переданном реестре."""

    def __init__(self, registry: CollectorRegistry):
        self.sweeps_total = Counter('crl_monitor_sweeps_total', 'Total CRL sweep runs', registry=registry)
        self.errors_total = Counter('crl_monitor_errors_total', 'Per-target CRL processing errors',
                                    ['stage'], registry=registry)
        self.config_reloads_total = Counter('crl_monitor_config_reloads_total', 'Config reload attempts',
                                            ['result'], registry=registry)
        self.configured_crls = Gauge('crl_monitor_configured_crls', 'CRL distribution points in current config',
                                     registry=registry)

    def record_reload(self, ok: bool):
        self.config_reloads_total.labels(result='success' if ok else 'failure').inc()


def build_registry(sink: MetricSink):
    """Создает реестр с коллектором CRL и собственными метриками монитора."""
    registry = CollectorRegistry()
    registry.register(CRLFactsCollector(sink))
    return registry, MonitorMetrics(registry)
