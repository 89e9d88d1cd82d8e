import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from prometheus_client import generate_latest
from prometheus_client.parser import text_string_to_metric_families

from metrics import EXPIRE_TIME_METRIC, GENERATE_TIME_METRIC

T0 = datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def ca_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def make_crl(ca_key):
    """Возвращает фабрику байтов CRL с заданными thisUpdate/nextUpdate."""

    def _make(this_update=T0, next_update=None, pem=False):
        if next_update is None:
            next_update = this_update + timedelta(days=1)
        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")]))
            .last_update(this_update)
            .next_update(next_update)
        )
        crl = builder.sign(ca_key, hashes.SHA256())
        encoding = serialization.Encoding.PEM if pem else serialization.Encoding.DER
        return crl.public_bytes(encoding)

    return _make


@pytest.fixture
def write_config(tmp_path):
    """Пишет YAML-конфигурацию и возвращает путь к ней."""
    path = tmp_path / "crl-monitor.yaml"

    def _write(text):
        path.write_text(text, encoding="utf-8")
        return path

    return _write


def bump_mtime(path):
    """Сдвигает mtime файла, чтобы наблюдатель гарантированно увидел изменение."""
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))


def scrape(registry):
    """Возвращает {(имя, crldp): значение} для серий CRL."""
    samples = {}
    text = generate_latest(registry).decode("utf-8")
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name in (GENERATE_TIME_METRIC, EXPIRE_TIME_METRIC):
                samples[(sample.name, sample.labels["crldp"])] = sample.value
    return samples
