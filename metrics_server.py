import json
import logging
import threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = logging.getLogger(__name__)


def _default_health():
    return {"is_healthy": True, "status": "healthy"}


def make_handler(registry, health_check=None):
    """Создает класс обработчика: /metrics, /healthz (/health), прочее 404."""
    health_check = health_check or _default_health

    def metrics_page():
        return 200, CONTENT_TYPE_LATEST, generate_latest(registry)

    def health_page():
        report = health_check()
        status = 200 if report['is_healthy'] else 503
        body = json.dumps(report, ensure_ascii=False, indent=2).encode('utf-8')
        return status, 'application/json', body

    routes = {
        '/metrics': metrics_page,
        '/healthz': health_page,
        '/health': health_page,
    }

    class MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            page = routes.get(self.path.split('?', 1)[0])
            if page is None:
                self.send_error(404)
                return
            status, content_type, body = page()
            self.send_response(status)
            self.send_header('Content-Type', content_type)
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

    return MetricsHandler


class MetricsServer:
    def __init__(self, registry, host='0.0.0.0', port=2112, health_check=None):
        self.httpd = ThreadingHTTPServer((host, port), make_handler(registry, health_check))
        self.httpd.daemon_threads = True
        self._thread = None

    @property
    def port(self):
        return self.httpd.server_address[1]

    def start(self):
        self._thread = threading.Thread(target=self.httpd.serve_forever, name='MetricsHTTP', daemon=True)
        self._thread.start()
        logger.info(f"HTTP сервер метрик слушает порт {self.port}")
        return self

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()
        if self._thread is not None:
            self._thread.join()
