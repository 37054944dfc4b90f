"""Export worker entrypoint for Cloud Run.

Runs a health check server and the export worker loop. SIGTERM/SIGINT stop the
loop once the current job has finished.
"""

import json
import logging
import signal
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

from src.config import get_settings
from src.models.database import create_db_engine, create_session_factory, init_db
from src.render.compositor import MediaCompositor
from src.services.export_queue import JobStore
from src.services.media_downloader import MediaDownloader
from src.services.storage_service import create_storage_service
from src.tasks.export_worker import ExportWorker

logger = logging.getLogger(__name__)


def make_health_handler(store: JobStore) -> type[BaseHTTPRequestHandler]:
    class HealthHandler(BaseHTTPRequestHandler):
        """Health check reporting queue counts."""

        def do_GET(self):
            if self.path not in ("/health", "/"):
                self.send_response(404)
                self.end_headers()
                return

            try:
                body = {"status": "ok", "jobs": store.count_by_status()}
                code = 200
            except Exception as e:
                body = {"status": "degraded", "error": str(e)}
                code = 503

            self.send_response(code)
            self.send_header("Content-type", "application/json")
            self.end_headers()
            self.wfile.write(json.dumps(body).encode("utf-8"))

        def log_message(self, format, *args):
            # Suppress access logs
            pass

    return HealthHandler


def run_health_server(store: JobStore, port: int) -> HTTPServer:
    """Start the health check server on a daemon thread."""
    server = HTTPServer(("0.0.0.0", port), make_health_handler(store))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"Health server running on port {port}")
    return server


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = create_db_engine(settings.database_url, settings.database_echo)
    init_db(engine)
    store = JobStore(create_session_factory(engine))
    storage = create_storage_service(settings)
    downloader = MediaDownloader(storage=storage, timeout=settings.download_timeout_seconds)
    compositor = MediaCompositor(
        ffmpeg_path=settings.ffmpeg_path,
        threads=settings.render_ffmpeg_threads,
        audio_bitrate=settings.render_audio_bitrate,
        audio_sample_rate=settings.render_audio_sample_rate,
    )
    worker = ExportWorker(store, storage, downloader, compositor, settings)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping after current job")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    health_server = run_health_server(store, settings.worker_health_port)
    try:
        worker.run_forever(stop_event)
    finally:
        health_server.shutdown()
        downloader.close()
        engine.dispose()


if __name__ == "__main__":
    main()
