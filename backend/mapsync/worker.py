import argparse
import logging
import signal
import threading
import time

from mapsync.core.config import settings
from mapsync.core.logging_config import configure_logging
from mapsync.core.manifest_cache import ManifestCache
from mapsync.core.prod_check import validate_production_config
from mapsync.db.bootstrap import bootstrap_database
from mapsync.db.session import engine
from mapsync.services.observers import LoggingObserver, RunLogObserver
from mapsync.services.pipeline_service import PipelineService
from mapsync.services.source_readers import build_source_reader
from mapsync.services.target_writer import SqlAlchemyTargetWriter


logger = logging.getLogger(__name__)


def build_pipeline() -> PipelineService:
    observers = [LoggingObserver()]
    if settings.sync_run_log_enabled:
        observers.append(RunLogObserver())
    return PipelineService(
        ManifestCache(settings.manifest_path),
        build_source_reader(),
        SqlAlchemyTargetWriter(engine),
        observers=observers,
        delta_path=settings.delta_export_path,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='mapsync.worker', description='Run manifest-driven syncs on an interval.')
    parser.add_argument('--once', action='store_true', help='run a single pass and exit')
    parser.add_argument('--entity', action='append', default=None, help='sync only this entity (repeatable)')
    parser.add_argument('--no-delta', action='store_true', help='skip the delta export after the pass')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging()
    validate_production_config()
    bootstrap_database()
    pipeline = build_pipeline()
    export_delta = settings.delta_export_enabled and not args.no_delta
    interval = max(1.0, float(settings.sync_interval_seconds or 300))
    stop = threading.Event()

    def _shutdown_handler(signum, _frame):  # type: ignore[no-untyped-def]
        logger.info('sync worker received signal %s, stopping...', signum)
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)

    logger.info('sync worker started (interval=%ss, entities=%s)', interval, ','.join(args.entity or []) or 'all')
    failed = False
    while not stop.is_set():
        started = time.perf_counter()
        try:
            report = pipeline.run_all(args.entity, cancel_event=stop, export_delta=export_delta)
            failed = not report.ok
            for name, reason in report.failures.items():
                logger.error('sync pass: %s failed (%s)', name, reason)
        except Exception:
            logger.exception('sync worker loop error')
            failed = True
        if args.once:
            break
        stop.wait(max(0.0, interval - (time.perf_counter() - started)))

    logger.info('sync worker stopped')
    return 1 if failed else 0


if __name__ == '__main__':
    raise SystemExit(main())
