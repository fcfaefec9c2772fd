"""Main entry point for the geofence violation-detection engine."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
from typing import Optional

from geofence.config import AppConfig, load_config, resolve_source_kind
from geofence.platform_factory import (
    create_database,
    create_engine,
    create_snapshot_backend,
    create_snapshot_store,
    create_violation_log,
    create_zone_source,
)
from geofence.utils.clock import SystemClock
from geofence.utils.database import Database
from geofence.utils.logging_config import setup_logging
from geofence.web.api import create_app

logger = logging.getLogger(__name__)


class GeofenceApp:
    """Wires the components together and owns their lifecycle."""

    def __init__(self, config: AppConfig):
        self._config = config
        self._clock = SystemClock()

        # The mock source still gets a database for the violation log and
        # the backing cache.
        self._db: Database = create_database(config)
        self._source = create_zone_source(config, self._db)
        backend = create_snapshot_backend(config, self._db)
        self._store = create_snapshot_store(config, self._source, backend, self._clock)
        self._engine = create_engine(config, self._store, self._source, self._clock)
        self._violation_log = create_violation_log(self._db)
        self._app = create_app(
            self._engine, self._violation_log,
            warning_distance_m=config.api.warning_distance_m,
        )

    @property
    def engine(self):
        return self._engine

    @property
    def flask_app(self):
        return self._app

    def start(self) -> None:
        count = self._store.warm_up()
        logger.info("Engine ready with %d cached zones", count)
        self._store.start()
        pruned = self._violation_log.prune(
            self._clock.now(), self._config.database.violation_retention_days,
        )
        if pruned:
            logger.info("Removed %d expired violations at startup", pruned)

    def serve(self) -> None:
        """Block serving HTTP until interrupted."""
        self.start()
        logger.info(
            "Serving API on http://%s:%d/api/geofencing",
            self._config.api.host, self._config.api.port,
        )
        try:
            self._app.run(
                host=self._config.api.host,
                port=self._config.api.port,
                threaded=True,
                use_reloader=False,
            )
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.stop()

    def stop(self) -> None:
        self._store.stop()
        self._engine.close()
        self._source.close()
        self._db.close()
        logger.info("Geofence engine stopped")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Geofence Violation Detection Engine")
    parser.add_argument("--config", default="config", help="Path to config directory")
    parser.add_argument("--mock", action="store_true", help="Use the in-memory mock zone source")
    parser.add_argument("--port", type=int, help="Override the API port")
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.mock:
        config = dataclasses.replace(config, platform="mock")
    if args.port:
        config = dataclasses.replace(config, api=dataclasses.replace(config.api, port=args.port))

    setup_logging(
        log_dir=config.logging.log_dir,
        level=config.logging.level,
        json_format=config.logging.json_format,
    )

    logger.info("Geofence engine starting (zone source=%s)", resolve_source_kind(config))

    app = GeofenceApp(config)

    def handle_signal(signum, frame):
        logger.info("Received signal %d, stopping", signum)
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_signal)

    app.serve()
    return 0


if __name__ == "__main__":
    sys.exit(main())
