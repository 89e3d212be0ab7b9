import logging
import signal
import threading

from config import Config
from jobs import build_scheduler
from services import Services, config_dict, configure_logging

logger = logging.getLogger(__name__)


def main():
    config = config_dict(Config)
    configure_logging(config["LOG_LEVEL"])
    services = Services(config)

    if services.scanner.ping():
        logger.info("ClamAV is reachable at %s:%s", config["CLAMAV_HOST"], config["CLAMAV_PORT"])
    else:
        logger.warning("ClamAV is not available; scans will be retried until it comes up")

    stop_event = threading.Event()

    def stop(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)

    scheduler = build_scheduler(services)
    scheduler.start()
    try:
        services.pipeline.run_forever(stop_event, config["SCAN_POLL_INTERVAL_SECONDS"])
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    main()
