"""
Development launcher: the FastAPI app, a Celery worker and Celery beat,
supervised together. Beat enqueues the automation tick every
AUTOMATION_INTERVAL_MINUTES; the worker runs it.
"""

import multiprocessing
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, List

import redis

from groupbuy.config.settings import settings
from groupbuy.utils.logging import get_logger

logger = get_logger()

PROJECT_ROOT = str(Path(__file__).parent.parent)

SERVICES: Dict[str, List[str]] = {
    "FastAPI": [
        "-m", "uvicorn", "groupbuy.main:app", "--host", "0.0.0.0", "--port", "8000",
    ],
    "Celery worker": [
        "-m", "celery", "-A", "groupbuy.celery", "worker", "--loglevel=info", "--pool=solo",
    ],
    "Celery beat": ["-m", "celery", "-A", "groupbuy.celery", "beat", "--loglevel=info"],
}


def setup_signal_handlers():
    """Setup signal handlers for graceful shutdown"""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def run_service(name: str):
    """Run one service in the foreground of this process"""
    try:
        logger.info(f"Starting {name} process")
        subprocess.run([sys.executable, *SERVICES[name]], check=True, cwd=PROJECT_ROOT)
    except subprocess.CalledProcessError as e:
        logger.error(f"{name} process failed with return code {e.returncode}: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info(f"{name} process interrupted by user")


def check_redis_connection() -> bool:
    """Celery needs the Redis broker before worker or beat can start"""
    try:
        client = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD or None,
            socket_connect_timeout=5,
        )
        client.ping()
        logger.info("Redis connection successful")
        return True
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        logger.error("Please ensure Redis server is running")
        return False


def monitor_processes(processes):
    """Exit as soon as any supervised process dies"""
    logger.info("Starting process monitoring")

    while True:
        for process in processes:
            if not process.is_alive():
                logger.error(
                    f"{process.name} process died unexpectedly with exit code: {process.exitcode}"
                )
                terminate_processes(processes)
                sys.exit(1)

        time.sleep(1)


def terminate_processes(processes):
    """Gracefully terminate all processes"""
    logger.info("Initiating graceful shutdown of all services")

    for process in processes:
        if process.is_alive():
            logger.info(f"Terminating {process.name} process")
            process.terminate()

    for process in processes:
        process.join(timeout=10)
        if process.is_alive():
            logger.warning(f"{process.name} did not terminate gracefully, force killing")
            process.kill()
            process.join()
        else:
            logger.info(f"{process.name} terminated successfully")


def main():
    """Start and supervise the API, the Celery worker and Celery beat"""
    multiprocessing.freeze_support()
    setup_signal_handlers()

    logger.info("=" * 60)
    logger.info(f"Starting {settings.NAME} (FastAPI + Celery worker + Celery beat)")
    logger.info("=" * 60)
    logger.info("Press Ctrl+C to stop all services")

    if not check_redis_connection():
        logger.error("Cannot start services without Redis connection")
        sys.exit(1)

    processes = []

    try:
        for name in SERVICES:
            process = multiprocessing.Process(
                target=run_service, args=(name,), name=name, daemon=False
            )
            process.start()
            processes.append(process)

        logger.info(f"FastAPI server: http://localhost:8000{settings.API_PREFIX}")
        logger.info(
            f"Automation tick every {settings.AUTOMATION_INTERVAL_MINUTES} minute(s)"
        )
        logger.info("-" * 60)

        monitor_processes(processes)

    except KeyboardInterrupt:
        logger.info("Shutdown signal received")
    finally:
        terminate_processes(processes)
        logger.info("All services stopped successfully")


if __name__ == "__main__":
    main()
