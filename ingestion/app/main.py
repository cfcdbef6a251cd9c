import asyncio
import signal

from loguru import logger

from ingestion.app.composition import create_ingestion_dependencies
from ingestion.app.config.settings import Settings
from ingestion.app.core import SERVICE_NAME
from ingestion.app.core.logging import configure_logging


def _log(event: str, **kwargs) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


async def run_service() -> None:
    settings = Settings()
    configure_logging(settings)

    deps = create_ingestion_dependencies(settings)
    await deps.connect()

    shutdown = asyncio.Event()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            _log("shutdown_signal")
            shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    pool = deps.create_worker_pool()
    monitor_task = asyncio.create_task(deps.monitor.run(shutdown), name="ingestion-monitor")
    try:
        await pool.start()
        _log(
            "service_started",
            concurrency=settings.max_concurrent_jobs,
            supported_formats=[fmt.value for fmt in deps.pipeline.supported_formats()],
        )
        await shutdown.wait()
    finally:
        shutdown.set()
        await pool.stop()
        await monitor_task
        await deps.close()
        _log("service_stopped")


def main() -> None:
    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        _log("service_interrupted")
    except Exception as e:
        logger.exception("service failed: {}", e)
        raise


if __name__ == "__main__":
    main()
