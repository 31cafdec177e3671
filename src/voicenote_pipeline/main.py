"""
Worker entry point.

    voicenote-worker run [--host 0.0.0.0] [--port 8090] [--no-http]
    voicenote-worker health

``run`` starts both worker pools and the stalled-job watchdog and serves
``GET /health`` and ``GET /stats`` until SIGINT/SIGTERM. ``health`` prints
the broker and worker health as JSON and exits non-zero when unhealthy.
"""

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import asdict

import uvicorn
from fastapi import FastAPI

from voicenote_pipeline import __version__
from voicenote_pipeline.config import PipelineSettings
from voicenote_pipeline.errors import PipelineError
from voicenote_pipeline.health import create_health_router, queue_check
from voicenote_pipeline.logging import get_logger, setup_logging
from voicenote_pipeline.pipeline import ProcessingPipeline
from voicenote_pipeline.queue import create_queue
from voicenote_pipeline.repository import (
    BlobStore,
    FileSystemBlobStore,
    InMemoryRepository,
    NoteRepository,
)
from voicenote_pipeline.workers import WorkerManager

logger = get_logger()


def build_pipeline(
    settings: PipelineSettings,
    repository: NoteRepository | None = None,
    blobs: BlobStore | None = None,
) -> ProcessingPipeline:
    """Wire queue, providers and stores from settings."""
    return ProcessingPipeline(
        settings,
        create_queue(settings),
        repository or InMemoryRepository(),
        blobs or FileSystemBlobStore(settings.blob_root),
    )


def create_app(settings: PipelineSettings, pipeline: ProcessingPipeline, manager: WorkerManager) -> FastAPI:
    app = FastAPI(title=settings.service_name, version=__version__)
    app.include_router(
        create_health_router(
            service_name=settings.service_name,
            version=__version__,
            checks={
                "broker": queue_check(pipeline.queue),
                "workers": lambda: manager.running,
            },
        )
    )

    @app.get("/stats")
    async def stats() -> dict:
        return await manager.stats()

    return app


async def run(settings: PipelineSettings, host: str, port: int, serve_http: bool) -> None:
    pipeline = build_pipeline(settings)
    manager = pipeline.start()
    logger.info("worker_started", queue_driver=settings.queue_driver, version=__version__)
    try:
        if serve_http:
            config = uvicorn.Config(
                create_app(settings, pipeline, manager),
                host=host,
                port=port,
                log_config=None,
            )
            await uvicorn.Server(config).serve()
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await stop.wait()
    finally:
        logger.info("worker_shutting_down")
        await pipeline.close()


async def health(settings: PipelineSettings) -> int:
    queue = create_queue(settings)
    try:
        status = await queue.health_check()
    finally:
        await queue.close()
    report = {
        "service": settings.service_name,
        "version": __version__,
        "status": "healthy" if status.ok else "unhealthy",
        "broker": asdict(status),
        "queue_driver": settings.queue_driver,
    }
    print(json.dumps(report, indent=2))
    return 0 if status.ok else 1


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="voicenote-worker", description="Voice-note transcription and summarization worker"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start worker pools until interrupted")
    run_parser.add_argument("--host", default="0.0.0.0", help="Host for the health endpoint")
    run_parser.add_argument("--port", type=int, default=8090, help="Port for the health endpoint")
    run_parser.add_argument("--no-http", action="store_true", help="Do not serve the health endpoint")

    subparsers.add_parser("health", help="Print broker health as JSON and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = PipelineSettings()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    setup_logging(
        settings.service_name,
        settings.log_level,
        settings.log_format,
        queue_driver=settings.queue_driver,
    )

    try:
        if args.command == "health":
            return asyncio.run(health(settings))
        asyncio.run(run(settings, args.host, args.port, serve_http=not args.no_http))
    except PipelineError as exc:
        logger.error("worker_failed", **exc.to_dict())
        return 1
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
