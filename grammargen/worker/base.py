"""Entry point of the isolated generator worker process.

The worker is a single-request subprocess server that:
1. Loads the executor and applies its memory limit at startup
2. Serves exactly one /run request over loopback HTTP
3. Exits after that request, on /shutdown, or after an idle timeout
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional, Union

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from ..config import DEFAULT_EXECUTOR, get_log_level, get_worker_idle_timeout
from .executor import ExecutorCallable, load_executor
from .models import JobResult, JobSpec, parse_heap_size
from .protocol import DEFAULT_BASE_NAME
from .utils import apply_heap_limit

logger = logging.getLogger("grammargen.worker")


class WorkerHealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="'ok' or 'starting'")
    ready: bool = Field(..., description="True when ready for the request")
    executor: str = Field(..., description="Executor import path")


class GeneratorWorker:
    """
    Serves one generation request for the parent process.

    Args:
        executor: Import path ("module:attr") or an executor callable
        port: Loopback port to listen on
        idle_timeout: Seconds to wait for the request before exiting
        base_name: Name used in logs and the app title
        exit_fn: Called with the exit status on shutdown
        max_heap_size: Address space cap applied once the executor is loaded,
            unless the executor manages the heap of its own child
    """

    def __init__(
        self,
        executor: Union[str, ExecutorCallable],
        port: int,
        idle_timeout: int = 300,
        base_name: str = DEFAULT_BASE_NAME,
        exit_fn: Callable[[int], None] = os._exit,
        max_heap_size: Optional[str] = None,
    ):
        self.executor = executor
        self.port = port
        self.idle_timeout = idle_timeout
        self.base_name = base_name
        self._exit = exit_fn
        self.max_heap_size = max_heap_size

        self._executor: Optional[ExecutorCallable] = None
        self._ready = False
        self._served = False
        self._idle_task: Optional[asyncio.Task] = None

        self.app = FastAPI(title=base_name, lifespan=self._lifespan)
        self._setup_routes()

    @property
    def executor_name(self) -> str:
        if isinstance(self.executor, str):
            return self.executor
        return getattr(self.executor, "__qualname__", type(self.executor).__qualname__)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self._schedule_idle_shutdown()
        try:
            yield
        finally:
            if self._idle_task and not self._idle_task.done():
                self._idle_task.cancel()

    def _setup_routes(self) -> None:
        """Register HTTP endpoints."""

        @self.app.get("/healthz", response_model=WorkerHealthResponse)
        async def healthz() -> WorkerHealthResponse:
            return WorkerHealthResponse(
                status="ok" if self._ready else "starting",
                ready=self._ready,
                executor=self.executor_name,
            )

        @self.app.post("/run", response_model=JobResult)
        async def run_endpoint(spec: JobSpec, background_tasks: BackgroundTasks):
            if not self._ready:
                raise HTTPException(status_code=503, detail="Executor not loaded")
            if self._served:
                raise HTTPException(status_code=409, detail="Worker already served its request")
            self._served = True

            logger.info(f"Running job with {len(spec.input_files)} input files")
            start = time.time()
            try:
                result = await asyncio.to_thread(self._executor, spec)
            except SystemExit as e:
                logger.error(f"Generator exited the worker with status {e.code!r}")
                return self._error_response(f"Generator exited the worker with status {e.code!r}")
            except Exception as e:
                logger.error(f"Executor failed: {e}", exc_info=True)
                return self._error_response(f"Executor error: {e}")

            if not isinstance(result, JobResult):
                return self._error_response(
                    f"Executor returned {type(result).__name__}, expected JobResult"
                )

            logger.info(
                f"Job finished in {int((time.time() - start) * 1000)}ms: {result.status.value}"
            )
            # Single request served; exit once the response is out
            background_tasks.add_task(self._shutdown)
            return result

        @self.app.post("/shutdown")
        async def shutdown_endpoint(background_tasks: BackgroundTasks):
            background_tasks.add_task(self._shutdown)
            return {"status": "shutting_down"}

    def _error_response(self, detail: str) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={"detail": detail},
            background=BackgroundTask(self._shutdown),
        )

    def _schedule_idle_shutdown(self) -> None:
        """Exit if the request never arrives."""
        loop = asyncio.get_running_loop()

        async def _watchdog():
            try:
                await asyncio.sleep(self.idle_timeout)
                if not self._served:
                    logger.info(f"No request within {self.idle_timeout}s, shutting down")
                    await self._shutdown()
            except asyncio.CancelledError:
                pass

        self._idle_task = loop.create_task(_watchdog())

    async def _shutdown(self) -> None:
        logger.info(f"{self.base_name} exiting")
        self._exit(0)

    def load(self) -> None:
        """Resolve the executor and apply the heap limit; the worker reports ready afterwards."""
        if isinstance(self.executor, str):
            self._executor = load_executor(self.executor)
        else:
            self._executor = self.executor

        if self.max_heap_size:
            if getattr(self._executor, "manages_heap", False):
                logger.info(f"Heap size {self.max_heap_size} is passed on by the executor")
            else:
                apply_heap_limit(parse_heap_size(self.max_heap_size))
        self._ready = True

    def run(self) -> int:
        """
        Start the worker server.

        Loads the executor, starts uvicorn, handles signals.

        Returns:
            Exit code (0 for success)
        """
        logger.info(f"Loading executor {self.executor_name}...")
        try:
            self.load()
        except Exception as e:
            logger.error(f"Failed to load executor: {e}", exc_info=True)
            return 1

        def _term_handler(signum, frame):
            logger.info(f"Received signal {signum}, exiting")
            self._exit(0)

        signal.signal(signal.SIGTERM, _term_handler)

        import uvicorn

        logger.info(f"{self.base_name} started for {self.executor_name} on port {self.port}")
        uvicorn.run(self.app, host="127.0.0.1", port=self.port, log_level="warning")
        return 0


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Isolated code generation worker")
    parser.add_argument("--executor", default=DEFAULT_EXECUTOR, help="Executor as module:attr")
    parser.add_argument("--port", type=int, required=True, help="Port to listen on")
    parser.add_argument(
        "--idle-timeout",
        type=int,
        default=get_worker_idle_timeout(),
        help="Seconds to wait for the request before exit",
    )
    parser.add_argument("--max-heap-size", default=None, help="Memory limit, e.g. 512m")
    parser.add_argument("--base-name", default=DEFAULT_BASE_NAME, help="Worker display name")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.max_heap_size:
        try:
            parse_heap_size(args.max_heap_size)
        except ValueError as e:
            logger.error(f"Invalid heap size {args.max_heap_size!r}: {e}")
            return 1

    worker = GeneratorWorker(
        executor=args.executor,
        port=args.port,
        idle_timeout=args.idle_timeout,
        base_name=args.base_name,
        max_heap_size=args.max_heap_size,
    )
    return worker.run()


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
