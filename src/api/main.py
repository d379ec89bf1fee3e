"""Ebook Pipeline API.

This API is the producer side of the ebook-generation queue:
- Ebook records (create, list, read, edit, delete) scoped per agency
- Stage requests (description, content, pdf) that enqueue jobs
- Job status polling for the dashboard

Jobs are executed by the separate worker process (src.worker).
"""

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src import __version__
from src.api.routes import ebooks
from src.config import load_config
from src.runtime import Runtime, build_runtime

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI app. Without a runtime one is built from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_runtime = app.state.runtime is None
        if owns_runtime:
            logger.info("Building runtime from configuration...")
            app.state.runtime = build_runtime(load_config())
        logger.info("Ebook Pipeline API ready")
        yield
        logger.info("Shutting down Ebook Pipeline API")
        if owns_runtime:
            app.state.runtime.close()
            app.state.runtime = None

    app = FastAPI(
        title="Ebook Pipeline API",
        description="""
## Asynchronous ebook generation

Create an ebook, then run its stages in order. Each stage request returns a
job id; poll `GET /v1/jobs/{job_id}` until the job completes.

1. `POST /v1/ebooks/{id}/description` - generate the description and chapter outline
2. `POST /v1/ebooks/{id}/content` - approve the description, write every chapter
3. `POST /v1/ebooks/{id}/pdf` - render the PDF

All endpoints require the `X-Agency-Id` header.
""",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ebooks.router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Ebook Pipeline API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "ebooks": "/v1/ebooks",
                "jobs": "/v1/jobs/{job_id}",
            },
        }

    @app.get("/health")
    def health():
        """Health check: database connectivity and queue depth."""
        rt: Optional[Runtime] = app.state.runtime
        if rt is None:
            return JSONResponse(status_code=503, content={"status": "starting"})
        try:
            rt.db.ping()
            counts = rt.queue.counts()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": rt.db.backend_name, "error": str(e)},
            )
        return {
            "status": "healthy",
            "database": rt.db.backend_name,
            "queue": rt.queue.queue_name,
            "jobs": counts,
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the Ebook Pipeline API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
