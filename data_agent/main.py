"""
FastAPI application entry point for the Data Agent engine.

This module initializes the FastAPI application, configures middleware,
registers API routers, and handles application lifecycle events.

The application exposes the natural-language analysis workflow:
- Stream a question through the workflow (rewrite, schema recall,
  planning, SQL/Python steps, report)
- Resume a session suspended for human review of its plan
- Stop a running or suspended session
- Inspect the checkpoint of a suspended session
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import time

from .core.config import settings
from .core.executor import shutdown_worker_pool
from .core.logging import get_logger
from .api import graph
from .workflow.checkpoint import open_checkpointer

# Initialize logger for this module
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown events.

    Startup opens the checkpointer that keeps suspended sessions across
    restarts. Shutdown closes it and stops the shared worker pool.

    Yields:
        None: Control is yielded to the application runtime
    """
    async with open_checkpointer(settings.checkpoint_db_path) as checkpointer:
        app.state.checkpointer = checkpointer
        logger.info(f"Checkpointer opened on {settings.checkpoint_db_path}")
        yield

    shutdown_worker_pool()
    logger.info("Application shutting down")


# Initialize FastAPI application
app = FastAPI(
    title="Data Agent Engine",
    description="Natural-language data analysis: question to SQL, Python and report",
    version="0.1.0",
    lifespan=lifespan
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    HTTP middleware for request/response logging.

    For streaming endpoints the duration covers the time until the response
    headers are sent, not the whole stream.

    Example log output:
        Method=POST Path=/api/v1/graph/stream Status=200 Duration=12.40ms
    """
    start_time = time.time()

    response = await call_next(request)

    process_time = (time.time() - start_time) * 1000

    logger.info(
        f"Method={request.method} Path={request.url.path} "
        f"Status={response.status_code} Duration={process_time:.2f}ms"
    )

    return response


# Register API routers
app.include_router(graph.router)        # Analysis workflow


@app.get("/health")
def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        dict: status, service identifier and version
    """
    return {
        "status": "healthy",
        "service": "data-agent-engine",
        "version": "0.1.0"
    }


@app.get("/")
def root():
    """Root endpoint with links to the documentation and the health check."""
    return {
        "message": "Data Agent Engine",
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    """
    Direct execution entry point for development:
        python -m data_agent.main

    In production run an ASGI server instead:
        uvicorn data_agent.main:app --host 0.0.0.0 --port 8000
    """
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
