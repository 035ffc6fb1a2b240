"""HTTP surface for commit-mirror.

FastAPI app exposing:
- POST /webhook: GitHub push events, acknowledged with 202 before writing
- POST /api/commits: direct commit submission guarded by an API key
- GET /health: liveness plus dedup cache size
- /metrics: Prometheus exposition
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field

from .__version__ import __version__
from .config import get_config
from .service import MirrorService

logger = logging.getLogger("commit_mirror.app")


class CommitSubmission(BaseModel):
    """Body of POST /api/commits."""

    commits: list[dict[str, Any]] = Field(
        ..., min_length=1, description="Commits as {id|hash, message, date, author, projectId}"
    )


class RepositoryCounts(BaseModel):
    processed: int = Field(..., description="Newly written records")
    skipped: int = Field(..., description="Commits already stored")
    errors: int = Field(..., description="Failed writes")


class SubmissionResponse(BaseModel):
    success: bool = Field(..., description="False when any write failed")
    results: dict[str, RepositoryCounts] = Field(
        default_factory=dict, description="Counts per repository"
    )
    summary: RepositoryCounts
    invalid: int = Field(0, description="Entries dropped as malformed")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Always 'ok' while the process serves requests")
    version: str
    cached_repositories: int = Field(..., description="Repositories in the dedup cache")


def get_service(request: Request) -> MirrorService:
    service = request.app.state.service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return service


def require_api_key(
    service: MirrorService = Depends(get_service),
    x_api_key: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    """Accept ``X-API-Key: <key>`` or ``Authorization: Bearer <key>``."""
    expected = service.config.commit_api_key.get_secret_value()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Commit API is not configured",
        )
    provided = x_api_key
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer ") :]
    if not provided or not hmac.compare_digest(
        provided.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("commit_api_unauthorized", extra={"has_key": bool(provided)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key"
        )


def create_app(service: MirrorService | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        service: Pre-built service (tests). When None, the lifespan builds one
            from ``get_config()`` and closes it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.service is None:
            config = get_config()
            config.require_server()
            owned = app.state.service = MirrorService.from_config(config)
            logger.info("service_started", extra={"version": __version__})
        yield
        if owned is not None:
            await owned.close()
            app.state.service = None
            logger.info("service_stopped")

    app = FastAPI(
        title="commit-mirror",
        description="Mirrors source-control commits into a Notion database",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.mount("/metrics", make_asgi_app())

    @app.post("/webhook", tags=["Ingestion"])
    async def webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        service: MirrorService = Depends(get_service),
        x_hub_signature_256: str | None = Header(default=None),
        x_github_event: str | None = Header(default="push"),
    ):
        """Receive a push event; the write runs after the 202 is sent."""
        body = await request.body()
        ack = service.receiver.on_event(body, x_hub_signature_256, x_github_event)
        if ack.has_work:
            background_tasks.add_task(
                service.receiver.process, ack.repository, ack.commits
            )
        return JSONResponse(status_code=ack.status, content=ack.body)

    @app.post(
        "/api/commits",
        response_model=SubmissionResponse,
        dependencies=[Depends(require_api_key)],
        tags=["Ingestion"],
    )
    async def submit_commits(
        submission: CommitSubmission,
        service: MirrorService = Depends(get_service),
    ):
        """Write posted commits synchronously and report counts."""
        results, invalid = await service.ingest_submissions(submission.commits)
        if not results:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No valid commits in request",
            )
        summary = RepositoryCounts(processed=0, skipped=0, errors=0)
        for batch in results.values():
            summary.processed += batch.processed
            summary.skipped += batch.skipped
            summary.errors += batch.errors
        return SubmissionResponse(
            success=summary.errors == 0,
            results={repo: RepositoryCounts(**b.to_dict()) for repo, b in results.items()},
            summary=summary,
            invalid=invalid,
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health(service: MirrorService = Depends(get_service)):
        return HealthResponse(
            status="ok", version=__version__, cached_repositories=len(service.cache)
        )

    return app
