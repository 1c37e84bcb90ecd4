"""Sync Service - FastAPI application."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Request, status, HTTPException, BackgroundTasks
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
import httpx

from shared.config import get_aws_config, get_evernote_gateway_url, get_sync_config
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from services.image_store.s3_store import S3ImageStore
from services.sync_service.orchestrator import SyncOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
encryption_service: Optional[EncryptionService] = None
gateway_client: Optional[httpx.AsyncClient] = None
image_store: Optional[S3ImageStore] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, encryption_service, gateway_client, image_store

    logger.info("Sync Service starting up...")

    db_ops = DatabaseOperations()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService()
    logger.info("Encryption service initialized")

    aws_config = get_aws_config()
    image_store = S3ImageStore(
        db_ops,
        bucket_name=aws_config["s3_bucket"],
        region=aws_config["region"],
        access_key_id=aws_config["access_key_id"],
        secret_access_key=aws_config["secret_access_key"],
        public_base_url=aws_config["public_base_url"]
    )
    logger.info(f"Image store initialized - bucket: {aws_config['s3_bucket']}")

    # Notebooks with many images take a while to download
    gateway_client = httpx.AsyncClient(
        base_url=get_evernote_gateway_url(),
        timeout=300.0
    )
    logger.info(f"Evernote gateway client initialized - {get_evernote_gateway_url()}")

    yield

    await gateway_client.aclose()
    logger.info("Sync Service shutting down...")


app = FastAPI(
    title="Sync Service",
    description="Publishes Evernote notebooks as blogs",
    version="0.1.0",
    lifespan=lifespan
)


@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(
        db_ops=db_ops,
        image_store=image_store,
        gateway_client=gateway_client,
        encryption_service=encryption_service,
        sync_config=get_sync_config()
    )


def parse_blog_id(blog_id: str) -> UUID:
    try:
        return UUID(blog_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid blog_id format"
        )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    gateway_healthy = False
    try:
        response = await gateway_client.get("/health")
        gateway_healthy = response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Evernote gateway health check failed: {e}")

    overall_status = "healthy" if (db_healthy and gateway_healthy) else "degraded"

    return {
        "status": overall_status,
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down",
            "evernote_gateway": "up" if gateway_healthy else "down"
        }
    }


@app.post("/internal/sync/users/{user_id}", status_code=status.HTTP_200_OK)
async def sync_user(user_id: str):
    """
    Sync every connected blog of a user.

    Returns the UserSyncResult payload. A missing Evernote token is reported
    in the payload with ``success: false``, not as an HTTP error.
    """
    logger.info(f"Received sync request for user {user_id}")
    result = await get_orchestrator().sync_user(user_id)
    return result.to_dict()


@app.post("/internal/sync/blogs/{blog_id}", status_code=status.HTTP_200_OK)
async def sync_blog(blog_id: str):
    """Run one sync pass for a blog and return its SyncResult payload."""
    blog_uuid = parse_blog_id(blog_id)

    if not db_ops.get_blog(blog_uuid):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Blog {blog_id} not found"
        )

    logger.info(f"Received sync request for blog {blog_id}")
    result = await get_orchestrator().sync_blog(blog_uuid)
    return result.to_dict()


class ResetSyncResponse(BaseModel):
    """Response model for sync state reset."""
    blog_id: str
    status: str
    message: str


@app.post(
    "/internal/sync/blogs/{blog_id}/reset",
    response_model=ResetSyncResponse,
    status_code=status.HTTP_200_OK
)
async def reset_sync(blog_id: str):
    """
    Forget a blog's sync history so the next pass is a full sync.

    Posts are left untouched.
    """
    blog_uuid = parse_blog_id(blog_id)

    blog = db_ops.reset_sync_state(blog_uuid)
    if not blog:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Blog {blog_id} not found"
        )

    logger.info(f"Sync state reset for blog {blog_id}")

    return ResetSyncResponse(
        blog_id=blog_id,
        status="reset",
        message="Sync state cleared, next sync will be a full sync"
    )


class ScheduledSyncResponse(BaseModel):
    """Response model for the scheduled trigger."""
    status: str
    message: str


@app.post(
    "/internal/sync/scheduled",
    response_model=ScheduledSyncResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def scheduled_sync(background_tasks: BackgroundTasks):
    """
    Sync every user with a connected Evernote account.

    Returns immediately; the pass runs in the background.
    """
    logger.info("Received scheduled sync trigger")
    background_tasks.add_task(get_orchestrator().sync_all_users)

    return ScheduledSyncResponse(
        status="queued",
        message="Scheduled sync queued successfully"
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
