"""
Group-Buy Microservice API

Crowd-pledge campaign lifecycle, bracket pricing, pledges and order
materialization, with scheduled drivers that advance campaigns unattended.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.logger import setup_service_logger

from .factory import GroupBuyComponents, build_scheduler, create_groupbuy_components
from .models import (
    BracketProgress,
    Campaign,
    CreatePledgeRequest,
    ErrorResponse,
    EvaluationResult,
    HealthResponse,
    JobRunResult,
    Order,
    Pledge,
    PledgeListResponse,
    PledgeStatus,
    UpdateOrderStatusRequest,
    UpdatePledgeRequest,
)
from .protocols import ErrorKind, GroupBuyServiceError
from .scheduler import JobScheduler, close_scheduler

# Initialize configuration
config = get_settings()

# Configure logging
logger = setup_service_logger("groupbuy_service", level=config.log_level.upper())

# Global variables
components: Optional[GroupBuyComponents] = None
scheduler: Optional[JobScheduler] = None
SERVICE_PORT = config.service_port or 8260

ERROR_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_CAMPAIGN_STATE: 409,
    ErrorKind.INVALID_PLEDGE_STATE: 409,
    ErrorKind.INVALID_STATE_TRANSITION: 409,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global components, scheduler

    try:
        components = create_groupbuy_components(config=config)
        await components.repository.initialize()
        logger.info("✅ Group-buy repository initialized")

        if config.scheduler.enabled:
            try:
                scheduler = build_scheduler(components)
                scheduler.start()
            except Exception as e:
                logger.warning(f"⚠️  Failed to start job scheduler: {e}")
                scheduler = None

        logger.info(f"✅ Group-buy service started on port {SERVICE_PORT}")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize group-buy service: {e}")
        raise
    finally:
        if scheduler:
            try:
                await close_scheduler()
            except Exception as e:
                logger.error(f"❌ Failed to stop scheduler: {e}")
            scheduler = None

        if components:
            if components.notification_client:
                try:
                    await components.notification_client.close()
                except Exception as e:
                    logger.error(f"Error closing notification client: {e}")
            await components.repository.close()
            logger.info("Group-buy service database connections closed")


# Create FastAPI application
app = FastAPI(
    title="Group-Buy Service",
    description="Crowd-pledge campaign lifecycle and tiered pricing",
    version="1.0.0",
    lifespan=lifespan,
)


# ====================
# Dependency Injection
# ====================


async def get_components() -> GroupBuyComponents:
    """Get wired service components"""
    if not components:
        raise HTTPException(status_code=503, detail="Group-buy service not initialized")
    return components


async def get_scheduler_dependency() -> JobScheduler:
    if not scheduler:
        raise HTTPException(status_code=503, detail="Job scheduler not running")
    return scheduler


# ====================
# Health Check
# ====================


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Basic health check"""
    dependencies = {}
    try:
        healthy = components is not None and await components.repository.health_check()
        dependencies["database"] = "healthy" if healthy else "unhealthy"
    except Exception:
        dependencies["database"] = "unhealthy"
    dependencies["scheduler"] = "healthy" if scheduler and scheduler.running else "not_configured"

    status = "healthy" if all(v in ["healthy", "not_configured"] for v in dependencies.values()) else "degraded"
    return HealthResponse(
        status=status,
        service="groupbuy_service",
        port=SERVICE_PORT,
        version="1.0.0",
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=dependencies,
    )


@app.get("/health/detailed")
async def health_check_detailed():
    """Health plus registered scheduler jobs"""
    health = await health_check()
    return {
        **health.model_dump(),
        "jobs": scheduler.jobs if scheduler else [],
        "minimum_quantity_policy": config.minimum_quantity_policy,
    }


# ====================
# Campaign Lifecycle
# ====================


@app.get("/api/v1/campaigns/{campaign_id}", response_model=Campaign)
async def get_campaign(campaign_id: str, c: GroupBuyComponents = Depends(get_components)):
    return await c.lifecycle.get_campaign(campaign_id)


@app.get("/api/v1/campaigns/{campaign_id}/brackets/progress", response_model=BracketProgress)
async def get_bracket_progress(campaign_id: str, c: GroupBuyComponents = Depends(get_components)):
    """Current and next bracket for everything pledged so far"""
    return await c.pricing.get_progress(campaign_id)


@app.post("/api/v1/campaigns/{campaign_id}/publish", response_model=Campaign)
async def publish_campaign(campaign_id: str, c: GroupBuyComponents = Depends(get_components)):
    return await c.lifecycle.publish_campaign(campaign_id)


@app.post("/api/v1/campaigns/{campaign_id}/grace-period", response_model=Campaign)
async def start_grace_period(campaign_id: str, c: GroupBuyComponents = Depends(get_components)):
    return await c.lifecycle.start_grace_period(campaign_id)


@app.post("/api/v1/campaigns/{campaign_id}/evaluate", response_model=EvaluationResult)
async def evaluate_campaign(campaign_id: str, c: GroupBuyComponents = Depends(get_components)):
    return await c.lifecycle.evaluate(campaign_id)


@app.post("/api/v1/campaigns/{campaign_id}/complete", response_model=Campaign)
async def complete_campaign(campaign_id: str, c: GroupBuyComponents = Depends(get_components)):
    return await c.lifecycle.complete_campaign(campaign_id)


# ====================
# Pledges
# ====================


@app.post("/api/v1/campaigns/{campaign_id}/pledges", response_model=Pledge, status_code=201)
async def create_pledge(
    campaign_id: str,
    request: CreatePledgeRequest,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    c: GroupBuyComponents = Depends(get_components),
):
    return await c.pledge_ledger.create_pledge(campaign_id, organization_id, request.quantity)


@app.get("/api/v1/campaigns/{campaign_id}/pledges", response_model=PledgeListResponse)
async def list_campaign_pledges(
    campaign_id: str,
    status: Optional[PledgeStatus] = None,
    c: GroupBuyComponents = Depends(get_components),
):
    pledges = await c.pledge_ledger.list_campaign_pledges(campaign_id, status)
    return PledgeListResponse(pledges=pledges, total=len(pledges))


@app.get("/api/v1/pledges", response_model=PledgeListResponse)
async def list_my_pledges(
    status: Optional[PledgeStatus] = None,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    c: GroupBuyComponents = Depends(get_components),
):
    pledges = await c.pledge_ledger.list_buyer_pledges(organization_id, status)
    return PledgeListResponse(pledges=pledges, total=len(pledges))


@app.get("/api/v1/pledges/{pledge_id}", response_model=Pledge)
async def get_pledge(
    pledge_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    c: GroupBuyComponents = Depends(get_components),
):
    return await c.pledge_ledger.get_pledge(pledge_id, organization_id)


@app.put("/api/v1/pledges/{pledge_id}", response_model=Pledge)
async def update_pledge(
    pledge_id: str,
    request: UpdatePledgeRequest,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    c: GroupBuyComponents = Depends(get_components),
):
    return await c.pledge_ledger.update_pledge_quantity(pledge_id, organization_id, request.quantity)


@app.post("/api/v1/pledges/{pledge_id}/commit", response_model=Pledge)
async def commit_pledge(
    pledge_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    c: GroupBuyComponents = Depends(get_components),
):
    return await c.pledge_ledger.commit_pledge(pledge_id, organization_id)


@app.post("/api/v1/pledges/{pledge_id}/withdraw", response_model=Pledge)
async def withdraw_pledge(
    pledge_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    c: GroupBuyComponents = Depends(get_components),
):
    return await c.pledge_ledger.withdraw_pledge(pledge_id, organization_id)


# ====================
# Orders
# ====================


@app.post("/api/v1/orders/from-payment/{payment_id}", response_model=Order)
async def create_order_from_payment(payment_id: str, c: GroupBuyComponents = Depends(get_components)):
    """Payment-confirmation hook; safe to call repeatedly for the same payment"""
    return await c.order_materializer.create_order_for_payment_id(payment_id)


@app.get("/api/v1/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, c: GroupBuyComponents = Depends(get_components)):
    return await c.order_materializer.get_order(order_id)


@app.put("/api/v1/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    c: GroupBuyComponents = Depends(get_components),
):
    return await c.order_materializer.update_order_status(order_id, request.status, request.notes)


# ====================
# Scheduled Jobs
# ====================


@app.get("/api/v1/jobs")
async def list_jobs(s: JobScheduler = Depends(get_scheduler_dependency)):
    return {"jobs": s.jobs}


@app.post("/api/v1/jobs/{job_name}/run", response_model=JobRunResult)
async def run_job(job_name: str, s: JobScheduler = Depends(get_scheduler_dependency)):
    """Run a batch job immediately (operator trigger)"""
    return await s.run_job(job_name)


# ====================
# Error Handling
# ====================


@app.exception_handler(GroupBuyServiceError)
async def groupbuy_error_handler(request: Request, exc: GroupBuyServiceError):
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"Unmapped service error in {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=exc.message, error_code=exc.kind.value, details=exc.details).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception in {request.url}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error occurred"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "microservices.groupbuy_service.main:app",
        host="0.0.0.0",
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.log_level.lower(),
    )
