#!/usr/bin/env python3
"""
Payout Allocation Service
Splits partner payouts among internal recipients without exceeding the payout total
"""
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Request

from common.error_handling import NotFoundError, add_error_handlers
from common.schemas import AllocationCreate, AllocationStatus, AllocationUpdate, BulkAllocationRequest
from common.security import actor_from_token
from common.settings import settings
from common.tracing import allocation_tracer, tracing_middleware
from allocation_service.db import DataStore
from allocation_service.services import AllocationServices

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

PREFIX = "/api/payout-allocations"


def get_services(request: Request) -> AllocationServices:
    return request.app.state.services


async def current_actor(authorization: Optional[str] = Header(None)) -> int:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        return actor_from_token(token)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")


def ok(data=None, message: str = None):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def create_app(datastore: Optional[DataStore] = None) -> FastAPI:
    datastore = datastore or DataStore(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        datastore.init()
        if datastore.config.auto_create_schema:
            datastore.create_schema()
        logger.info(f"🚀 Payout allocation service started ({datastore.config.environment})")
        try:
            yield
        finally:
            datastore.dispose()

    app = FastAPI(title="Payout Allocation Service", version="1.0.0", lifespan=lifespan)
    app.state.services = AllocationServices(datastore)
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, allocation_tracer)

    @app.get("/health")
    def health():
        return {"ok": datastore.is_initialized and datastore.ping(), "service": "payout-allocation"}

    @app.get(PREFIX + "/user/{user_id}/period")
    def user_allocations_by_period(
        user_id: int,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        status: Optional[str] = None,
        allocation_status: Optional[AllocationStatus] = None,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        filters = {
            "period_start": period_start,
            "period_end": period_end,
            "status": status,
            "allocation_status": allocation_status.value if allocation_status else None,
        }
        return ok(services.store.list_for_user(user_id, filters))

    @app.get(PREFIX + "/{payout_request_id}/users")
    def users_for_allocation(
        payout_request_id: int,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        return ok(services.flows.users_for_allocation(payout_request_id))

    @app.get(PREFIX + "/{payout_request_id}")
    def list_allocations(
        payout_request_id: int,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        return ok({
            "allocations": services.store.list_by_payout_request(payout_request_id),
            "stats": services.stats.get_stats(payout_request_id),
        })

    @app.post(PREFIX + "/{payout_request_id}", status_code=201)
    def create_allocation(
        payout_request_id: int,
        body: AllocationCreate,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        record = services.store.create(payout_request_id, body, actor)
        return ok(record, "Allocation created")

    @app.post(PREFIX + "/{payout_request_id}/bulk")
    def bulk_upsert_allocations(
        payout_request_id: int,
        body: BulkAllocationRequest,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        records = services.store.bulk_upsert(payout_request_id, body.allocations, actor)
        return ok(records, f"Processed {len(records)} allocations")

    @app.put(PREFIX + "/allocation/{allocation_id}")
    def update_allocation(
        allocation_id: int,
        body: AllocationUpdate,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        return ok(services.store.update(allocation_id, body, actor), "Allocation updated")

    @app.delete(PREFIX + "/allocation/{allocation_id}")
    def delete_allocation(
        allocation_id: int,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        if not services.store.delete(allocation_id):
            raise NotFoundError(f"Allocation {allocation_id} not found", field="allocation_id")
        logger.info(f"Allocation {allocation_id} deleted by user {actor}")
        return ok(message="Allocation deleted")

    @app.post(PREFIX + "/allocation/{allocation_id}/cancel")
    def cancel_allocation(
        allocation_id: int,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        return ok(services.lifecycle.cancel(allocation_id, actor), "Allocation cancelled")

    @app.post(PREFIX + "/{payout_request_id}/confirm")
    def confirm_all_allocations(
        payout_request_id: int,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        confirmed_count = services.lifecycle.confirm_all(payout_request_id, actor)
        return ok({"confirmed_count": confirmed_count}, f"Confirmed {confirmed_count} allocations")

    @app.get(PREFIX + "/{payout_request_id}/stats")
    def allocation_stats(
        payout_request_id: int,
        services: AllocationServices = Depends(get_services),
        actor: int = Depends(current_actor),
    ):
        return ok(services.stats.get_stats(payout_request_id))

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
