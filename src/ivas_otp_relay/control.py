"""HTTP control surface: status, one-shot check, re-login, numbers refresh, cookie injection, assignment."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING, Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from .models import Cookie

if TYPE_CHECKING:
    from .service import RelayService


logger = logging.getLogger(__name__)


class CookieUpdate(BaseModel):
    password: str = ""
    cookies: Any = None


class AssignRequest(BaseModel):
    password: str = ""
    recipient_id: str
    range: str


def _require_admin(service: "RelayService", password: str) -> None:
    expected = service.cfg.control.admin_password
    if not expected or not hmac.compare_digest(password.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid password")


def create_app(service: "RelayService") -> FastAPI:
    app = FastAPI(title="ivas-otp-relay control", docs_url=None, redoc_url=None, openapi_url=None)
    router = APIRouter()

    @router.get("/")
    async def root() -> dict[str, Any]:
        return service.status()

    @router.get("/status")
    async def status() -> dict[str, Any]:
        return service.status()

    @router.get("/check")
    async def check() -> dict[str, Any]:
        try:
            result = await service.monitor.run_once()
        except Exception as e:
            logger.error("On-demand check failed: %s", e)
            raise HTTPException(status_code=500, detail=str(e))
        return {"success": True, "found": result.found, "sent": result.sent}

    @router.get("/relogin")
    async def relogin() -> dict[str, Any]:
        ok = await service.relogin()
        return {"success": ok, "sessionValid": service.context.valid}

    @router.get("/refresh-numbers")
    async def refresh_numbers() -> dict[str, Any]:
        try:
            numbers = await service.numbers.get(force_refresh=True)
        except Exception as e:
            logger.error("Numbers refresh failed: %s", e)
            raise HTTPException(status_code=500, detail=str(e))
        return {"success": True, "count": len(numbers)}

    @router.post("/update-cookies")
    async def update_cookies(body: CookieUpdate) -> dict[str, Any]:
        _require_admin(service, body.password)
        if not isinstance(body.cookies, list):
            raise HTTPException(status_code=400, detail="Invalid cookies format")
        try:
            cookies = [Cookie.model_validate(c) for c in body.cookies]
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid cookie: {e.errors()[0].get('msg', 'malformed')}")

        # Re-authentication can take minutes; callers follow it through /status.
        count = service.update_cookies(cookies)
        return {
            "success": True,
            "message": f"Updated {count} cookies; re-authenticating",
            "reloginScheduled": True,
        }

    @router.post("/assign")
    async def assign(body: AssignRequest) -> dict[str, Any]:
        _require_admin(service, body.password)
        try:
            by_range = await service.numbers.by_range()
        except Exception as e:
            logger.error("Could not load numbers for assignment: %s", e)
            raise HTTPException(status_code=500, detail=str(e))

        candidates: Optional[list[str]] = by_range.get(body.range)
        if not candidates:
            raise HTTPException(status_code=404, detail=f"Unknown range: {body.range}")
        assignment = await service.assignments.assign(body.recipient_id, body.range, candidates)
        if assignment is None:
            raise HTTPException(status_code=404, detail="No free number in this range")
        return {"number": assignment.phone_number, "range": assignment.range}

    app.include_router(router)
    return app
