from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from billing_cycles.api.deps import get_billing_settings, get_clock, require_cron_secret
from billing_cycles.domain.models import BillingRunResult
from billing_cycles.infra.config import BillingSettings
from billing_cycles.services.cycle_generator import CycleGenerator
from billing_cycles.services.errors import TopLevelError
from billing_cycles.services.reminder_service import ReminderService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_cycle_generator(
    settings: Annotated[BillingSettings, Depends(get_billing_settings)],
    clock: Annotated[Callable[[], datetime], Depends(get_clock)],
) -> CycleGenerator:
    return CycleGenerator(
        settings,
        clock=clock,
        reminders=ReminderService(settings, clock=clock),
    )


Generator = Annotated[CycleGenerator, Depends(get_cycle_generator)]


@router.api_route(
    "/billing",
    methods=["GET", "POST"],
    response_model=BillingRunResult,
    dependencies=[Depends(require_cron_secret)],
)
def run_billing(generator: Generator) -> BillingRunResult | JSONResponse:
    try:
        return generator.run()
    except TopLevelError as exc:
        logger.error("billing run aborted: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(exc)},
        )
