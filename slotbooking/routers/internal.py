# slotbooking/routers/internal.py
"""
Internal API endpoints for trusted consumers.

Not proxied by the gateway. Every call must carry X-Internal-Token.
"""

import logging

from fastapi import APIRouter, Depends, Request

from ..auth import require_internal_token
from ..services.slots import run_lock_sweep

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_token)],
)


@router.post("/locks/sweep")
def sweep_locks(request: Request):
    """Delete one batch of expired slot locks now."""
    removed = run_lock_sweep(
        request.app.state.session_factory,
        request.app.state.booking_config,
    )
    logger.info(f"Manual lock sweep: removed={removed}")
    return {"removed": removed}
