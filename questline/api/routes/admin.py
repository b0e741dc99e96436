"""
questline.api.routes.admin — Operator endpoints (JWT ``is_admin`` required)
============================================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from questline.api.deps import get_cache, get_current_admin, get_engine
from questline.engine.cache import ConfigCache
from questline.services.audit_service import list_transactions
from questline.services.degraded_log import VALID_STEPS, get_degraded_log
from questline.services.leaderboard_service import rebuild_leaderboard
from questline.services.reconciliation_service import (
    reconcile_ranks,
    reconciliation_report,
    settle_unpaid,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
@router.post("/leaderboard/rebuild")
def rebuild(
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    logger.info("Leaderboard rebuild requested by %s", admin.get("sub"))
    return {"success": True, "data": rebuild_leaderboard(engine)}


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
@router.get("/reconciliation")
def get_reconciliation(
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    """Unpaid gate rows and rank drift, without changing anything."""
    return {"success": True, "data": reconciliation_report(engine, cache)}


@router.post("/reconciliation/settle")
def settle(
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    """Pay every unpaid award once, then repair rank drift."""
    logger.info("Reconciliation requested by %s", admin.get("sub"))
    awards = settle_unpaid(engine, cache)
    ranks = reconcile_ranks(engine, cache.rank_table)
    return {"success": True, "data": {"awards": awards, "ranks": ranks}}


# ---------------------------------------------------------------------------
# Degraded steps
# ---------------------------------------------------------------------------
@router.get("/degraded")
def get_degraded(
    tail: int = Query(200, ge=1, le=1000),
    step: str | None = Query(None, pattern="^(" + "|".join(VALID_STEPS) + ")$"),
    admin: dict = Depends(get_current_admin),
):
    log = get_degraded_log()
    return {
        "success": True,
        "data": {"entries": log.get_entries(tail=tail, step=step), "total": log.size},
    }


# ---------------------------------------------------------------------------
# Cache & audit
# ---------------------------------------------------------------------------
@router.post("/cache/reload")
def reload_cache(
    admin: dict = Depends(get_current_admin),
    cache: ConfigCache = Depends(get_cache),
):
    """Re-read the rank table, settings and achievement templates."""
    cache.load_all()
    return {
        "success": True,
        "data": {
            "rankTableVersion": cache.rank_table.version,
            "achievements": len(cache.get_active_achievements()),
        },
    }


@router.get("/accounts/{account_id}/transactions")
def get_transactions(
    account_id: str,
    limit: int = Query(100, ge=1, le=1000),
    admin: dict = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    return {"success": True, "data": {"transactions": list_transactions(engine, account_id, limit)}}
