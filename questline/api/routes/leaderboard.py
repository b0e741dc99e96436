"""
questline.api.routes.leaderboard — Leaderboard and account profile
===================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from questline.api.deps import get_cache, get_config, get_current_account, get_engine
from questline.config import QuestlineConfig
from questline.engine.cache import ConfigCache
from questline.exceptions import AccountNotFound
from questline.services import ledger_store
from questline.services.audit_service import list_transactions
from questline.services.leaderboard_service import get_position, top_entries

router = APIRouter(tags=["leaderboard"])


# ---------------------------------------------------------------------------
# GET /leaderboard
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
def get_leaderboard(
    limit: int | None = Query(None, ge=1, le=500),
    engine: Engine = Depends(get_engine),
    config: QuestlineConfig = Depends(get_config),
):
    """Top accounts by XP, read from the leaderboard cache."""
    entries = top_entries(engine, limit or config.leaderboard_limit)
    return {"success": True, "data": {"entries": entries}}


# ---------------------------------------------------------------------------
# GET /me
# ---------------------------------------------------------------------------
@router.get("/me")
def get_me(
    identity: dict = Depends(get_current_account),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    """The caller's XP, rank, achievements and recent XP history."""
    account_id = str(identity["sub"])
    account = ledger_store.get_account(engine, account_id)
    if account is None:
        raise AccountNotFound(account_id=account_id)

    rank_table = cache.rank_table
    rank = rank_table.rank_for(account.xp)
    nxt = rank_table.next_rank(rank)
    return {
        "success": True,
        "data": {
            "userId": account.id,
            "displayName": account.display_name,
            "xp": account.xp,
            "rank": rank.name,
            "level": rank.level,
            "nextRank": nxt.name if nxt else None,
            "xpToNextRank": nxt.min_xp - account.xp if nxt else None,
            "position": get_position(engine, account_id),
            "achievements": ledger_store.list_account_achievements(engine, account_id),
            "recentTransactions": list_transactions(engine, account_id, limit=10),
        },
    }
