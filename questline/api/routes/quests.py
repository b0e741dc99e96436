"""
questline.api.routes.quests — Quest progress, completion and code redemption
=============================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from questline.api.deps import get_cache, get_config, get_current_account, get_engine
from questline.config import QuestlineConfig
from questline.engine.cache import ConfigCache
from questline.exceptions import IdentityMismatch
from questline.services import completion_service

router = APIRouter(tags=["quests"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class CompleteQuestBody(BaseModel):
    questId: str = Field(min_length=1, max_length=64)
    userId: str | None = None


class RedeemCodeBody(BaseModel):
    questId: str = Field(min_length=1, max_length=64)
    userInputCode: str = Field(min_length=1, max_length=100)
    userId: str | None = None


class ProgressBody(BaseModel):
    questId: str = Field(min_length=1, max_length=64)
    progress: int = Field(ge=0, le=100)


def _account_id(identity: dict, claimed: str | None) -> str:
    """The token's subject; a differing body ``userId`` is refused."""
    account_id = str(identity["sub"])
    if claimed is not None and claimed != account_id:
        raise IdentityMismatch()
    return account_id


# ---------------------------------------------------------------------------
# POST /quests/progress
# ---------------------------------------------------------------------------
@router.post("/quests/progress")
def record_progress(
    body: ProgressBody,
    identity: dict = Depends(get_current_account),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    data = completion_service.record_quest_progress(
        engine, cache, _account_id(identity, None), body.questId, body.progress,
        display_name=identity.get("username"),
    )
    return {"success": True, "data": data}


# ---------------------------------------------------------------------------
# POST /quests/complete
# ---------------------------------------------------------------------------
@router.post("/quests/complete")
def complete_quest(
    body: CompleteQuestBody,
    identity: dict = Depends(get_current_account),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    config: QuestlineConfig = Depends(get_config),
):
    """Complete a progress-tracked quest and credit its reward once."""
    result = completion_service.complete_quest(
        engine, cache, _account_id(identity, body.userId), body.questId,
        threshold=config.completion_threshold,
        display_name=identity.get("username"),
    )
    return {"success": True, "data": result.to_dict()}


# ---------------------------------------------------------------------------
# POST /quests/redeem-code
# ---------------------------------------------------------------------------
@router.post("/quests/redeem-code")
def redeem_code(
    body: RedeemCodeBody,
    identity: dict = Depends(get_current_account),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    """Complete a code-verified quest by redeeming its verification code."""
    result = completion_service.redeem_code(
        engine, cache, _account_id(identity, body.userId), body.questId,
        body.userInputCode, display_name=identity.get("username"),
    )
    return result.to_dict()
