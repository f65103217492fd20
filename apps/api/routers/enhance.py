"""Prompt enhancement endpoint."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from routers.auth_scope import AuthContext, ensure_user_scope, get_account_context
from routers.rate_limit import user_rate_limit
from services.enhancement import run_enhancement
from services.enhancer import PromptEnhancer, get_enhancer

router = APIRouter()


class EnhanceOptions(BaseModel):
    domain: Optional[str] = Field(default=None, max_length=60)
    max_tokens: Optional[int] = Field(default=None, ge=16, le=4000)
    include_examples: bool = False
    tone: Optional[Literal["neutral", "formal", "casual", "technical"]] = None


class EnhanceRequest(BaseModel):
    # Length and emptiness are checked by the orchestrator so they share one error shape.
    prompt: Any = None
    options: EnhanceOptions = Field(default_factory=EnhanceOptions)
    request_id: Optional[str] = Field(default=None, min_length=8, max_length=120)
    user_id: Optional[str] = None


@router.post("")
async def enhance_prompt(
    request: EnhanceRequest,
    _rate_limit: None = Depends(user_rate_limit("enhance")),
    auth: AuthContext = Depends(get_account_context),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    enhancer: PromptEnhancer = Depends(get_enhancer),
) -> Dict[str, Any]:
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await run_enhancement(
        session_maker,
        scoped_user_id,
        request.prompt,
        request.options.model_dump(exclude_none=True),
        enhancer=enhancer,
        request_id=request.request_id,
    )
