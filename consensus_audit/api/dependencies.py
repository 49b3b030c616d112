"""
FastAPI Dependencies - Credential extraction and pipeline wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from consensus_audit.db.session import get_db
from consensus_audit.services.dispatcher import BackgroundDispatcher
from consensus_audit.services.llm_provider import LLMProvider, get_llm_provider
from consensus_audit.services.moderation import ModerationProvider, get_moderation_provider
from consensus_audit.services.pipeline import ConsensusAuditPipeline

# Bearer token scheme; a missing header is reported by the Eligibility Gate
bearer_scheme = HTTPBearer(auto_error=False)


async def get_bearer_credential(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    """Raw bearer token, or None when the header is missing or not Bearer."""
    if credentials is None:
        return None
    return credentials.credentials


def get_dispatcher(request: Request) -> BackgroundDispatcher | None:
    """Background dispatcher created in the application lifespan."""
    return getattr(request.app.state, "dispatcher", None)


def get_llm() -> LLMProvider:
    """Model invocation capability."""
    return get_llm_provider()


def get_moderation() -> ModerationProvider:
    """Moderation capability."""
    return get_moderation_provider()


async def get_pipeline(
    db: AsyncSession = Depends(get_db),
    llm: LLMProvider = Depends(get_llm),
    moderation: ModerationProvider = Depends(get_moderation),
    dispatcher: BackgroundDispatcher | None = Depends(get_dispatcher),
) -> ConsensusAuditPipeline:
    """Request-scoped audit pipeline."""
    return ConsensusAuditPipeline(db, llm, moderation, dispatcher)
