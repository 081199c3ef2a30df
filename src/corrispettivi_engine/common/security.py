"""API key authentication dependencies."""

from fastapi import Header, HTTPException


async def require_api_key(
    x_api_key: str = Header(..., alias="X-Corrispettivi-Api-Key"),
) -> str:
    """FastAPI dependency that validates the audit/admin API key from header."""
    from corrispettivi_engine.common.config import get_settings

    settings = get_settings()
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_api_key
