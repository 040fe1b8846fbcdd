"""
Request identity. Sign-in happens upstream; by the time a request reaches
us the Steam ID is in a header, optionally guarded by a shared API key.
"""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from overachiever.settings import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
steam_id_header = APIKeyHeader(name="X-Steam-Id", auto_error=False)


def api_key_matches(api_key: Optional[str]) -> bool:
    if not settings.API_SECRET_KEY:
        return True
    return bool(api_key) and secrets.compare_digest(api_key, settings.API_SECRET_KEY)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """No-op unless API_SECRET_KEY is set."""
    if not settings.API_SECRET_KEY:
        return None

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
        )

    if not api_key_matches(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


async def current_steam_id(
    steam_id: Optional[str] = Security(steam_id_header),
    _: Optional[str] = Depends(verify_api_key),
) -> str:
    steam_id = (steam_id or settings.STEAM_ID).strip()
    if not steam_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated: no Steam ID for this session",
        )
    if not steam_id.isdigit():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Steam ID must be numeric",
        )
    return steam_id
