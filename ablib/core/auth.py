from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

# Clients send "Authorization: Bearer <token>"; tokens are configured, not issued
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


def require_auth_token(
    request: Request, token: Annotated[Optional[str], Depends(oauth2_scheme)]
) -> Optional[str]:
    """
    Dependency that requires a Bearer token listed in settings.TOKENS.

    With no tokens configured the surface is open (local development).
    """
    tokens = request.app.state.settings.TOKENS
    if not tokens:
        return None

    if not token or token not in tokens:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
