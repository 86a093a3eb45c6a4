"""
Authentication and service dependencies
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import LedgerConfig
from ..service import LedgerService


security = HTTPBearer(auto_error=False)


def get_ledger_service(request: Request) -> LedgerService:
    """Ledger service bound to the running application"""
    return request.app.state.ledger


def get_current_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[str]:
    """Validate the bearer token and return the caller identity"""
    config: LedgerConfig = request.app.state.config
    if not config.auth_enabled:
        return None

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    # Tokens from the auth service carry user_id; standard tokens carry sub
    caller = payload.get("user_id") or payload.get("sub")
    if not caller:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(caller)
