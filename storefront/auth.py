from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import ALGORITHM, SECRET_KEY, TOKEN_COOKIE_NAME

ADMIN_ROLES = {"admin", "superadmin"}

# auto_error off: the session cookie is accepted as well
security = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    """Identity from the session cookie or a Bearer token.

    The token is issued by the account service; it carries ``id``, ``userName``
    and ``role`` claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorised user!",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token = request.cookies.get(TOKEN_COOKIE_NAME)
    if credentials is not None:
        token = credentials.credentials
    if not token:
        raise credentials_exception

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id = payload.get("id") or payload.get("sub")
    if user_id is None:
        raise credentials_exception

    return {
        "id": str(user_id),
        "userName": payload.get("userName") or payload.get("username"),
        "email": payload.get("email"),
        "role": payload.get("role", "user"),
    }


def is_admin(user: Dict) -> bool:
    return user.get("role") in ADMIN_ROLES


def get_current_admin(current_user: Dict = Depends(get_current_user)) -> Dict:
    if not is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required."
        )
    return current_user


def get_current_superadmin(current_user: Dict = Depends(get_current_user)) -> Dict:
    if current_user.get("role") != "superadmin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Superadmin access required."
        )
    return current_user
