from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from course_payments.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def verify_token(authorization: Optional[str] = Header(None),
                 services: Services = Depends(get_services)) -> dict:
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        claims = jwt.decode(
            token,
            services.settings.jwt_secret,
            algorithms=[services.settings.jwt_algorithm],
        )
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return claims


def require_admin(claims: dict = Depends(verify_token)) -> dict:
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return claims
