# utils/auth.py
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from config import get_settings


# Token Auth Dependency
def verify_token(request: Request) -> dict:
     """
     Validate the bearer token issued by the identity provider.
     The "id" claim is the authenticated user id.
     """
     settings = get_settings()
     auth = request.headers.get("Authorization")
     if not auth or not auth.startswith("Bearer "):
          raise HTTPException(status_code=401, detail="Missing token")
     if not settings.jwt_secret:
          raise HTTPException(status_code=500, detail="JWT_SECRET is not configured")
     token = auth.split(" ", 1)[1]
     try:
          payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
     except JWTError:
          raise HTTPException(status_code=403, detail="Invalid token")
     if payload.get("id") is None:
          raise HTTPException(status_code=403, detail="Token has no user id")
     return payload
