from dataclasses import dataclass

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self):
        return self.role == "admin"


def get_actor(request: Request, authorization: str = Header(None)) -> Actor:
    settings = request.app.state.settings
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub") or claims.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return Actor(user_id=str(user_id), role=claims.get("role", "user"))


def require_admin(actor: Actor):
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
