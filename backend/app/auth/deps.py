"""FastAPI dependencies for authentication and authorization.

Dependencies:
  get_auth_context           → decode JWT, check the user is active, return AuthContext
  require_admin              → restrict to the admin role
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.jwt import ACCESS_TOKEN_TYPE, decode_token
from app.database import get_db
from app.models.user import User, UserRole

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class AuthContext:
    """Who is calling.  The shipment services trust this verbatim."""
    owner_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


async def _context_from_token(token: str, db: AsyncSession) -> AuthContext:
    payload = decode_token(token)
    user_id: str | None = payload.get("sub")
    if not user_id or payload.get("type") != ACCESS_TOKEN_TYPE:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    # Role comes from the stored user, not the token, so demotions apply at once
    return AuthContext(owner_id=user.id, role=UserRole(user.role).value)


# ── Core dependencies ───────────────────────────────────────

async def get_auth_context(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    return await _context_from_token(token, db)


# ── Role-based access control ───────────────────────────────

async def require_admin(
    ctx: AuthContext = Depends(get_auth_context),
) -> AuthContext:
    if not ctx.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Requires role: {UserRole.ADMIN.value}",
        )
    return ctx
