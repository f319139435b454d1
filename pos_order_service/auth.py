"""Staff identity as forwarded by the authenticating gateway.

Token issuance and verification live upstream. Requests that reach this
service carry the shared ``X-API-Key`` plus the caller's id and role.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status


@dataclass(frozen=True)
class StaffPrincipal:
    user_id: int
    role: str


def require_role(*roles: str):
    allowed = set(roles)

    def dependency(
        x_api_key: Optional[str] = Header(default=None),
        x_user_id: Optional[str] = Header(default=None),
        x_user_role: Optional[str] = Header(default=None),
    ) -> StaffPrincipal:
        api_key = os.environ.get("API_KEY", "changeme")
        if api_key and x_api_key != api_key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        if not x_user_id or not x_user_id.isdigit() or not x_user_role:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        if x_user_role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return StaffPrincipal(user_id=int(x_user_id), role=x_user_role)

    return dependency
