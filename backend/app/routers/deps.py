"""共通依存関数: 認証・ロール制御"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request

from app.core.redis import get_redis
from app.core.session import get_session
from app.services.subscription_service import Actor

# 課金操作を許可する組織内ロール
BILLING_ADMIN_ROLES = ("owner", "admin")
# 組織横断の運用者ロール (上限・機能の上書き)
PLATFORM_ADMIN_ROLE = "platform_admin"


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str
    organization_id: str
    email: Optional[str] = None

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role)


async def get_current_user(
    request: Request,
    r=Depends(get_redis),
) -> Optional[CurrentUser]:
    """Cookie → Redis セッションでユーザー取得。未ログインならNone"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return None

    session_data = await get_session(r, session_id)
    if not session_data:
        return None

    user_id = session_data.get("user_id")
    organization_id = session_data.get("organization_id")
    if not user_id or not organization_id:
        return None

    return CurrentUser(
        user_id=str(user_id),
        role=session_data.get("role", "member"),
        organization_id=str(organization_id),
        email=session_data.get("email"),
    )


async def require_login(
    user: Optional[CurrentUser] = Depends(get_current_user),
) -> CurrentUser:
    """ログイン必須。未ログインなら401"""
    if user is None:
        raise HTTPException(status_code=401, detail="Login required")
    return user


async def require_billing_admin(
    user: CurrentUser = Depends(require_login),
) -> CurrentUser:
    """組織の owner / admin のみ。それ以外は403"""
    if user.role not in BILLING_ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Organization admin permission required")
    return user


async def require_platform_admin(
    user: CurrentUser = Depends(require_login),
) -> CurrentUser:
    """運用者のみ。組織の owner / admin でも不可"""
    if user.role != PLATFORM_ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Platform admin permission required")
    return user
