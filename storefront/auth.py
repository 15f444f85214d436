"""
Storefront Service — 認証プロバイダ クライアント

Authorization: Bearer トークンを認証プロバイダに問い合わせ、
呼び出し元の Identity を得る。トークンがない・無効な場合は None
(未認証)で、どう扱うかは各操作が決める。
"""

import logging

import httpx

from . import config
from .models import Identity

logger = logging.getLogger(__name__)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthClient:
    def __init__(
        self,
        base_url: str = config.AUTH_SERVICE_URL,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def current_identity(self, token: str | None) -> Identity | None:
        """トークンの持ち主を返す。問い合わせに失敗した場合も未認証として扱う。"""
        if not token:
            return None
        try:
            resp = await self.client.get("/v1/me", headers={"Authorization": f"Bearer {token}"})
            if resp.status_code in (401, 403, 404):
                return None
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Auth provider lookup failed")
            return None

        body = resp.json()
        email = body.get("email") or ""
        if not email and body.get("email_addresses"):
            email = body["email_addresses"][0].get("email_address", "")
        return Identity(
            user_id=body["id"],
            email=email,
            name=body.get("name") or "",
            is_admin=bool(body.get("is_admin", False)),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
