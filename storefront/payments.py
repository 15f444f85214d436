"""
Storefront Service — 決済プロバイダ クライアント

ホスト型チェックアウトセッションの作成・取得・失効を HTTP で呼び出す。
リクエストは form エンコード(ネストは key[sub][0] 形式)。

プロバイダ側の失敗はすべてここで ProviderFailure にまとめる。
原因はログにだけ残し、呼び出し元には詳細を返さない。
"""

import logging

import httpx

from . import config
from .errors import ProviderFailure

logger = logging.getLogger(__name__)


def encode_form(params: dict, prefix: str = "") -> list[tuple[str, str]]:
    """ネストした dict / list を key[sub][0]=value の組に平坦化する。"""
    pairs: list[tuple[str, str]] = []
    items = params.items() if isinstance(params, dict) else enumerate(params)
    for key, value in items:
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, (dict, list, tuple)):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class PaymentProvider:
    """決済プロバイダの REST API クライアント"""

    def __init__(
        self,
        base_url: str = config.PAYMENTS_API_URL,
        secret_key: str = config.PAYMENTS_SECRET_KEY,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not secret_key:
            raise RuntimeError("PAYMENTS_SECRET_KEY is not defined")
        self.client = httpx.AsyncClient(
            base_url=base_url,
            auth=(secret_key, ""),
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Payment provider %s %s returned %s: %s",
                method, path, e.response.status_code, e.response.text,
            )
            raise ProviderFailure() from e
        except httpx.HTTPError as e:
            logger.exception("Payment provider %s %s failed", method, path)
            raise ProviderFailure() from e

    async def create_checkout_session(self, params: dict) -> dict:
        return await self._request("POST", "/v1/checkout/sessions", data=dict(encode_form(params)))

    async def retrieve_checkout_session(self, session_id: str, expand: list[str] | None = None) -> dict:
        query = [("expand[]", e) for e in expand or []]
        return await self._request("GET", f"/v1/checkout/sessions/{session_id}", params=query)

    async def expire_checkout_session(self, session_id: str) -> dict:
        return await self._request("POST", f"/v1/checkout/sessions/{session_id}/expire")

    async def aclose(self) -> None:
        await self.client.aclose()
