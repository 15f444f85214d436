"""
Storefront Service — エラー分類

内部では例外を送出し、各操作の最外部で一律の結果 dict
    {"success": False, "error": "...", "code": "..."}
に変換する。呼び出し元には例外を漏らさない。

message は利用者に見せてよい文言だけを持つ。
決済プロバイダのスタックトレースやネットワークエラーの詳細は
ログにのみ出力する。
"""

import logging

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong. Please try again."


class StorefrontError(Exception):
    code = "error"
    message = GENERIC_ERROR

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class Unauthenticated(StorefrontError):
    code = "unauthenticated"
    message = "Please sign in to checkout"


class EmptyCart(StorefrontError):
    code = "empty_cart"
    message = "Your cart is empty"


class ValidationFailed(StorefrontError):
    """1件以上の明細が拒否された。理由は入力順に保持する。"""

    code = "validation_failed"

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__(". ".join(self.reasons))


class ProviderFailure(StorefrontError):
    code = "provider_failure"


class NotFound(StorefrontError):
    code = "not_found"
    message = "Order not found"


class IllegalTransition(StorefrontError):
    code = "illegal_transition"


class ConcurrentModification(StorefrontError):
    code = "conflict"
    message = "Order was modified by someone else. Reload and try again."


def failure(exc: StorefrontError) -> dict:
    """例外を一律の失敗結果に変換する。"""
    return {"success": False, "error": exc.message, "code": exc.code}


def unexpected(exc: Exception, context: str) -> dict:
    """想定外の例外はログに残し、汎用メッセージだけを返す。"""
    logger.exception("%s failed: %s", context, exc)
    return {"success": False, "error": GENERIC_ERROR, "code": ProviderFailure.code}
