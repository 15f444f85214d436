"""
Storefront Service — カート検証

クライアントが送ってきたカートを、カタログの正しい値と突き合わせる。

    1. 空のカートは拒否する(成功扱いにしない)
    2. 参照されている商品をまとめてカタログから取得する
    3. 明細ごとに入力順で判定する
         商品が存在しない       → "no longer available"
         在庫が 0              → "out of stock"
         要求数量 > 在庫        → "Only N ... available"
                                  (同じ商品の明細が複数あれば数量を合算して判定)
         それ以外              → カタログの価格で検証済み明細を作る
    4. 1件でも拒否があればチェックアウト全体を失敗にする

一部だけ購入させることはしない。購入するつもりだった商品を
黙って落とすより、やり直してもらう方がよい。
"""

from typing import Awaitable, Callable

from .errors import EmptyCart, ValidationFailed
from .models import CartLineItem, Product, ValidatedLineItem

FetchProducts = Callable[[list[str]], Awaitable[list[Product]]]


def check_line_item(item: CartLineItem, product: Product | None, already_requested: int = 0) -> str | None:
    """
    明細1件を判定し、拒否する場合はその理由を返す。

    already_requested は同じ商品の、それより前の明細で受け付けた数量。
    """
    if product is None:
        return f'Product "{item.name}" is no longer available'
    if product.stock == 0:
        return f'"{product.name}" is out of stock'
    if already_requested + item.quantity > product.stock:
        return f'Only {product.stock} of "{product.name}" available'
    return None


async def validate_cart(
    items: list[CartLineItem],
    fetch_products: FetchProducts,
) -> list[ValidatedLineItem]:
    """
    カートを検証し、すべて通れば検証済み明細を入力順で返す。

    失敗時は ValidationFailed に明細ごとの理由を入力順で入れて送出する。
    """
    if not items:
        raise EmptyCart()

    product_ids = list(dict.fromkeys(item.product_id for item in items))
    products = {p.id: p for p in await fetch_products(product_ids)}

    reasons: list[str] = []
    validated: list[ValidatedLineItem] = []
    requested: dict[str, int] = {}
    for item in items:
        product = products.get(item.product_id)
        reason = check_line_item(item, product, requested.get(item.product_id, 0))
        if reason:
            reasons.append(reason)
            continue
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
        validated.append(ValidatedLineItem(product=product, quantity=item.quantity))

    if reasons:
        raise ValidationFailed(reasons)
    return validated
