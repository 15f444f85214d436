"""
Storefront Service — 商品検索・絞り込み

検索語の有無と指定されたソートから、4種類のクエリ形状のうち1つを選ぶ。

    NAME        名前の昇順(既定)
    PRICE_ASC   価格の昇順
    PRICE_DESC  価格の降順
    RELEVANCE   関連度の降順、同点は名前の昇順(検索語があるときだけ)

絞り込み条件はすべて任意で、自由に組み合わせられる。
空文字 / 0 / False は「この条件で絞り込まない」を意味する。
UI はこの約束に依存しているので変えないこと。
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from .models import Product

NAME_WEIGHT = 3
DESCRIPTION_WEIGHT = 1

_WORD = re.compile(r"\w+")


class QueryShape(str, Enum):
    NAME = "name"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    RELEVANCE = "relevance"


@dataclass(frozen=True)
class ProductFilters:
    search_term: str = ""
    category_slug: str = ""
    color: str = ""
    material: str = ""
    min_price: Decimal = Decimal(0)
    max_price: Decimal = Decimal(0)
    in_stock: bool = False


def select_query_shape(search_term: str, sort: str | None = None) -> QueryShape:
    """
    検索語とソート指定からクエリ形状を選ぶ。

    ソート未指定なら、検索語があれば関連度順、なければ名前順。
    関連度順は検索語がないと意味を持たないので名前順に落とす。
    """
    has_term = bool(search_term.strip())
    try:
        shape = QueryShape(sort) if sort else None
    except ValueError:
        shape = None

    if shape is None:
        return QueryShape.RELEVANCE if has_term else QueryShape.NAME
    if shape is QueryShape.RELEVANCE and not has_term:
        return QueryShape.NAME
    return shape


def build_filter_clause(filters: ProductFilters) -> tuple[str, dict]:
    """
    SQL の WHERE 句とパラメータを組み立てる。

    検索語はここでは扱わない(単語の前方一致は matches_search で判定する)。
    """
    clauses = ["TRUE"]
    params: dict = {}
    if filters.category_slug:
        clauses.append("c.slug = :category_slug")
        params["category_slug"] = filters.category_slug
    if filters.color:
        clauses.append("p.color = :color")
        params["color"] = filters.color
    if filters.material:
        clauses.append("p.material = :material")
        params["material"] = filters.material
    if filters.min_price:
        clauses.append("p.price >= :min_price")
        params["min_price"] = filters.min_price
    if filters.max_price:
        clauses.append("p.price <= :max_price")
        params["max_price"] = filters.max_price
    if filters.in_stock:
        clauses.append("p.stock > 0")
    return " AND ".join(clauses), params


def _prefix_match(text: str, term: str) -> bool:
    """検索語の各単語が、text のいずれかの単語の前方に一致するか。"""
    tokens = [t.casefold() for t in _WORD.findall(term)]
    if not tokens:
        return False
    words = [w.casefold() for w in _WORD.findall(text or "")]
    return all(any(w.startswith(t) for w in words) for t in tokens)


def matches_search(product: Product, term: str) -> bool:
    if not term.strip():
        return True
    return _prefix_match(product.name, term) or _prefix_match(product.description, term)


def relevance_score(product: Product, term: str) -> int:
    score = 0
    if _prefix_match(product.name, term):
        score += NAME_WEIGHT
    if _prefix_match(product.description, term):
        score += DESCRIPTION_WEIGHT
    return score


def order_products(products: list[Product], shape: QueryShape, term: str = "") -> list[Product]:
    def by_name(p: Product):
        return (p.name.casefold(), p.id)

    if shape is QueryShape.PRICE_ASC:
        return sorted(products, key=lambda p: (p.price, by_name(p)))
    if shape is QueryShape.PRICE_DESC:
        return sorted(products, key=lambda p: (-p.price, by_name(p)))
    if shape is QueryShape.RELEVANCE:
        return sorted(products, key=lambda p: (-relevance_score(p, term), by_name(p)))
    return sorted(products, key=by_name)


def search_products(
    products: list[Product],
    filters: ProductFilters,
    sort: str | None = None,
) -> list[Product]:
    """構造化条件で絞り込み済みの商品に、検索語の一致と並び順を適用する。"""
    shape = select_query_shape(filters.search_term, sort)
    matched = [p for p in products if matches_search(p, filters.search_term)]
    return order_products(matched, shape, filters.search_term)
