"""
Storefront Service — ドメインモデル

カートの明細(CartLineItem)はクライアントが主張する値で、信用しない。
検証済み明細(ValidatedLineItem)はカート検証でしか作られず、
価格は必ずカタログの値を持つ。決済セッションの組み立ては
ValidatedLineItem しか受け取らないので、未検証の価格が
決済に流れ込むことは型の上で起きない。
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """認証プロバイダから得た呼び出し元"""
    user_id: str
    email: str = ""
    name: str = ""
    is_admin: bool = False


class Product(BaseModel):
    """カタログ上の商品(読み取った瞬間だけ正しい)"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    slug: str = ""
    description: str = ""
    price: Decimal = Field(ge=0)
    stock: int = Field(ge=0)
    image_url: str | None = None
    category_slug: str = ""
    category_title: str = ""
    color: str = ""
    material: str = ""
    featured: bool = False


class CartLineItem(BaseModel):
    """クライアントが送ってきたカート明細。name / price / image は参考値。"""
    product_id: str
    name: str = ""
    price: Decimal | None = None
    quantity: int = Field(gt=0)
    image: str | None = None


class ValidatedLineItem(BaseModel):
    """カート検証を通過した明細。作成後は変更しない。"""
    model_config = ConfigDict(frozen=True)

    product: Product
    quantity: int = Field(gt=0)

    @property
    def product_id(self) -> str:
        return self.product.id

    @property
    def unit_price(self) -> Decimal:
        return self.product.price


class CheckoutSession(BaseModel):
    """決済プロバイダが発行したホスト型チェックアウトセッション"""
    model_config = ConfigDict(frozen=True)

    id: str
    url: str | None = None
    user_id: str = ""
    product_ids: list[str] = []
    quantities: list[int] = []


class ShippingAddress(BaseModel):
    name: str | None = None
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country: str | None = None


class OrderItem(BaseModel):
    product_id: str
    product_name: str = ""
    quantity: int
    price: Decimal

