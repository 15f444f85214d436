"""
Storefront Service — 注文ステータス

状態遷移:
    PENDING → PAID → SHIPPED → DELIVERED
    PENDING / PAID / SHIPPED → CANCELLED   (キャンセルは終端以外から)
    DELIVERED, CANCELLED は終端(そこから先へは遷移しない)

ステータスが保存されていない注文は PENDING として扱う。
表示用の設定(ラベル・アイコン・色)は遷移ロジックとは無関係。
"""

from dataclasses import dataclass
from enum import Enum

from .errors import IllegalTransition


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, nexts in ALLOWED_TRANSITIONS.items() if not nexts)


@dataclass(frozen=True)
class StatusDisplay:
    label: str
    icon: str
    color: str           # バッジ用 (背景 + 文字)
    icon_color: str      # アイコンだけを出す場所用
    icon_bg_color: str


STATUS_DISPLAY: dict[OrderStatus, StatusDisplay] = {
    OrderStatus.PENDING: StatusDisplay(
        label="Pending",
        icon="clock",
        color="bg-yellow-100 text-yellow-800",
        icon_color="text-amber-600 dark:text-amber-400",
        icon_bg_color="bg-amber-100 dark:bg-amber-900/30",
    ),
    OrderStatus.PAID: StatusDisplay(
        label="Paid",
        icon="credit-card",
        color="bg-green-100 text-green-800",
        icon_color="text-emerald-600 dark:text-emerald-400",
        icon_bg_color="bg-emerald-100 dark:bg-emerald-900/30",
    ),
    OrderStatus.SHIPPED: StatusDisplay(
        label="Shipped",
        icon="truck",
        color="bg-blue-100 text-blue-800",
        icon_color="text-blue-600 dark:text-blue-400",
        icon_bg_color="bg-blue-100 dark:bg-blue-900/30",
    ),
    OrderStatus.DELIVERED: StatusDisplay(
        label="Delivered",
        icon="package",
        color="bg-zinc-100 text-zinc-800",
        icon_color="text-emerald-600 dark:text-emerald-400",
        icon_bg_color="bg-emerald-100 dark:bg-emerald-900/30",
    ),
    OrderStatus.CANCELLED: StatusDisplay(
        label="Cancelled",
        icon="x-circle",
        color="bg-red-100 text-red-800",
        icon_color="text-red-600 dark:text-red-400",
        icon_bg_color="bg-red-100 dark:bg-red-900/30",
    ),
}


def resolve_status(value: str | None) -> OrderStatus:
    """保存値を OrderStatus にする。未設定・未知の値は PENDING。"""
    try:
        return OrderStatus(value) if value else OrderStatus.PENDING
    except ValueError:
        return OrderStatus.PENDING


def display_for(value: str | None) -> StatusDisplay:
    return STATUS_DISPLAY[resolve_status(value)]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: str | None, target: str) -> tuple[OrderStatus, OrderStatus]:
    """
    遷移できるか確認し、(現在, 遷移先) を返す。

    遷移先が不正な値、または遷移表にない場合は IllegalTransition。
    現在と同じステータスへの変更は呼び出し側で何もしない扱いにする。
    """
    try:
        target_status = OrderStatus(target)
    except ValueError:
        raise IllegalTransition(f'Unknown order status "{target}"') from None
    current_status = resolve_status(current)
    if current_status is target_status or can_transition(current_status, target_status):
        return current_status, target_status
    raise IllegalTransition(
        f"Cannot change order status from {current_status.value} to {target_status.value}"
    )
