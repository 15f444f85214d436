"""
Storefront Service — カタログ・カート検証・チェックアウト・注文
"""
