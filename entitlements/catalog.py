from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping

from .errors import UnknownProductError
from .models import TokenKind


@dataclass(frozen=True)
class TokenProduct:
    """A one-off purchasable token pack. ``amount_cents`` is the list price."""

    product_id: str
    name: str
    description: str
    amount_cents: int
    tokens: Mapping[TokenKind, int]

    def __post_init__(self) -> None:
        if not self.tokens:
            raise ValueError(f"product '{self.product_id}' grants no tokens")
        for kind, amount in self.tokens.items():
            if amount <= 0:
                raise ValueError(f"product '{self.product_id}' grants non-positive {kind.value}")
        object.__setattr__(self, "tokens", MappingProxyType({TokenKind(k): int(v) for k, v in self.tokens.items()}))

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.product_id,
            "name": self.name,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "tokens": {kind.value: amount for kind, amount in self.tokens.items()},
        }


def _product(product_id: str, name: str, description: str, amount_cents: int, **tokens: int) -> TokenProduct:
    return TokenProduct(
        product_id=product_id,
        name=name,
        description=description,
        amount_cents=amount_cents,
        tokens={TokenKind(kind): amount for kind, amount in tokens.items()},
    )


TOKEN_PRODUCTS: Mapping[str, TokenProduct] = MappingProxyType(
    {
        p.product_id: p
        for p in (
            _product("ai_tokens_5", "5 AI Tokens", "Generate 5 AI meal plans or recipe suggestions", 499, generation_tokens=5),
            _product("ai_tokens_15", "15 AI Tokens", "Best value for regular AI users", 1199, generation_tokens=15),
            _product("ai_tokens_50", "50 AI Tokens", "For power users", 2999, generation_tokens=50),
            _product("streak_shields_3", "3 Streak Shields", "Protect your streak during busy days", 299, streak_shields=3),
            _product("streak_shields_10", "10 Streak Shields", "Never lose a streak again", 799, streak_shields=10),
            _product("export_single", "Single PDF Export", "Generate one healthcare provider report", 199, export_tokens=1),
            _product("export_5", "5 PDF Exports", "Perfect for quarterly doctor visits", 699, export_tokens=5),
        )
    }
)


def get_product(product_id: str) -> TokenProduct:
    product = TOKEN_PRODUCTS.get(str(product_id).strip())
    if product is None:
        raise UnknownProductError(product_id)
    return product


def products_granting(kind: TokenKind) -> List[TokenProduct]:
    """Packs that grant ``kind``, cheapest first. Used for upsell options."""
    return sorted(
        (p for p in TOKEN_PRODUCTS.values() if TokenKind(kind) in p.tokens),
        key=lambda p: p.amount_cents,
    )
