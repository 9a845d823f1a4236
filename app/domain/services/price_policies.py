"""
Pricing helpers - חישובי מחיר טהורים (ללא DB), כדי לבדוק אותם ישירות.

כל הסכומים הם Decimal; float נכנס רק דרך המרה מפורשת של מחרוזת.
"""
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Protocol

from app.core.exceptions import InvalidPriceDataError, PriceValidationError
from app.db.models.price_policy import PolicyType

HUNDRED = Decimal("100")
ZERO = Decimal("0")
# הפרש מינימלי שנחשב "מחיר אחר" בזיהוי קונפליקט
CONFLICT_PRICE_EPSILON = Decimal("0.01")


class PolicyLike(Protocol):
    policy_type: str
    value: Any


@dataclass(frozen=True)
class ExtractedPrices:
    price: Decimal
    cost_price: Decimal | None = None
    sale_price: Decimal | None = None
    promotional_price: Decimal | None = None
    wholesale_price: Decimal | None = None
    margin_percent: Decimal | None = None
    markup_percent: Decimal | None = None
    applied_policies: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PriceChange:
    old_price: Decimal
    new_price: Decimal
    absolute_change: Decimal
    change_percent: Decimal
    is_significant: bool

    @property
    def is_increase(self) -> bool:
        return self.absolute_change > 0


def to_decimal(value: Any) -> Decimal | None:
    """המרה סלחנית: None / ריק / לא-מספרי → None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            result = Decimal(text)
        except InvalidOperation:
            return None
    if not result.is_finite():
        return None
    return result


def extract_prices(remote_product: dict[str, Any]) -> ExtractedPrices:
    """
    שדות המחיר של מוצר Bling.

    preco חובה (מספרי, לא שלילי). שדות אופציונליים לא-מספריים מתעלמים מהם;
    מבצע/סיטונאי רק כשהם חיוביים.
    """
    price = to_decimal(remote_product.get("preco"))
    if price is None:
        raise InvalidPriceDataError(
            "Bling product has no numeric price",
            details={"bling_product_id": str(remote_product.get("id")), "preco": str(remote_product.get("preco"))},
        )
    if price < 0:
        raise InvalidPriceDataError(
            "Bling product has a negative price",
            details={"bling_product_id": str(remote_product.get("id")), "preco": str(price)},
        )

    cost = to_decimal(remote_product.get("precoCusto"))
    sale = to_decimal(remote_product.get("precoVenda"))
    promotional = to_decimal(remote_product.get("precoPromocional"))
    wholesale = to_decimal(remote_product.get("precoAtacado"))

    margin = markup = None
    if cost is not None and sale is not None and cost > 0 and sale > 0:
        margin = (sale - cost) / sale * HUNDRED
        markup = (sale - cost) / cost * HUNDRED

    return ExtractedPrices(
        price=price,
        cost_price=cost,
        sale_price=sale,
        promotional_price=promotional if promotional is not None and promotional > 0 else None,
        wholesale_price=wholesale if wholesale is not None and wholesale > 0 else None,
        margin_percent=margin,
        markup_percent=markup,
    )


def apply_policy(price: Decimal, policy_type: str, value: Decimal) -> Decimal:
    policy_type = PolicyType(policy_type)
    if policy_type == PolicyType.MARKUP_PERCENT:
        return price * (1 + value / HUNDRED)
    if policy_type == PolicyType.DISCOUNT_PERCENT:
        return price * (1 - value / HUNDRED)
    if policy_type == PolicyType.FIXED_PRICE:
        return value
    if policy_type == PolicyType.MIN_PRICE:
        return max(price, value)
    return min(price, value)


def apply_policies(
    prices: ExtractedPrices,
    *,
    global_markup_percent: Decimal | float = ZERO,
    product_policies: Iterable[PolicyLike] = (),
    category_policies: Iterable[PolicyLike] = (),
) -> ExtractedPrices:
    """
    שרשרת המדיניות: markup גלובלי, ואז מדיניות המוצר לפי הסדר שהתקבל.
    מדיניות הקטגוריה מוחלת רק כשלמוצר אין מדיניות משלו.
    """
    price = prices.price
    sale = prices.sale_price
    applied: list[str] = []

    markup = to_decimal(global_markup_percent) or ZERO
    if markup > 0:
        factor = 1 + markup / HUNDRED
        price = price * factor
        if sale is not None:
            sale = sale * factor
        applied.append(f"global_markup:{markup}")

    product_policies = list(product_policies)
    chain = product_policies if product_policies else list(category_policies)
    for policy in chain:
        value = to_decimal(policy.value)
        if value is None:
            continue
        price = apply_policy(price, policy.policy_type, value)
        applied.append(f"{policy.policy_type}:{value}")

    return replace(prices, price=max(price, ZERO), sale_price=sale, applied_policies=tuple(applied))


def round_price(value: Decimal | None, places: int = 2) -> Decimal | None:
    if value is None:
        return None
    quantum = Decimal(1).scaleb(-places)
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def round_prices(prices: ExtractedPrices, places: int = 2) -> ExtractedPrices:
    return replace(
        prices,
        price=round_price(prices.price, places),
        cost_price=round_price(prices.cost_price, places),
        sale_price=round_price(prices.sale_price, places),
        promotional_price=round_price(prices.promotional_price, places),
        wholesale_price=round_price(prices.wholesale_price, places),
        margin_percent=round_price(prices.margin_percent, places),
        markup_percent=round_price(prices.markup_percent, places),
    )


def change_percent(old_price: Decimal, new_price: Decimal) -> Decimal:
    if old_price == 0:
        return ZERO
    return (new_price - old_price) / old_price * HUNDRED


def validate_price_change(
    old_price: Decimal,
    new_price: Decimal,
    *,
    max_increase_percent: Decimal | float,
    max_decrease_percent: Decimal | float,
) -> None:
    """קפיצה חריגה (מעל התקרה) כנראה טעות הקלדה ב-Bling - לא מחילים"""
    if old_price <= 0:
        return
    percent = change_percent(old_price, new_price)
    if percent > Decimal(str(max_increase_percent)):
        raise PriceValidationError(
            f"Price increase of {percent:.2f}% exceeds the {max_increase_percent}% limit",
            details={"old_price": str(old_price), "new_price": str(new_price)},
        )
    if -percent > Decimal(str(max_decrease_percent)):
        raise PriceValidationError(
            f"Price decrease of {-percent:.2f}% exceeds the {max_decrease_percent}% limit",
            details={"old_price": str(old_price), "new_price": str(new_price)},
        )


def detect_significant_change(
    old_price: Decimal, new_price: Decimal, tolerance_percent: Decimal | float
) -> PriceChange:
    absolute = new_price - old_price
    percent = change_percent(old_price, new_price)
    if old_price == 0:
        significant = new_price != 0
    else:
        significant = abs(percent) >= Decimal(str(tolerance_percent))
    return PriceChange(
        old_price=old_price,
        new_price=new_price,
        absolute_change=absolute,
        change_percent=percent,
        is_significant=significant,
    )


def prices_differ(local_price: Decimal, new_price: Decimal) -> bool:
    return abs(new_price - local_price) > CONFLICT_PRICE_EPSILON
