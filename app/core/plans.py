from __future__ import annotations

import os
from datetime import timedelta


# subscriptions.plan_id is a foreign key to plans.id; the paid
# professional-service plan is looked up by that numeric id.
DEFAULT_PROSERVICE_PLAN_ID = 1

PRODUCT_PROSERVICE_MONTHLY = "PROSERVICE_Monthly"
PRODUCT_PROSERVICE_YEARLY = "PROSERVICE_Yearly"
PRODUCT_PROSERVICE_LIFETIME = "PROSERVICE_Lifetime"

DEFAULT_RECURRING_PRODUCTS = (
    PRODUCT_PROSERVICE_MONTHLY,
    PRODUCT_PROSERVICE_YEARLY,
)
DEFAULT_ONE_OFF_PRODUCTS = (PRODUCT_PROSERVICE_LIFETIME,)

# One-off purchases never expire. Instead of a NULL end date the ledger gets
# a synthetic end this far after the start, so expiry checks stay uniform.
FAR_FUTURE_OFFSET = timedelta(days=365 * 100 + 25)


def _split_env(name: str) -> tuple[str, ...] | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def recurring_products() -> tuple[str, ...]:
    return _split_env("PROSERVICE_PRODUCT_IDS") or DEFAULT_RECURRING_PRODUCTS


def one_off_products() -> tuple[str, ...]:
    return _split_env("PROSERVICE_ONE_OFF_PRODUCT_IDS") or DEFAULT_ONE_OFF_PRODUCTS


def proservice_plan_id() -> int:
    raw = os.getenv("PROSERVICE_PLAN_ID", "").strip()
    if not raw:
        return DEFAULT_PROSERVICE_PLAN_ID
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(
            f"PROSERVICE_PLAN_ID must be the integer plans.id of the paid plan, got {raw!r}"
        ) from None


def product_plan_map() -> dict[str, int]:
    """
    SKU -> plans.id. Monthly, yearly and one-off SKUs all grant the
    same professional-service plan.
    """
    plan_id = proservice_plan_id()
    mapping = {product: plan_id for product in recurring_products()}
    mapping.update({product: plan_id for product in one_off_products()})
    return mapping


def resolve_plan(product_id: str | None) -> int | None:
    if not product_id:
        return None
    return product_plan_map().get(str(product_id).strip())


def is_one_off_product(product_id: str | None) -> bool:
    if not product_id:
        return False
    return str(product_id).strip() in one_off_products()
