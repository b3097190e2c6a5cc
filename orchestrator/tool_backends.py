"""
Local tool handlers for the shipped agent sets.

The data is canned demo data; a deployment swaps these handlers for real
lookups by registering its own ToolBackend. Tools an agent declares without a
handler here (e.g. `addToCart`) are resolved on the remote side.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict

from .tools import ToolBackend, ToolContext


POLICY_DOCUMENTS = [
    {
        "id": "ID-010",
        "name": "Family Plan Policy",
        "topic": "family plan options",
        "content": (
            "The family plan allows up to 5 lines per account. All lines share "
            "a single data pool. Each additional line after the first receives "
            "a 10% discount. All lines must be on the same account."
        ),
    },
    {
        "id": "ID-020",
        "name": "Promotions and Discounts Policy",
        "topic": "promotions and discounts",
        "content": (
            "The Summer Unlimited Data Sale provides a 20% discount on the "
            "Unlimited Plus plan for the first 6 months for new activations "
            "completed by July 31."
        ),
    },
    {
        "id": "ID-030",
        "name": "International Plans Policy",
        "topic": "international plans",
        "content": (
            "International plans are available and include discounted calling, "
            "texting, and data usage in over 100 countries."
        ),
    },
    {
        "id": "ID-040",
        "name": "Handset Offers Policy",
        "topic": "new handsets",
        "content": (
            "Handsets from brands such as iPhone and Google are available. The "
            "iPhone 16 is $200 and the Google Pixel 8 is available for $0, both "
            "with an additional 18-month commitment."
        ),
    },
]

ACCOUNTS = {
    "+1 (206) 135-1246": {
        "account_id": "NT-123456",
        "name": "Alex Johnson",
        "plan": "Unlimited Plus",
        "balance_due": "$42.17",
        "last_bill_date": "2024-05-15",
        "lines": 2,
    },
}

STORES = [
    {
        "name": "NewTelco San Francisco Downtown Store",
        "address": "1 Market St, San Francisco, CA 94105",
        "zip_code": "94105",
        "hours": "Mon-Sat 10am-7pm, Sun 11am-5pm",
    },
    {
        "name": "NewTelco Seattle Flagship",
        "address": "400 Pine St, Seattle, WA 98101",
        "zip_code": "98101",
        "hours": "Mon-Sat 10am-8pm, Sun 11am-6pm",
    },
]

CUSTOMERS = {
    "(206) 135-1246": {
        "date_of_birth": "1988-02-29",
        "last_4_digits": "4321",
        "name": "Alex Johnson",
    },
}

ORDERS = {
    "(206) 135-1246": [
        {
            "order_id": "SNP-20230914-001",
            "order_date": "2024-09-14",
            "region": "US",
            "items": [
                {"item_id": "SNB-TT-X01", "item_name": "Twin Tip Snowboard X", "category": "snowboard", "price": 249.99},
                {"item_id": "SNB-BOOT-ALM02", "item_name": "All-Mountain Snowboard Boots", "category": "boots", "price": 139.99},
            ],
            "status": "delivered",
        },
    ],
}

RETURN_POLICY = {
    "window_days": 30,
    "condition": "Items must be unused and in original packaging.",
    "exceptions": {"boots": "Boots can be returned within 60 days if unworn outdoors."},
}

PROMOTIONS = [
    {"item_id": "PROMO-FREESTYLE", "name": "Freestyle Pro Board", "category": "snowboard", "discount": "20%"},
    {"item_id": "PROMO-GLOVES", "name": "Heated Gloves", "category": "accessories", "discount": "15%"},
]


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


# --- chat_supervisor ---


def lookup_policy_document(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    topic = str(args.get("topic", "")).lower()
    words = [w for w in re.split(r"\W+", topic) if len(w) > 2]
    matches = [
        doc for doc in POLICY_DOCUMENTS
        if any(w in doc["topic"] or w in doc["name"].lower() for w in words)
    ]
    return {"topic": topic, "documents": matches}


def get_user_account_info(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    wanted = _digits(str(args.get("phone_number", "")))
    for phone, account in ACCOUNTS.items():
        if wanted and _digits(phone).endswith(wanted[-10:]):
            return {"found": True, "account": account}
    return {"found": False}


def find_nearest_store(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    zip_code = str(args.get("zip_code", "")).strip()
    if not zip_code:
        raise ValueError("zip_code is required")
    stores = sorted(STORES, key=lambda s: abs(int(s["zip_code"]) - int(_digits(zip_code) or 0)))
    return {"stores": stores[:1]}


# --- customer_service_retail ---


def authenticate_user_information(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    customer = CUSTOMERS.get(str(args.get("phone_number", "")).strip())
    verified = (
        customer is not None
        and customer["date_of_birth"] == args.get("date_of_birth")
        and customer["last_4_digits"] == args.get("last_4_digits")
    )
    return {"success": verified, "name": customer["name"] if verified else None}


def save_or_update_address(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    address = args.get("new_address") or {}
    missing = [k for k in ("street", "city", "state", "postal_code") if not address.get(k)]
    if missing:
        raise ValueError(f"address is missing: {', '.join(missing)}")
    return {"success": True}


def lookup_orders(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    return {"orders": ORDERS.get(str(args.get("phoneNumber", "")).strip(), [])}


def retrieve_policy(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    category = str(args.get("itemCategory", "")).lower()
    policy = {
        "region": args.get("region"),
        "window_days": RETURN_POLICY["window_days"],
        "condition": RETURN_POLICY["condition"],
    }
    exception = RETURN_POLICY["exceptions"].get(category)
    if exception:
        policy["exception"] = exception
    return policy


def initiate_return(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    order_id = args.get("orderId")
    item_name = args.get("itemName")
    for orders in ORDERS.values():
        for order in orders:
            if order["order_id"] != order_id:
                continue
            if any(i["item_name"] == item_name for i in order["items"]):
                return {"success": True, "return_id": f"RET-{order_id}-{_digits(ctx.call_id)[-4:] or '0001'}"}
            raise ValueError(f"item '{item_name}' is not part of order {order_id}")
    raise ValueError(f"unknown order {order_id}")


def lookup_new_sales(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    category = str(args.get("category", "any"))
    promos = [p for p in PROMOTIONS if category == "any" or p["category"] == category]
    return {"promotions": promos}


_BACKENDS: Dict[str, Dict[str, Callable[[Dict[str, Any], ToolContext], Any]]] = {
    "chat_supervisor": {
        "lookupPolicyDocument": lookup_policy_document,
        "getUserAccountInfo": get_user_account_info,
        "findNearestStore": find_nearest_store,
    },
    "customer_service_retail": {
        "authenticate_user_information": authenticate_user_information,
        "save_or_update_address": save_or_update_address,
        "lookupOrders": lookup_orders,
        "retrievePolicy": retrieve_policy,
        "initiateReturn": initiate_return,
        "lookupNewSales": lookup_new_sales,
    },
}


def backend_for(agent_set: str) -> ToolBackend:
    """A fresh backend with the handlers for `agent_set` (empty for unknown sets)."""
    return ToolBackend(_BACKENDS.get(agent_set, {}))
