"""
Marketplace email templates: plain-text subject and body per template name.
"""

from typing import Callable


def _order_confirmation(context: dict) -> tuple[str, str]:
    numbers = context.get("order_numbers") or []
    subject = "Order received"
    if len(numbers) == 1:
        subject = f"Order received - #{numbers[0]}"
    lines = "\n".join(f"  - {n}" for n in numbers)
    body = f"""Thank you for your order!

Order numbers:
{lines}

Total: {context.get("total", "")}

We'll email you again when your items ship.
"""
    return subject, body


def _order_completed(context: dict) -> tuple[str, str]:
    number = context.get("order_number", "")
    return (
        f"Order delivered - #{number}",
        f"Your order #{number} has been delivered. Thanks for shopping with us!\n",
    )


def _order_status(context: dict) -> tuple[str, str]:
    status = context.get("status", "")
    return (
        f"Your order is now {status}",
        f"Order {context.get('order_id', '')} changed status to {status}.\n",
    )


def _welcome(context: dict) -> tuple[str, str]:
    name = context.get("first_name") or "there"
    return "Welcome to the marketplace", f"Hi {name},\n\nYour account is ready.\n"


def _low_stock(context: dict) -> tuple[str, str]:
    return (
        "Low stock alert",
        f"Product {context.get('product_id', '')} has "
        f"{context.get('remaining', 0)} unit(s) left.\n",
    )


TEMPLATES: dict[str, Callable[[dict], tuple[str, str]]] = {
    "order_confirmation": _order_confirmation,
    "order_completed": _order_completed,
    "order_status": _order_status,
    "welcome": _welcome,
    "low_stock": _low_stock,
}


def render(template: str, context: dict) -> tuple[str, str]:
    """Return (subject, body). Unknown templates raise KeyError."""
    return TEMPLATES[template](context)
