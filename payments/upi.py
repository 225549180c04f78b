from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode


def build_upi_link(
    upi_id: str,
    amount: Decimal,
    merchant_name: str,
    transaction_ref: Optional[str] = None,
    note: Optional[str] = None,
) -> str:
    """upi://pay deep link; ``tr`` carries our payment id back in the payer's app."""
    params = {
        "pa": upi_id,
        "pn": merchant_name,
        "am": f"{amount:.2f}",
        "cu": "INR",
        "tn": note or f"Payment to {merchant_name}",
    }
    if transaction_ref:
        params["tr"] = transaction_ref
    return f"upi://pay?{urlencode(params)}"
