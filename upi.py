"""
UPI payment strings and QR image endpoints.

Strings follow the ``upi://pay?`` convention: payee address, payee name,
amount with two decimals, currency, note, reference, merchant code and the
default mode/purpose codes. The QR image itself is rendered by a public
endpoint; the first reachable one wins.
"""

import logging
import random
import re
import string
import time
from typing import List, Optional
from urllib.parse import parse_qs, quote, urlparse

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

UPI_ADDRESS_RE = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z0-9.-]+$")
MAX_UPI_AMOUNT = 100000

QR_ENDPOINTS = [
    "https://api.qrserver.com/v1/create-qr-code/?size=400x400&data={data}&format=png&margin=10&ecc=M&color=000000&bgcolor=ffffff",
    "https://chart.googleapis.com/chart?chs=400x400&cht=qr&chl={data}&choe=UTF-8&chld=M|2",
    "https://qr-code-generator-api.herokuapp.com/api/qr?data={data}&size=400x400&format=png",
]


class UPIPaymentData(BaseModel):
    payee_address: str
    payee_name: str
    amount: float
    transaction_note: Optional[str] = None
    transaction_ref: Optional[str] = None
    merchant_code: str = "0000"
    currency: str = "INR"


class UPIValidation(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    upi_string: Optional[str] = None


def generate_transaction_ref() -> str:
    timestamp = str(int(time.time() * 1000))
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"DK{timestamp[-8:]}{suffix}"


def is_valid_upi_address(address: str) -> bool:
    return bool(address) and bool(UPI_ADDRESS_RE.match(address)) and 5 <= len(address) <= 50


def generate_upi_string(data: UPIPaymentData) -> str:
    note = data.transaction_note or f"Payment to {data.payee_name}"
    ref = data.transaction_ref or generate_transaction_ref()
    params = [
        f"pa={data.payee_address}",
        f"pn={quote(data.payee_name, safe='')}",
        f"am={data.amount:.2f}",
        f"cu={data.currency}",
        f"tn={quote(note, safe='')}",
        f"tr={ref}",
        f"mc={data.merchant_code}",
        "mode=02",
        "purpose=00",
    ]
    return "upi://pay?" + "&".join(params)


def validate_upi_data(data: UPIPaymentData) -> UPIValidation:
    errors = []

    if not data.payee_address:
        errors.append("Payee address is required")
    elif not is_valid_upi_address(data.payee_address):
        errors.append("Invalid UPI address format")

    if not data.payee_name or not data.payee_name.strip():
        errors.append("Payee name is required")
    elif len(data.payee_name) > 50:
        errors.append("Payee name must be less than 50 characters")

    if not data.amount or data.amount <= 0:
        errors.append("Amount must be greater than 0")
    elif data.amount > MAX_UPI_AMOUNT:
        errors.append("Amount cannot exceed 100000")

    if data.transaction_note and len(data.transaction_note) > 100:
        errors.append("Transaction note must be less than 100 characters")

    if errors:
        return UPIValidation(is_valid=False, errors=errors)
    return UPIValidation(is_valid=True, upi_string=generate_upi_string(data))


def validate_upi_string(upi_string: str) -> UPIValidation:
    if not upi_string:
        return UPIValidation(is_valid=False, errors=["UPI string is required"])

    errors = []
    if not upi_string.startswith("upi://pay?"):
        errors.append("Invalid UPI string format")

    params = parse_qs(urlparse(upi_string).query)
    for name in ("pa", "pn", "am", "cu"):
        if name not in params:
            errors.append(f"Missing required parameter: {name}")

    if "pa" in params:
        address = params["pa"][0]
        if "@" not in address or len(address) < 5:
            errors.append("Invalid UPI ID format")

    if "am" in params:
        try:
            amount = float(params["am"][0])
        except ValueError:
            amount = 0
        if not amount > 0:
            errors.append("Invalid amount in UPI string")

    return UPIValidation(is_valid=not errors, errors=errors, upi_string=upi_string if not errors else None)


def qr_code_urls(upi_string: str) -> List[str]:
    data = quote(upi_string, safe="")
    return [endpoint.format(data=data) for endpoint in QR_ENDPOINTS]


def resolve_qr_url(upi_string: str, client: httpx.Client = None, timeout: float = 3.0) -> str:
    """Return the first QR endpoint that answers, or the primary one if none do."""
    urls = qr_code_urls(upi_string)
    owns_client = client is None
    client = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        for url in urls:
            try:
                response = client.head(url)
            except httpx.HTTPError as e:
                logger.warning("QR endpoint unreachable (%s): %s", urlparse(url).netloc, e)
                continue
            if response.status_code < 400:
                return url
            logger.warning("QR endpoint %s answered %s", urlparse(url).netloc, response.status_code)
    finally:
        if owns_client:
            client.close()
    return urls[0]
