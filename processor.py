# processor.py
# Mapping of Zoho documents (invoice, credit/debit note, estimate) to the MRA
# e-invoice JSON schema. Used by app.py. No network calls here.

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import SellerProfile, Settings
from errors import DocumentValidationError
from mra_client import format_request_datetime

log = logging.getLogger("mra-mapping")


# -------------------- Money helpers --------------------
CENT = Decimal("0.01")
ZERO = Decimal("0")
_NUMERIC_JUNK = re.compile(r"[^0-9.\-]+")

def q_money(x, field: str = "invoice_data") -> Decimal:
    try:
        return Decimal(str(x)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # more integer digits than the decimal context can carry to 2 places
        raise DocumentValidationError(field, f"Amount {x} is out of range")

def money_str(x, field: str = "invoice_data") -> str:
    q = q_money(x, field)
    if q == ZERO:
        q = ZERO.quantize(CENT)  # no "-0.00"
    return str(q)

def numeric(v) -> Decimal:
    """Lenient number parsing: drop everything but digits, '.' and '-'; junk -> 0."""
    if v is None or v == "" or isinstance(v, bool):
        return ZERO
    if isinstance(v, (int, float, Decimal)):
        # already numeric; str() may use exponent notation the cleanup would mangle
        d = Decimal(str(v))
        return d if d.is_finite() else ZERO
    cleaned = _NUMERIC_JUNK.sub("", str(v))
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return ZERO

def plain_number(d: Decimal) -> str:
    """Render a quantity without trailing zeros or exponent (2.00 -> "2")."""
    if d == d.to_integral_value():
        return str(int(d))
    return format(d.normalize(), "f")

def _first(*values):
    """First truthy value, like a chain of `a || b || c`."""
    for v in values:
        if v:
            return v
    return values[-1] if values else None

def _text(v) -> str:
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return "" if v is None else str(v)


# -------------------- Dates --------------------
ISO_DATETIME_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2})")

def to_mra_date(value: Any, field: str = "invoice_data.created_time") -> str:
    """
    Convert an issue date to MRA's "yyyyMMdd HH:mm:ss".

    ISO-like strings keep their wall-clock digits as written; anything else
    parseable is converted to local time.
    """
    if not value or not isinstance(value, str):
        raise DocumentValidationError(field, "Invalid datetime string")

    m = ISO_DATETIME_PREFIX.match(value)
    if m:
        return f"{m.group(1).replace('-', '')} {m.group(2)}"

    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise DocumentValidationError(
            field,
            "Invalid invoice date/time format. Provide ISO datetime (e.g. 2025-09-15T12:00:00+0400)",
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone()
    return format_request_datetime(parsed)


# -------------------- Tax codes & items --------------------

def detect_tax_code(item: Dict[str, Any]) -> str:
    """
    TC01 standard rated (15%), TC02 zero rated, TC03 exempt, TC04 out of scope.
    Looks at the first tax entry, then at the item-level percentage.
    """
    taxes = item.get("line_item_taxes") or []
    if isinstance(taxes, list) and taxes:
        first = taxes[0] if isinstance(taxes[0], dict) else {}
        pct = numeric(first.get("tax_percentage"))
        name = str(first.get("tax_name") or "").upper()
        if pct == 15 or "15" in name:
            return "TC01"
        if pct == 0 or "VAT 0" in name or "(0%)" in name:
            return "TC02"
        if "EXEMPT" in name:
            return "TC03"
        if "VAT" in name:
            return "TC01"

    if "tax_percentage" in item:
        p = numeric(item.get("tax_percentage"))
        if p == 15:
            return "TC01"
        if p == 0:
            return "TC02"

    return "TC04"


def _item_tax_amount(item: Dict[str, Any], item_total: Decimal) -> Decimal:
    taxes = item.get("line_item_taxes")
    if isinstance(taxes, list) and taxes:
        return sum(
            (numeric(_first(t.get("tax_amount"), t.get("tax_amount_formatted"), 0))
             for t in taxes if isinstance(t, dict)),
            ZERO,
        )
    if "tax_amount" in item:
        return numeric(item.get("tax_amount"))

    pct = numeric(item.get("tax_percentage"))
    if pct:
        return q_money(item_total * pct / 100)
    return ZERO


def map_line_item(item: Dict[str, Any], index: int, currency: str) -> Dict[str, str]:
    quantity = numeric(_first(item.get("quantity"), item.get("qty"), 1))
    unit_price = numeric(_first(
        item.get("rate"), item.get("sales_rate"), item.get("rate_formatted"), item.get("unit_price"), 0,
    ))
    item_total = numeric(_first(
        item.get("item_total"), item.get("item_total_formatted"), item.get("amount"), item.get("total"),
        quantity * unit_price,
    ))
    tax_amt = _item_tax_amount(item, item_total)

    discounted_value = numeric(_first(
        item.get("discounted_value"), item.get("discountedValue"), item.get("item_total"), item_total,
    ))
    amt_wo_vat = q_money(item_total - tax_amt)
    total_price = q_money(amt_wo_vat + tax_amt)

    return {
        "itemNo": str(index + 1),
        "taxCode": detect_tax_code(item),
        "nature": "GOODS",
        "currency": currency,
        "itemDesc": _text(_first(item.get("name"), item.get("description"), "")),
        "quantity": plain_number(quantity),
        "unitPrice": money_str(unit_price),
        "discount": money_str(numeric(_first(item.get("discount_amount"), item.get("discount"), 0))),
        "discountedValue": money_str(discounted_value),
        "amtWoVatCur": money_str(amt_wo_vat),
        "amtWoVatMur": money_str(amt_wo_vat),
        "vatAmt": money_str(tax_amt),
        "totalPrice": money_str(total_price),
        "productCodeOwn": _text(_first(item.get("item_id"), item.get("product_code"), item.get("sku"), "")),
    }


def compute_totals(items: Sequence[Dict[str, str]]) -> Dict[str, Decimal]:
    totals = {"totalAmtWoVatCur": ZERO, "totalVatAmount": ZERO, "invoiceTotal": ZERO, "discountTotalAmount": ZERO}
    for it in items:
        totals["totalAmtWoVatCur"] += numeric(it["amtWoVatCur"])
        totals["totalVatAmount"] += numeric(it["vatAmt"])
        totals["invoiceTotal"] += numeric(it["totalPrice"])
        totals["discountTotalAmount"] += numeric(it["discount"])
    return totals


def vat_mix(items: Sequence[Dict[str, str]]) -> Tuple[bool, bool]:
    """(has a VATable TC01 item, has a non-VATable item)."""
    codes = {it["taxCode"] for it in items}
    return "TC01" in codes, bool(codes & {"TC02", "TC03", "TC04"})


# -------------------- Parties & chaining --------------------

def previous_note_hash(prev: Any) -> str:
    """SHA-256 (upper hex) of date+total+brn+identifier of the previous document, "0" if unknown."""
    if not isinstance(prev, dict):
        return "0"
    prev_date = _text(_first(prev.get("dateTime"), prev.get("date_time"), prev.get("date"), ""))
    prev_total = _text(_first(prev.get("totalAmtPaid"), prev.get("total_amt_paid"), prev.get("total"),
                              prev.get("totalAmt"), ""))
    prev_brn = _text(_first(prev.get("brn"), prev.get("prevBrn"), prev.get("previous_brn"), ""))
    prev_inv = _text(_first(prev.get("invoiceIdentifier"), prev.get("invoice_id"), prev.get("invoice_number"), ""))
    if not (prev_date and prev_total and prev_brn and prev_inv):
        return "0"
    concat = f"{prev_date}{prev_total}{prev_brn}{prev_inv}"
    return hashlib.sha256(concat.encode("utf-8")).hexdigest().upper()


def seller_block(seller: SellerProfile, data: Dict[str, Any], tan: Optional[str] = None) -> Dict[str, str]:
    return {
        "name": seller.name,
        "tradeName": seller.trade_name,
        "tan": tan or seller.tan,
        "brn": seller.brn,
        "businessAddr": seller.business_addr,
        "businessPhoneNo": seller.business_phone_no,
        "ebsCounterNo": seller.ebs_counter_no,
        "cashierId": _text(data.get("cashier_id") or "SYSTEM"),
    }


def _billing_address(value: Any) -> str:
    if isinstance(value, dict):
        return _text(value.get("address") or "")
    if isinstance(value, str):
        return value
    return ""


def buyer_tan(data: Dict[str, Any]) -> str:
    return _text(_first(data.get("cf_vat"), data.get("cf_tan"), data.get("tan"), ""))


def buyer_block(data: Dict[str, Any]) -> Dict[str, str]:
    name = _first(data.get("customer_name"), data.get("customer"), data.get("buyer_name"), "")
    if not name:
        raise DocumentValidationError("invoice_data.customer_name", "Missing required buyer name: customer_name")
    tan = buyer_tan(data)
    return {
        "name": _text(name),
        "tan": tan,
        "brn": _text(_first(data.get("cf_brn"), data.get("cf_brn_number"), data.get("brn"), "")),
        "businessAddr": _billing_address(data.get("billing_address")),
        "buyerType": "VATR" if tan else "NVTR",
        "nic": _text(data.get("nic") or ""),
    }


def resolve_reference(data: Dict[str, Any], explicit: Optional[str], list_fields: Sequence[str]) -> str:
    """
    Identifier of the fiscalised invoice a credit/debit note refers to.
    Order: explicit request field, reference_number, then first entry of the reference lists.
    """
    if explicit and explicit.strip():
        return explicit.strip()

    ref = _text(data.get("reference_number")).strip()
    if ref:
        return ref

    for name in list_fields:
        entries = data.get(name)
        if not isinstance(entries, list) or not entries:
            continue
        first = entries[0]
        if isinstance(first, str) and first.strip():
            return first.strip()
        if isinstance(first, dict):
            for key in ("invoice_identifier", "invoice_number"):
                if isinstance(first.get(key), str) and first[key].strip():
                    return first[key].strip()
    return ""


# -------------------- Document profiles --------------------

@dataclass(frozen=True)
class DocumentProfile:
    """Per-document-type rules plugged into the one mapping pipeline."""

    kind: str
    type_desc: Optional[str]  # None: taken from invoiceTypeDesc, default STD
    min_items: int = 1
    max_items: Optional[int] = None
    first_item_only: bool = False
    requires_reference: bool = False
    reference_lists: Tuple[str, ...] = ()
    default_reason: Optional[str] = None  # set for notes; emits reasonStated
    date_defaults_to_now: bool = False
    use_one_item_seller_tan: bool = False


STANDARD = DocumentProfile(kind="standard", type_desc=None)
ONE_ITEM_STANDARD = DocumentProfile(
    kind="one_item", type_desc="STD", first_item_only=True, use_one_item_seller_tan=True,
)
CREDIT_NOTE = DocumentProfile(
    kind="credit_note", type_desc="CRN", requires_reference=True,
    reference_lists=("invoices_credited",), default_reason="Credit Note issued",
)
DEBIT_NOTE = DocumentProfile(
    kind="debit_note", type_desc="DRN", requires_reference=True,
    reference_lists=("invoices_referenced", "invoices_credited"), default_reason="Debit Note issued",
)
DEBIT_NOTE_SINGLE = DocumentProfile(
    kind="debit_note_single", type_desc="DRN", min_items=1, max_items=1, requires_reference=True,
    reference_lists=("invoices_referenced", "invoices_credited"), default_reason="Debit Note issued",
)
PROFORMA = DocumentProfile(kind="proforma", type_desc="PRF", min_items=2, date_defaults_to_now=True)

PROFILES = {p.kind: p for p in (STANDARD, ONE_ITEM_STANDARD, CREDIT_NOTE, DEBIT_NOTE, DEBIT_NOTE_SINGLE, PROFORMA)}


def _issue_date(profile: DocumentProfile, data: Dict[str, Any]) -> str:
    raw = _first(data.get("created_time"), data.get("date_time"), data.get("date"), None)
    if not raw:
        if profile.date_defaults_to_now:
            # UTC wall clock, as the estimate fallback has always been sent
            return format_request_datetime(datetime.now(timezone.utc))
        raise DocumentValidationError(
            "invoice_data.created_time",
            "Missing required invoice date/time. Provide invoice_data.created_time (ISO with time)",
        )
    return to_mra_date(raw)


def _select_items(profile: DocumentProfile, raw_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    count = len(raw_items)
    if count < profile.min_items:
        raise DocumentValidationError(
            "invoice_data.line_items",
            f"{profile.kind} must contain at least {profile.min_items} line item(s), got {count}",
        )
    if profile.max_items is not None and count > profile.max_items:
        raise DocumentValidationError(
            "invoice_data.line_items",
            f"{profile.kind} must contain at most {profile.max_items} line item(s), got {count}",
        )
    return raw_items[:1] if profile.first_item_only else raw_items


def map_document(
    profile: DocumentProfile,
    document_id: str,
    document_number: str,
    data: Dict[str, Any],
    settings: Settings,
    ref_invoice_number: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Map one Zoho document to an MRA invoice object according to `profile`."""
    date_issued = _issue_date(profile, data)
    raw_items = _select_items(profile, list(data.get("line_items") or []))
    buyer = buyer_block(data)

    currency = _text(data.get("currency_code") or "MUR")
    items = []
    for idx, it in enumerate(raw_items):
        try:
            items.append(map_line_item(it, idx, currency))
        except DocumentValidationError as e:
            raise DocumentValidationError(f"invoice_data.line_items[{idx}]", e.message) from e
    totals = compute_totals(items)
    total_paid = numeric(_first(
        data.get("total_paid"), data.get("amount_paid"), data.get("total"), totals["invoiceTotal"],
    ))

    if profile.requires_reference:
        reference = resolve_reference(data, ref_invoice_number, profile.reference_lists)
        if not reference:
            raise DocumentValidationError(
                "ref_invoice_number",
                "Reference invoice not found. Provide ref_invoice_number or ensure "
                "invoice_data.reference_number or the referenced invoice list contains "
                "the original invoiceIdentifier.",
            )
    else:
        reference = _text(_first(data.get("reference_number"), data.get("reference"), ""))

    seller_tan = settings.one_item_seller_tan if profile.use_one_item_seller_tan else None

    mra_invoice: Dict[str, Any] = {
        "invoiceCounter": str(document_id),
        "transactionType": _text(data.get("transactionType") or "B2C"),
        "personType": buyer["buyerType"],
        "invoiceTypeDesc": profile.type_desc or _text(data.get("invoiceTypeDesc") or "STD"),
        "currency": currency,
        "invoiceIdentifier": str(document_number),
        "invoiceRefIdentifier": reference,
        "previousNoteHash": previous_note_hash(data.get("previousInvoice")),
    }
    if profile.default_reason is not None:
        mra_invoice["reasonStated"] = (
            (reason or "").strip() or _text(data.get("notes")).strip() or profile.default_reason
        )
    mra_invoice.update({
        "totalVatAmount": money_str(totals["totalVatAmount"], "invoice_data.line_items"),
        "totalAmtWoVatCur": money_str(totals["totalAmtWoVatCur"], "invoice_data.line_items"),
        "totalAmtWoVatMur": money_str(totals["totalAmtWoVatCur"], "invoice_data.line_items"),
        "invoiceTotal": money_str(totals["invoiceTotal"], "invoice_data.line_items"),
        "discountTotalAmount": money_str(totals["discountTotalAmount"], "invoice_data.line_items"),
        "totalAmtPaid": money_str(total_paid, "invoice_data.total"),
        "dateTimeInvoiceIssued": date_issued,
        "seller": seller_block(settings.seller, data, tan=seller_tan),
        "buyer": buyer,
        "itemList": items,
        "salesTransactions": _text(data.get("salesTransactions") or "CASH"),
    })

    log.info(
        f"Mapped {profile.kind} {document_number}: {len(items)} item(s), "
        f"total {mra_invoice['invoiceTotal']} {currency}"
    )
    return mra_invoice


def map_bulk(entries: Sequence[Tuple[str, str, Dict[str, Any]]], settings: Settings) -> List[Dict[str, Any]]:
    """
    Map a batch of standard invoices given as (invoice_id, invoice_number, data).

    With REQUIRE_BOTH_VAT every invoice must mix VATable and non-VATable items.
    """
    mapped = []
    for idx, (invoice_id, invoice_number, data) in enumerate(entries):
        try:
            mra_invoice = map_document(STANDARD, invoice_id, invoice_number, data, settings)
        except DocumentValidationError as e:
            raise DocumentValidationError(
                f"invoices[{idx}].{e.field}", f"Invoice {invoice_number}: {e.message}"
            ) from e

        if settings.require_both_vat:
            found_vatable, found_non_vatable = vat_mix(mra_invoice["itemList"])
            if not (found_vatable and found_non_vatable):
                raise DocumentValidationError(
                    f"invoices[{idx}].invoice_data.line_items",
                    f"Invoice {invoice_number} does not meet VAT mix requirement "
                    f"(foundVatable={found_vatable}, foundNonVatable={found_non_vatable}). "
                    f"Set REQUIRE_BOTH_VAT=false to skip this check.",
                )
        mapped.append(mra_invoice)
    return mapped
