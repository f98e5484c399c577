# schemas.py
# Request bodies accepted by the API. Zoho webhooks often send nested objects
# as JSON strings; those are decoded here, once, and anything that still does
# not have the right shape is rejected with the failing field named.

import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import MAX_BULK_INVOICES


def _decode_json(value: Any, expected: type, what: str) -> Any:
    """Decode a JSON-string encoding of an object/array; other values pass through."""
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            raise ValueError(f"{what} must be a JSON {expected.__name__} or JSON-string")
        if not isinstance(decoded, expected):
            raise ValueError(f"{what} must decode to a JSON {expected.__name__}")
        return decoded
    return value


def _id_to_str(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


# -------------------- Source documents --------------------

class SourceDocument(BaseModel):
    """
    Zoho invoice / credit note / debit note / estimate.

    Only the fields the mapping relies on are declared; every other Zoho field
    is kept (extra="allow") because the mapping reads several alternate names.
    """

    model_config = ConfigDict(extra="allow")

    created_time: Optional[str] = None
    date_time: Optional[str] = None
    date: Optional[str] = None
    line_items: List[Dict[str, Any]] = Field(..., min_length=1)
    customer_name: Optional[str] = None
    currency_code: Optional[str] = None
    billing_address: Optional[Union[Dict[str, Any], str]] = None
    invoices_credited: Optional[List[Union[str, Dict[str, Any]]]] = None
    invoices_referenced: Optional[List[Union[str, Dict[str, Any]]]] = None

    @field_validator("line_items", mode="before")
    @classmethod
    def decode_line_items(cls, v):
        return _decode_json(v, list, "line_items")

    @field_validator("invoices_credited", "invoices_referenced", mode="before")
    @classmethod
    def decode_reference_lists(cls, v):
        if v in (None, ""):
            return None
        return _decode_json(v, list, "reference list")

    @field_validator("billing_address", mode="before")
    @classmethod
    def decode_billing_address(cls, v):
        # plain-text addresses are allowed; only JSON objects are decoded
        if isinstance(v, str) and v.strip().startswith("{"):
            try:
                decoded = json.loads(v)
            except ValueError:
                return v
            return decoded if isinstance(decoded, dict) else v
        return v

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# -------------------- Submissions --------------------

class DocumentSubmission(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    invoice_number: str = Field(..., min_length=1)
    invoice_data: SourceDocument
    ref_invoice_number: Optional[str] = None

    @field_validator("invoice_id", "invoice_number", mode="before")
    @classmethod
    def ids_to_str(cls, v):
        return _id_to_str(v)

    @field_validator("invoice_data", mode="before")
    @classmethod
    def decode_invoice_data(cls, v):
        return _decode_json(v, dict, "invoice_data")


class CreditNoteSubmission(DocumentSubmission):
    crn_reason: Optional[str] = None


class DebitNoteSubmission(DocumentSubmission):
    drn_reason: Optional[str] = None


class ProformaSubmission(BaseModel):
    estimate_id: str = Field(..., min_length=1)
    estimate_number: str = Field(..., min_length=1)
    estimate_data: SourceDocument

    @field_validator("estimate_id", "estimate_number", mode="before")
    @classmethod
    def ids_to_str(cls, v):
        return _id_to_str(v)

    @field_validator("estimate_data", mode="before")
    @classmethod
    def decode_estimate_data(cls, v):
        return _decode_json(v, dict, "estimate_data")


class BulkSubmission(BaseModel):
    invoices: List[DocumentSubmission] = Field(..., min_length=1, max_length=MAX_BULK_INVOICES)


# -------------------- Manual test helpers --------------------

class RsaEncryptRequest(BaseModel):
    payload: Dict[str, Any]


class DecryptAesRequest(BaseModel):
    encryptedKey: str = Field(..., min_length=1)
    aesKey: str = Field(..., min_length=1)


class EncryptInvoiceRequest(BaseModel):
    plainText: str = Field(..., min_length=1)
    aesKey: str = Field(..., min_length=1)
