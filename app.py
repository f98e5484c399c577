import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configure logging FIRST before using it
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
log = logging.getLogger("mra-api")

from config import Settings, load_environment

load_environment()

from errors import ConfigurationError, DocumentValidationError, HandshakeError
from handshake import submit_documents
from mra_crypto import decrypt_with_aes, encrypt_with_aes, generate_aes_key, rsa_encrypt_payload
from processor import PROFILES, DocumentProfile, map_bulk, map_document
from schemas import (
    BulkSubmission,
    CreditNoteSubmission,
    DebitNoteSubmission,
    DecryptAesRequest,
    DocumentSubmission,
    EncryptInvoiceRequest,
    ProformaSubmission,
    RsaEncryptRequest,
)


@lru_cache()
def get_settings() -> Settings:
    settings = Settings.from_env()
    # Verify MRA credentials are loaded
    if not settings.has_credentials():
        log.warning("WARNING: MRA_USERNAME / MRA_PASSWORD not found in environment variables!")
        log.warning("Submissions will fail until your .env file contains both.")
    else:
        log.info("MRA credentials loaded successfully")
    return settings


# Create FastAPI app
app = FastAPI(
    title="MRA e-Invoicing Relay",
    description=(
        "Receives Zoho Books invoices, credit/debit notes and estimates, maps them to the "
        "MRA e-invoice schema and fiscalises them through the MRA real-time gateway."
    ),
    version="1.0.0",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---- Error responses ----

def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "ERROR", "message": message, **extra})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid")})
    log.warning(f"Rejected {request.url.path}: {errors}")
    return _error(400, "Invalid request body", errors=errors)


def _handshake_error(e: HandshakeError) -> JSONResponse:
    return _error(500, e.message, stage=e.stage, detail=e.detail)


def _process_single(
    profile: DocumentProfile,
    document_id: str,
    document_number: str,
    data: Dict[str, Any],
    settings: Settings,
    ref_invoice_number: Optional[str] = None,
    reason: Optional[str] = None,
):
    """Map one document, run a fresh handshake for it and shape the reply."""
    try:
        mra_invoice = map_document(
            profile, document_id, document_number, data, settings,
            ref_invoice_number=ref_invoice_number, reason=reason,
        )
    except DocumentValidationError as e:
        log.warning(f"{profile.kind} {document_number} rejected: {e.field}: {e.message}")
        return _error(400, e.message, field=e.field)
    except Exception as e:
        log.exception(f"Error mapping {profile.kind} {document_number}")
        return _error(500, str(e))

    try:
        result = submit_documents(settings, [mra_invoice], mra_invoice["invoiceIdentifier"])
    except ConfigurationError as e:
        log.error(str(e))
        return _error(500, str(e))
    except HandshakeError as e:
        return _handshake_error(e)
    except Exception as e:
        log.exception(f"Error processing {profile.kind} {document_number}")
        return _error(500, str(e))

    log.info(f"{profile.kind} {document_number} fiscalised, IRN={result.irn or '-'}")
    return {
        "status": "SUCCESS",
        "IRN": result.irn,
        "transmit_status": result.transmit.status_code,
        "transmit_response": result.transmit.data,
        "preview_json": mra_invoice,
    }


@app.get("/")
async def root():
    return {
        "message": "MRA e-Invoicing Relay",
        "docs": "/docs",
        "endpoints": {
            "mra_process": "POST /mra-process - Fiscalise a standard invoice",
            "one_item_std_process": "POST /one-item-std-process - Fiscalise a single-item invoice",
            "crn_process": "POST /crn-process - Fiscalise a credit note",
            "drn_process": "POST /drn-process - Fiscalise a debit note",
            "drn_single_process": "POST /drn-single-process - Fiscalise a single-item debit note",
            "proforma_process": "POST /proforma-process - Fiscalise a proforma from an estimate",
            "mra_bulk": "POST /mra-bulk - Fiscalise up to 10 invoices in one submission",
        },
        "helpers": ["/generate-aes", "/rsa-encrypt", "/decrypt-aes", "/encrypt-invoice"],
    }


# ---- Fiscalisation endpoints ----

@app.post("/mra-process")
def mra_process(body: DocumentSubmission, settings: Settings = Depends(get_settings)):
    return _process_single(
        PROFILES["standard"], body.invoice_id, body.invoice_number,
        body.invoice_data.as_dict(), settings,
    )


@app.post("/one-item-std-process")
def one_item_std_process(body: DocumentSubmission, settings: Settings = Depends(get_settings)):
    return _process_single(
        PROFILES["one_item"], body.invoice_id, body.invoice_number,
        body.invoice_data.as_dict(), settings,
    )


@app.post("/crn-process")
def crn_process(body: CreditNoteSubmission, settings: Settings = Depends(get_settings)):
    return _process_single(
        PROFILES["credit_note"], body.invoice_id, body.invoice_number,
        body.invoice_data.as_dict(), settings,
        ref_invoice_number=body.ref_invoice_number,
        reason=body.crn_reason,
    )


@app.post("/drn-process")
def drn_process(body: DebitNoteSubmission, settings: Settings = Depends(get_settings)):
    return _process_single(
        PROFILES["debit_note"], body.invoice_id, body.invoice_number,
        body.invoice_data.as_dict(), settings,
        ref_invoice_number=body.ref_invoice_number,
        reason=body.drn_reason,
    )


@app.post("/drn-single-process")
def drn_single_process(body: DebitNoteSubmission, settings: Settings = Depends(get_settings)):
    return _process_single(
        PROFILES["debit_note_single"], body.invoice_id, body.invoice_number,
        body.invoice_data.as_dict(), settings,
        ref_invoice_number=body.ref_invoice_number,
        reason=body.drn_reason,
    )


@app.post("/proforma-process")
def proforma_process(body: ProformaSubmission, settings: Settings = Depends(get_settings)):
    return _process_single(
        PROFILES["proforma"], body.estimate_id, body.estimate_number,
        body.estimate_data.as_dict(), settings,
    )


@app.post("/mra-bulk")
def mra_bulk(body: BulkSubmission, settings: Settings = Depends(get_settings)):
    """
    Fiscalise several standard invoices with a single handshake.
    The first invoice's identifier is used as the requestId.
    """
    entries = [(inv.invoice_id, inv.invoice_number, inv.invoice_data.as_dict()) for inv in body.invoices]
    try:
        mapped = map_bulk(entries, settings)
    except DocumentValidationError as e:
        log.warning(f"Bulk rejected: {e.field}: {e.message}")
        return _error(400, e.message, field=e.field)
    except Exception as e:
        log.exception("Error mapping bulk invoices")
        return _error(500, str(e))

    request_id = mapped[0]["invoiceIdentifier"]
    log.info(f"Bulk {request_id}: submitting {len(mapped)} invoice(s)")
    try:
        result = submit_documents(settings, mapped, request_id)
    except ConfigurationError as e:
        log.error(str(e))
        return _error(500, str(e))
    except HandshakeError as e:
        return _handshake_error(e)
    except Exception as e:
        log.exception(f"Error processing bulk {request_id}")
        return _error(500, str(e))

    preview: List[Dict[str, str]] = [
        {"invoiceIdentifier": m["invoiceIdentifier"], "invoiceTotal": m["invoiceTotal"]} for m in mapped
    ]
    return {
        "status": "SUCCESS",
        "count": len(mapped),
        "irns": result.irns,
        "transmit_status": result.transmit.status_code,
        "transmit_response": result.transmit.data,
        "preview_count": preview,
    }


# ---- Manual test helpers ----

@app.post("/generate-aes")
def generate_aes():
    try:
        return {"aesKey": generate_aes_key()}
    except HandshakeError as e:
        log.error(f"generate-aes error: {e.message}")
        return JSONResponse(status_code=500, content={"error": e.message})


@app.post("/rsa-encrypt")
def rsa_encrypt(body: RsaEncryptRequest, settings: Settings = Depends(get_settings)):
    try:
        return {"encrypted": rsa_encrypt_payload(body.payload, settings.public_key_path)}
    except HandshakeError as e:
        log.error(f"rsa-encrypt error: {e.message}")
        return JSONResponse(status_code=500, content={"error": e.message})


@app.post("/decrypt-aes")
def decrypt_aes(body: DecryptAesRequest):
    try:
        return {"decryptedKey": decrypt_with_aes(body.encryptedKey, body.aesKey)}
    except HandshakeError as e:
        log.warning(f"decrypt-aes rejected: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})


@app.post("/encrypt-invoice")
def encrypt_invoice(body: EncryptInvoiceRequest):
    try:
        return {"encryptedText": encrypt_with_aes(body.plainText, body.aesKey)}
    except HandshakeError as e:
        log.warning(f"encrypt-invoice rejected: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message})


# Local dev entrypoint
if __name__ == "__main__":
    import uvicorn
    log.info("Starting uvicorn server at http://127.0.0.1:8000")
    uvicorn.run(app, host="127.0.0.1", port=8000)
