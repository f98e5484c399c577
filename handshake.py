# handshake.py
# The AES -> RSA -> token -> unwrap -> encrypt -> transmit sequence shared by
# every document type. Each Handshake instance runs exactly once.

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from config import Settings
from errors import ConfigurationError, HandshakeError
from mra_client import MraGatewayClient, TransmitResponse
from mra_crypto import compact_json, decrypt_with_aes, encrypt_with_aes, generate_aes_key, rsa_encrypt_payload

log = logging.getLogger("mra-handshake")


class HandshakeStage(Enum):
    IDLE = "idle"
    KEY_GENERATED = "key_generated"
    WRAPPED = "wrapped"
    TOKEN_OBTAINED = "token_obtained"
    KEY_UNWRAPPED = "key_unwrapped"
    PAYLOAD_ENCRYPTED = "payload_encrypted"
    SUBMITTED = "submitted"
    SUCCESS = "success"
    FAILED = "failed"


# Step attempted from each state; reported as the error's `stage`.
NEXT_STEP = {
    HandshakeStage.IDLE: "key_generation",
    HandshakeStage.KEY_GENERATED: "rsa_wrap",
    HandshakeStage.WRAPPED: "token_exchange",
    HandshakeStage.TOKEN_OBTAINED: "key_unwrap",
    HandshakeStage.KEY_UNWRAPPED: "payload_encryption",
    HandshakeStage.PAYLOAD_ENCRYPTED: "submission",
}


@dataclass
class HandshakeResult:
    request_id: str
    aes_key: str
    final_key: str
    token: str
    encrypted_invoice: str
    transmit: TransmitResponse

    @property
    def irn(self) -> str:
        return self.transmit.irn

    @property
    def irns(self) -> List[Dict[str, str]]:
        return self.transmit.fiscalised_invoices


def build_credential_envelope(settings: Settings, aes_key: str) -> Dict[str, str]:
    return {
        "username": settings.mra_username,
        "password": settings.mra_password,
        "encryptKey": aes_key,
        "refreshToken": "false",
    }


class Handshake:
    """
    One key-establishment + submission run.

    A failure at any step moves the instance to FAILED and re-raises the
    step's error with `stage` set. Instances cannot be re-run: a retry needs
    a new Handshake (and therefore a new AES key).
    """

    def __init__(self, settings: Settings, client: Optional[MraGatewayClient] = None):
        self.settings = settings
        self._owns_client = client is None
        self.client = client or MraGatewayClient(settings)
        self.stage = HandshakeStage.IDLE
        self.failed_stage: Optional[HandshakeStage] = None

    def _advance(self, stage: HandshakeStage) -> None:
        log.info(f"Handshake {self.stage.value} -> {stage.value}")
        self.stage = stage

    def _fail(self) -> None:
        self.failed_stage = self.stage
        self._advance(HandshakeStage.FAILED)

    def run(self, documents: List[Dict[str, Any]], request_id: str,
            request_datetime: Optional[str] = None) -> HandshakeResult:
        try:
            return self._run(documents, request_id, request_datetime)
        finally:
            if self._owns_client:
                self.client.close()

    def _run(self, documents: List[Dict[str, Any]], request_id: str,
             request_datetime: Optional[str]) -> HandshakeResult:
        if self.stage is not HandshakeStage.IDLE:
            raise RuntimeError(f"Handshake already used (stage={self.stage.value}); start a new one")
        if not self.settings.has_credentials():
            raise ConfigurationError("MRA credentials not set in environment variables.")
        if not documents:
            raise ValueError("At least one document is required")

        try:
            # Step 1: local AES key
            aes_key = generate_aes_key()
            self._advance(HandshakeStage.KEY_GENERATED)

            # Step 2: RSA wrap credentials + AES key
            wrapped = rsa_encrypt_payload(
                build_credential_envelope(self.settings, aes_key),
                self.settings.public_key_path,
            )
            self._advance(HandshakeStage.WRAPPED)

            # Step 3: token exchange
            token = self.client.request_token(request_id, wrapped)
            self._advance(HandshakeStage.TOKEN_OBTAINED)

            # Step 4: unwrap the transmission key with our own AES key
            final_key = decrypt_with_aes(token.key, aes_key)
            self._advance(HandshakeStage.KEY_UNWRAPPED)

            # Step 5: encrypt the document array
            encrypted_invoice = encrypt_with_aes(compact_json(documents), final_key)
            self._advance(HandshakeStage.PAYLOAD_ENCRYPTED)

            # Step 6: transmit
            transmit = self.client.transmit(request_id, encrypted_invoice, token.token, request_datetime)
            self._advance(HandshakeStage.SUBMITTED)
        except HandshakeError as e:
            e.stage = e.stage or NEXT_STEP.get(self.stage, self.stage.value)
            self._fail()
            log.error(f"Handshake for {request_id} failed at {e.stage}: {e.message}")
            raise
        except Exception:
            step = NEXT_STEP.get(self.stage, self.stage.value)
            self._fail()
            log.exception(f"Handshake for {request_id} failed unexpectedly at {step}")
            raise

        self._advance(HandshakeStage.SUCCESS)
        return HandshakeResult(
            request_id=request_id,
            aes_key=aes_key,
            final_key=final_key,
            token=token.token,
            encrypted_invoice=encrypted_invoice,
            transmit=transmit,
        )


def submit_documents(settings: Settings, documents: List[Dict[str, Any]], request_id: str,
                     client: Optional[MraGatewayClient] = None) -> HandshakeResult:
    """Run a fresh handshake for `documents` (one, or a bulk batch)."""
    return Handshake(settings, client).run(documents, request_id)
