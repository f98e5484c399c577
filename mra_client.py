# mra_client.py
# HTTP calls to the MRA token and transmit endpoints. One attempt each, no retries.

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from config import Settings
from errors import SubmissionTransportError, TokenEndpointError, TokenGenerationFailed
from mra_crypto import compact_json

log = logging.getLogger("mra-handshake")

REQUEST_DATETIME_FORMAT = "%Y%m%d %H:%M:%S"


def format_request_datetime(moment: Optional[datetime] = None) -> str:
    """Local wall-clock time as yyyyMMdd HH:mm:ss (17 chars)."""
    return (moment or datetime.now()).strftime(REQUEST_DATETIME_FORMAT)


@dataclass
class TokenResponse:
    token: str
    key: str

    @classmethod
    def from_dict(cls, data: Any) -> "TokenResponse":
        if not isinstance(data, dict) or not data.get("token") or not data.get("key"):
            raise TokenGenerationFailed(detail=data)
        return cls(token=str(data["token"]), key=str(data["key"]))


@dataclass
class TransmitResponse:
    """Parsed transmit reply. A non-JSON body is kept under "raw"."""

    status_code: int
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, response: requests.Response) -> "TransmitResponse":
        text = response.text
        try:
            data = response.json() if text else {}
        except ValueError:
            # some MRA responses are plain text on business-rule errors
            data = {"raw": text}
        if not isinstance(data, dict):
            data = {"raw": data}
        return cls(status_code=response.status_code, data=data)

    @property
    def fiscalised_invoices(self) -> List[Dict[str, str]]:
        entries = self.data.get("fiscalisedInvoices")
        if not isinstance(entries, list):
            return []
        return [
            {
                "invoiceIdentifier": str(e.get("invoiceIdentifier") or ""),
                "irn": str(e.get("irn") or ""),
            }
            for e in entries
            if isinstance(e, dict)
        ]

    @property
    def irn(self) -> str:
        invoices = self.fiscalised_invoices
        return invoices[0]["irn"] if invoices else ""


class MraGatewayClient:
    """
    Thin wrapper around the two gateway endpoints.

    Usage:
        with MraGatewayClient(settings) as client:
            token = client.request_token(request_id, wrapped_payload)
            result = client.transmit(request_id, encrypted_invoice, token.token)
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Accept": "application/json"})
        return self._session

    def close(self) -> None:
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "MraGatewayClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def request_token(self, request_id: str, payload: str) -> TokenResponse:
        url = self.settings.token_url
        body = {"requestId": request_id, "payload": payload}
        log.info(f"Requesting MRA token for {request_id}")
        try:
            response = self.session.post(
                url,
                data=compact_json(body).encode("utf-8"),
                headers=self.settings.gateway_headers(),
                timeout=self.settings.timeout,
            )
        except requests.RequestException as e:
            log.error(f"Token endpoint unreachable: {e}")
            raise TokenEndpointError(f"MRA token endpoint unreachable: {e}") from e

        if not response.ok:
            log.error(f"Token endpoint error: {response.status_code} {response.text[:500]}")
            raise TokenEndpointError(status_code=response.status_code, detail=response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise TokenGenerationFailed(status_code=response.status_code, detail=response.text) from e

        token = TokenResponse.from_dict(data)
        log.info(f"MRA token issued for {request_id}")
        return token

    def transmit(
        self,
        request_id: str,
        encrypted_invoice: str,
        token: str,
        request_datetime: Optional[str] = None,
    ) -> TransmitResponse:
        url = self.settings.transmit_url
        body = {
            "requestId": request_id,
            "requestDateTime": request_datetime or format_request_datetime(),
            "signedHash": "",
            "encryptedInvoice": encrypted_invoice,
        }
        headers = dict(self.settings.gateway_headers(), token=token)
        log.info(f"Transmitting {request_id} to MRA")
        try:
            response = self.session.post(
                url,
                data=compact_json(body).encode("utf-8"),
                headers=headers,
                timeout=self.settings.timeout,
            )
        except requests.RequestException as e:
            log.error(f"Transmit endpoint unreachable: {e}")
            raise SubmissionTransportError(f"MRA transmit endpoint unreachable: {e}") from e

        result = TransmitResponse.from_response(response)
        log.info(f"MRA transmit for {request_id} returned HTTP {result.status_code}")
        return result
