import json
from datetime import datetime
from unittest import mock

import pytest
import requests

from conftest import TOKEN_URL, TRANSMIT_URL
from errors import SubmissionTransportError, TokenEndpointError, TokenGenerationFailed
from mra_client import MraGatewayClient, TransmitResponse, format_request_datetime


def _client(settings, response=None, side_effect=None):
    session = mock.Mock(spec=requests.Session)
    if side_effect is not None:
        session.post.side_effect = side_effect
    else:
        session.post.return_value = response
    return MraGatewayClient(settings, session=session), session


def test_request_datetime_format():
    assert format_request_datetime(datetime(2025, 3, 7, 9, 5, 3)) == "20250307 09:05:03"
    assert len(format_request_datetime()) == 17


def test_token_request_sends_gateway_headers(settings, make_response):
    client, session = _client(settings, make_response(200, {"token": "t", "key": "k"}))
    token = client.request_token("INV-1", "wrapped==")

    assert (token.token, token.key) == ("t", "k")
    args, kwargs = session.post.call_args
    assert args[0] == TOKEN_URL
    assert json.loads(kwargs["data"]) == {"requestId": "INV-1", "payload": "wrapped=="}
    assert kwargs["headers"] == {
        "Content-Type": "application/json",
        "username": "relay-user",
        "ebsMraId": "EBS123",
        "areaCode": "721",
    }
    assert kwargs["timeout"] == 5


def test_token_endpoint_error_keeps_status_and_body(settings, make_response):
    client, _ = _client(settings, make_response(500, "Internal error"))
    with pytest.raises(TokenEndpointError) as exc:
        client.request_token("INV-1", "wrapped==")
    assert exc.value.status_code == 500
    assert exc.value.detail == "Internal error"
    assert exc.value.message == "MRA token endpoint returned error"


def test_token_endpoint_unreachable(settings):
    client, _ = _client(settings, side_effect=requests.ConnectionError("refused"))
    with pytest.raises(TokenEndpointError):
        client.request_token("INV-1", "wrapped==")


@pytest.mark.parametrize("body", [{}, {"token": "t"}, {"key": "k"}, "plain text"])
def test_token_generation_failed(settings, make_response, body):
    client, _ = _client(settings, make_response(200, body))
    with pytest.raises(TokenGenerationFailed):
        client.request_token("INV-1", "wrapped==")


def test_transmit_body_and_token_header(settings, make_response):
    reply = {"fiscalisedInvoices": [{"invoiceIdentifier": "INV-1", "irn": "IRN-9"}]}
    client, session = _client(settings, make_response(200, reply))
    result = client.transmit("INV-1", "ENC==", "tok", request_datetime="20250307 09:05:03")

    _, kwargs = session.post.call_args
    assert session.post.call_args[0][0] == TRANSMIT_URL
    assert json.loads(kwargs["data"]) == {
        "requestId": "INV-1",
        "requestDateTime": "20250307 09:05:03",
        "signedHash": "",
        "encryptedInvoice": "ENC==",
    }
    assert kwargs["headers"]["token"] == "tok"
    assert kwargs["headers"]["username"] == "relay-user"
    assert result.irn == "IRN-9"
    assert result.status_code == 200


def test_transmit_non_json_body_is_kept_raw(settings, make_response):
    client, _ = _client(settings, make_response(400, "Invoice rejected: duplicate"))
    result = client.transmit("INV-1", "ENC==", "tok")
    assert result.status_code == 400
    assert result.data == {"raw": "Invoice rejected: duplicate"}
    assert result.irn == ""


def test_transmit_unreachable(settings):
    client, _ = _client(settings, side_effect=requests.Timeout("slow"))
    with pytest.raises(SubmissionTransportError):
        client.transmit("INV-1", "ENC==", "tok")


def test_fiscalised_invoices_listing(make_response):
    response = make_response(200, {"fiscalisedInvoices": [
        {"invoiceIdentifier": "A", "irn": "1"},
        {"invoiceIdentifier": "B"},
        "junk",
    ]})
    result = TransmitResponse.from_response(response)
    assert result.fiscalised_invoices == [
        {"invoiceIdentifier": "A", "irn": "1"},
        {"invoiceIdentifier": "B", "irn": ""},
    ]


def test_client_closes_only_its_own_session(settings):
    session = mock.Mock(spec=requests.Session)
    with MraGatewayClient(settings, session=session):
        pass
    session.close.assert_not_called()
