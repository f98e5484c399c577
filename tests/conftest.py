import base64
import json

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa

from config import SellerProfile, Settings
from mra_crypto import encrypt_with_aes

TOKEN_URL = "https://token.example.test/generate-token"
TRANSMIT_URL = "https://transmit.example.test/invoice/transmit"


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_key_path(rsa_private_key, tmp_path_factory):
    pem = rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    path = tmp_path_factory.mktemp("keys") / "MRAPublicKey.pem"
    path.write_bytes(pem)
    return path


@pytest.fixture
def seller():
    return SellerProfile(
        name="Test Seller Ltd",
        trade_name="Test Seller",
        tan="20000001",
        brn="C00000001",
        business_addr="Port Louis",
        business_phone_no="2300000000",
        ebs_counter_no="EBS-1",
    )


@pytest.fixture
def settings(public_key_path, seller):
    return Settings(
        mra_username="relay-user",
        mra_password="relay-pass",
        ebs_mra_id="EBS123",
        area_code="721",
        token_url=TOKEN_URL,
        transmit_url=TRANSMIT_URL,
        public_key_path=public_key_path,
        timeout=5,
        seller=seller,
    )


def build_response(status_code, body, url="https://gateway.example.test"):
    """A real requests.Response carrying `body` (dict/list -> JSON, str -> text)."""
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    response.encoding = "utf-8"
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    response._content = (body or "").encode("utf-8")
    return response


@pytest.fixture
def make_response():
    return build_response


class EchoGateway:
    """
    Fake gateway session. The token endpoint opens the RSA envelope and returns
    the client's own AES key encrypted under itself; transmit records the body.
    """

    def __init__(self, private_key, irn="IRN-0001", token_status=200):
        self.private_key = private_key
        self.irn = irn
        self.token_status = token_status
        self.calls = []
        self.envelope = None
        self.transmitted = None

    def post(self, url, data=None, headers=None, timeout=None):
        body = json.loads(data.decode("utf-8"))
        self.calls.append({"url": url, "body": body, "headers": headers, "timeout": timeout})

        if url == TOKEN_URL:
            if self.token_status != 200:
                return build_response(self.token_status, "gateway down", url)
            plain = self.private_key.decrypt(base64.b64decode(body["payload"]), asym_padding.PKCS1v15())
            self.envelope = json.loads(plain)
            aes_key = self.envelope["encryptKey"]
            return build_response(200, {"token": "tok-123", "key": encrypt_with_aes(aes_key, aes_key)}, url)

        self.transmitted = body
        return build_response(200, {
            "responseId": "R-1",
            "status": "SUCCESS",
            "fiscalisedInvoices": [{"invoiceIdentifier": body["requestId"], "irn": self.irn}],
        }, url)

    def close(self):
        pass


@pytest.fixture
def echo_gateway(rsa_private_key):
    return EchoGateway(rsa_private_key)
