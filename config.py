# config.py
# Environment loading and the Settings object handed to every handler.

import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

log = logging.getLogger("mra-config")

DEFAULT_TOKEN_URL = "https://vfisc.mra.mu/einvoice-token-service/token-api/generate-token"
DEFAULT_TRANSMIT_URL = "https://vfisc.mra.mu/realtime/invoice/transmit"
DEFAULT_PUBLIC_KEY_FILE = "MRAPublicKey.pem"

MAX_BULK_INVOICES = 10


def load_environment() -> bool:
    """Load a .env file - try multiple locations. Returns True if one was found."""
    env_paths = [
        pathlib.Path(__file__).parent / '.env',  # Same directory as config.py
        pathlib.Path.cwd() / '.env',  # Current working directory
    ]

    for env_path in env_paths:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=True)
            log.info(f"Loaded .env from: {env_path}")
            return True

    # Fallback: try loading from current directory without explicit path
    load_dotenv()
    log.info("Attempted to load .env from current directory")
    return False


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"{name}={raw!r} is not an integer, using {default}")
        return default


@dataclass
class SellerProfile:
    """Seller block copied into every mapped document."""

    name: str = "Electrum Mauritius Limited"
    trade_name: str = "Electrum Mauritius Limited"
    tan: str = "27124193"
    brn: str = "C11106429"
    business_addr: str = "Mauritius"
    business_phone_no: str = "2302909090"
    ebs_counter_no: str = ""

    @classmethod
    def from_env(cls) -> "SellerProfile":
        defaults = cls()
        return cls(
            name=os.getenv("SELLER_NAME") or defaults.name,
            trade_name=os.getenv("SELLER_TRADE_NAME") or defaults.trade_name,
            tan=os.getenv("SELLER_TAN") or defaults.tan,
            brn=os.getenv("SELLER_BRN") or defaults.brn,
            business_addr=os.getenv("SELLER_ADDR") or defaults.business_addr,
            business_phone_no=os.getenv("SELLER_PHONE") or defaults.business_phone_no,
            ebs_counter_no=os.getenv("EBS_COUNTER_NO") or defaults.ebs_counter_no,
        )


@dataclass
class Settings:
    """Gateway credentials, endpoints and mapping options."""

    mra_username: str = ""
    mra_password: str = ""
    ebs_mra_id: str = ""
    area_code: str = ""
    token_url: str = DEFAULT_TOKEN_URL
    transmit_url: str = DEFAULT_TRANSMIT_URL
    public_key_path: pathlib.Path = field(
        default_factory=lambda: pathlib.Path.cwd() / DEFAULT_PUBLIC_KEY_FILE
    )
    timeout: int = 30
    require_both_vat: bool = False
    seller: SellerProfile = field(default_factory=SellerProfile)
    one_item_seller_tan: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        key_path = os.getenv("MRA_PUBLIC_KEY_PATH")
        return cls(
            mra_username=os.getenv("MRA_USERNAME", ""),
            mra_password=os.getenv("MRA_PASSWORD", ""),
            ebs_mra_id=os.getenv("EBS_MRA_ID", ""),
            area_code=os.getenv("AREA_CODE", ""),
            token_url=os.getenv("MRA_TOKEN_URL") or DEFAULT_TOKEN_URL,
            transmit_url=os.getenv("MRA_TRANSMIT_URL") or DEFAULT_TRANSMIT_URL,
            public_key_path=(
                pathlib.Path(key_path) if key_path
                else pathlib.Path.cwd() / DEFAULT_PUBLIC_KEY_FILE
            ),
            timeout=_env_int("MRA_TIMEOUT", 30),
            require_both_vat=_env_bool("REQUIRE_BOTH_VAT"),
            seller=SellerProfile.from_env(),
            one_item_seller_tan=os.getenv("ONE_ITEM_SELLER_TAN") or None,
        )

    def has_credentials(self) -> bool:
        return bool(self.mra_username and self.mra_password)

    def gateway_headers(self) -> dict:
        """Headers sent with both the token and the transmit calls."""
        return {
            "Content-Type": "application/json",
            "username": self.mra_username,
            "ebsMraId": self.ebs_mra_id,
            "areaCode": self.area_code,
        }
