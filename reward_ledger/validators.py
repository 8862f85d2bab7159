import re
import secrets
from typing import Callable

REFERRAL_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6,12}$")
EVM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def generate_referral_code(length: int = 8) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def generate_unique_referral_code(
    exists: Callable[[str], bool],
    length: int = 8,
    max_attempts: int = 10,
) -> str:
    for _ in range(max_attempts):
        code = generate_referral_code(length)
        if not exists(code):
            return code
    raise ValueError("Failed to generate unique referral code after maximum attempts")


def is_valid_referral_code(code: str) -> bool:
    return bool(REFERRAL_CODE_PATTERN.match(code or ""))


def is_valid_address(address: str) -> bool:
    return bool(EVM_ADDRESS_PATTERN.match((address or "").strip()))
