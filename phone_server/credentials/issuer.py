"""
credentials/issuer.py — Signs the phone-number credential.

issue(private_key, phone_number, extra) is the only operation the state machine
relies on. The default implementation signs a canonical JSON payload with
Ed25519 (RFC 8032 signatures are deterministic, so re-issuing the same
inputs returns the same credential).

  private_key   hex-encoded 32-byte Ed25519 seed
  phone_number  E.164 digits without the leading '+'
  extra         issuance nullifier (decimal string), "0" when none
"""
import json
from typing import Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

CREDENTIAL_TYPE = "PhoneNumber"


class CredentialIssuer(Protocol):
    def issue(self, private_key: str, phone_number: str, extra: str) -> dict: ...


def load_private_key(private_key_hex: str) -> Ed25519PrivateKey:
    raw = bytes.fromhex(private_key_hex.removeprefix("0x"))
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (hex of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def issuer_address(private_key_hex: str) -> str:
    public = load_private_key(private_key_hex).public_key()
    raw = public.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return "0x" + raw.hex()


class Ed25519CredentialIssuer:
    def issue(self, private_key: str, phone_number: str, extra: str) -> dict:
        payload = {
            "type": CREDENTIAL_TYPE,
            "issuer": issuer_address(private_key),
            "phoneNumber": phone_number,
            "nullifier": extra,
        }
        # Sorted keys, no whitespace: byte-for-byte stable across runs
        payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        signature = load_private_key(private_key).sign(payload_bytes)
        return {
            "credentials": payload,
            "signature": "0x" + signature.hex(),
        }
