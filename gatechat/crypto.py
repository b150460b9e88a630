"""
crypto.py — the portal's signing key and the token encoding helpers.

Session tokens are `<claims>.<signature>`, both parts base64url without
padding, so they travel inside JSON frames untouched. The claims are
serialized canonically before signing; the signature is RSA-PSS over
SHA-256 with a 4096-bit key, the only key size the portal accepts.

Chat content is never encrypted here. A valid signature only proves the
token came from this server; whether the session is still live is a
separate check (see sessions.py).
"""

import base64
import json
from pathlib import Path
from typing import Tuple

from cryptography.exceptions import InvalidKey, InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

KEY_SIZE = 4096
PUBLIC_EXPONENT = 65537


# ----------------
# Token encodings
# ----------------

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Inverse of b64url_encode; restores the stripped padding first."""
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def canonical_json_bytes(obj: dict) -> bytes:
    """Sorted keys, no whitespace: the same claims always give the same bytes."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------
# Portal key file
# ---------------

def _require_rsa4096(key) -> None:
    if not isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        raise InvalidKey(f"Expected an RSA key, got {type(key).__name__}")
    if key.key_size != KEY_SIZE:
        raise InvalidKey(f"Portal keys are RSA-{KEY_SIZE}; this one is {key.key_size} bits")


def generate_rsa4096() -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    priv = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
    return priv, priv.public_key()


def export_pubkey_b64url(pub: rsa.RSAPublicKey) -> str:
    """SubjectPublicKeyInfo PEM, wrapped in base64url for printing or config."""
    pem = pub.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64url_encode(pem)


def load_or_create_privkey(path: Path) -> rsa.RSAPrivateKey:
    """
    Load the portal key from `path` (unencrypted PKCS#8 PEM). When the file
    is missing a new key is generated and written there, readable by the
    owner only, so restarts keep issuing verifiable tokens.
    """
    path = Path(path)
    if path.exists():
        priv = serialization.load_pem_private_key(path.read_bytes(), password=None)
        _require_rsa4096(priv)
        return priv

    priv, _ = generate_rsa4096()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    path.chmod(0o600)
    return priv


# -----------------
# Token signatures
# -----------------

_PSS = padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)


def sign(priv: rsa.RSAPrivateKey, data: bytes) -> str:
    _require_rsa4096(priv)
    return b64url_encode(priv.sign(data, _PSS, hashes.SHA256()))


def verify(pub: rsa.RSAPublicKey, data: bytes, sig_b64: str) -> bool:
    """False for a bad signature or one that isn't even valid base64url."""
    _require_rsa4096(pub)
    try:
        pub.verify(b64url_decode(sig_b64), data, _PSS, hashes.SHA256())
    except (InvalidSignature, ValueError):
        return False
    return True
