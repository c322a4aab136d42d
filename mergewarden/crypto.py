"""
Detached signature verification over canonical messages.

Two algorithms are registered: Ed25519 (PyNaCl) and ECDSA over secp256k1
(cryptography). A deployment picks one and uses it everywhere. Public keys
and signatures travel as hex strings; identities are always resolved by the
registry, never inferred from a signature.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.exceptions import ValueError as NaclValueError
from nacl.signing import SigningKey, VerifyKey

from mergewarden.errors import InputError, MalformedKey, MalformedSignature, Mismatch

DEFAULT_ALGORITHM = "ed25519"
ECDSA_SECP256K1 = "ecdsa-secp256k1"

# =============================================================================
# CANONICAL MESSAGES
# =============================================================================

def approval_message(repo: str, number: int) -> str:
    return f"PR #{int(number)} in {repo}"

def reason_digest(reason: str) -> str:
    return hashlib.sha256(reason.encode("utf-8")).hexdigest()[:16]

def emergency_message(tier_name: str, reason: str) -> str:
    return f"emergency:{tier_name}:{reason_digest(reason)}"

def extension_message(tier_name: str, reason: str, extension_no: int) -> str:
    return f"emergency-extend:{tier_name}:{reason_digest(reason)}:{int(extension_no)}"

def signal_message(kind: str, node_id: str, repo: str, number: int, reason: str) -> str:
    return f"{kind}:{node_id}:{repo}:{int(number)}:{reason}"

def veto_message(node_id: str, repo: str, number: int, reason: str) -> str:
    return signal_message("veto", node_id, repo, number, reason)

def withdraw_message(node_id: str, repo: str, number: int) -> str:
    return f"withdraw-veto:{node_id}:{repo}:{int(number)}"

def _message_bytes(message: Union[str, bytes]) -> bytes:
    if isinstance(message, bytes):
        return message
    try:
        return message.encode("ascii")
    except UnicodeEncodeError:
        return message.encode("utf-8")

def _hex(value: str, what: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise (MalformedKey if what == "key" else MalformedSignature)(f"empty {what}")
    try:
        return bytes.fromhex(value.strip())
    except ValueError as exc:
        raise (MalformedKey if what == "key" else MalformedSignature)(f"{what} is not hex") from exc

# =============================================================================
# CRYPTO REGISTRY (extensible)
# =============================================================================

@dataclass
class CryptoAlgorithm:
    name: str
    sign: Callable[[bytes, Any], bytes]
    verify: Callable[[bytes, bytes, Any], None]
    key_gen: Callable[[], Tuple[Any, str]]
    load_public: Callable[[bytes], Any]
    check_signature: Callable[[bytes], None]
    deprecated: bool = False

class CryptoRegistry:
    def __init__(self):
        self._algorithms: Dict[str, CryptoAlgorithm] = {}
        self._default = DEFAULT_ALGORITHM
        self._register_ed25519()
        self._register_secp256k1()

    def _register_ed25519(self):
        def sign(msg: bytes, sk: SigningKey) -> bytes:
            return sk.sign(msg).signature

        def verify(msg: bytes, sig: bytes, vk: VerifyKey) -> None:
            try:
                vk.verify(msg, sig)
            except BadSignatureError as exc:
                raise Mismatch("ed25519 signature does not verify") from exc

        def key_gen() -> Tuple[SigningKey, str]:
            sk = SigningKey.generate()
            return sk, sk.verify_key.encode(encoder=HexEncoder).decode()

        def load_public(raw: bytes) -> VerifyKey:
            try:
                return VerifyKey(raw)
            except (NaclValueError, TypeError) as exc:
                raise MalformedKey("ed25519 public key must be 32 bytes") from exc

        def check_signature(sig: bytes):
            if len(sig) != 64:
                raise MalformedSignature("ed25519 signature must be 64 bytes")

        self._algorithms["ed25519"] = CryptoAlgorithm("ed25519", sign, verify, key_gen, load_public, check_signature)

    def _register_secp256k1(self):
        # Signatures are compact r||s (64 bytes); DER is accepted as well.
        def sign(msg: bytes, sk: ec.EllipticCurvePrivateKey) -> bytes:
            r, s = decode_dss_signature(sk.sign(msg, ec.ECDSA(hashes.SHA256())))
            return r.to_bytes(32, "big") + s.to_bytes(32, "big")

        def verify(msg: bytes, sig: bytes, pk: ec.EllipticCurvePublicKey) -> None:
            if len(sig) == 64:
                sig = encode_dss_signature(int.from_bytes(sig[:32], "big"), int.from_bytes(sig[32:], "big"))
            try:
                pk.verify(sig, msg, ec.ECDSA(hashes.SHA256()))
            except InvalidSignature as exc:
                raise Mismatch("ecdsa signature does not verify") from exc

        def key_gen() -> Tuple[ec.EllipticCurvePrivateKey, str]:
            sk = ec.generate_private_key(ec.SECP256K1())
            pub = sk.public_key().public_bytes(serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint)
            return sk, pub.hex()

        def load_public(raw: bytes) -> ec.EllipticCurvePublicKey:
            try:
                return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
            except ValueError as exc:
                raise MalformedKey("not a secp256k1 SEC1 point") from exc

        def check_signature(sig: bytes):
            if len(sig) != 64 and not (sig[:1] == b"\x30" and 8 <= len(sig) <= 72):
                raise MalformedSignature("ecdsa signature must be 64-byte r||s or DER")

        self._algorithms[ECDSA_SECP256K1] = CryptoAlgorithm(ECDSA_SECP256K1, sign, verify, key_gen, load_public, check_signature)

    def get(self, name: str) -> Optional[CryptoAlgorithm]:
        return self._algorithms.get(name)

    def names(self):
        return sorted(self._algorithms)

    def default(self) -> CryptoAlgorithm:
        return self._algorithms[self._default]

CRYPTO = CryptoRegistry()

# =============================================================================
# VERIFIER
# =============================================================================

class SignatureVerifier:
    """Stateless verifier bound to one algorithm. Safe to share across threads."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM):
        alg = CRYPTO.get(algorithm)
        if alg is None:
            raise InputError(f"unknown signature algorithm {algorithm!r}; expected one of {CRYPTO.names()}")
        self._alg = alg

    @property
    def algorithm(self) -> str:
        return self._alg.name

    def load_public_key(self, pubkey_hex: str) -> Any:
        return self._alg.load_public(_hex(pubkey_hex, "key"))

    def verify(self, message: Union[str, bytes], signature_hex: str, pubkey_hex: str) -> None:
        """Raise MalformedKey, MalformedSignature or Mismatch; return None when the signature is good."""
        key = self.load_public_key(pubkey_hex)
        sig = _hex(signature_hex, "signature")
        self._alg.check_signature(sig)
        self._alg.verify(_message_bytes(message), sig, key)

    def is_valid(self, message: Union[str, bytes], signature_hex: str, pubkey_hex: str) -> bool:
        try:
            self.verify(message, signature_hex, pubkey_hex)
        except (MalformedKey, MalformedSignature, Mismatch):
            return False
        return True

# =============================================================================
# SIGNING IDENTITY (client side)
# =============================================================================

@dataclass
class SigningIdentity:
    """Holder of a private key. Used by signing tools; the engine only ever sees public keys."""
    name: str
    algorithm: str
    private_key: Any
    pubkey_hex: str

    @classmethod
    def generate(cls, name: str, algorithm: str = DEFAULT_ALGORITHM) -> "SigningIdentity":
        alg = CRYPTO.get(algorithm)
        if alg is None:
            raise InputError(f"unknown signature algorithm {algorithm!r}")
        sk, pub = alg.key_gen()
        return cls(name, algorithm, sk, pub)

    def sign(self, message: Union[str, bytes]) -> str:
        return CRYPTO.get(self.algorithm).sign(_message_bytes(message), self.private_key).hex()
