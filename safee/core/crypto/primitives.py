"""Cryptographic building blocks for organization and file keys.

AES-256-GCM everywhere, with keys derived from passphrases by
PBKDF2-HMAC. Wrapped keys and AEAD ciphertexts are stored as
``ciphertext || tag`` (the layout ``AESGCM.encrypt`` produces).

Chunked file encryption uses one nonce per chunk, derived from the base
IV by XOR-ing the chunk index into its last four bytes. The associated
data binds every chunk to its file, its position and whether it is the
final chunk, so reordering, splicing between files and truncation all
fail authentication.
"""

import base64
import os
import re
import struct
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Union
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from safee.core.errors import AuthenticationFailure, ValidationError

MIN_PBKDF2_ITERATIONS = 600_000
KEY_LENGTH = 32  # AES-256
TAG_LENGTH = 16
MIN_IV_LENGTH = 8  # shortest nonce AESGCM accepts
MAX_CHUNKS = 2 ** 32

HASH_ALGORITHMS = {
    "SHA-256": hashes.SHA256,
    "SHA-384": hashes.SHA384,
    "SHA-512": hashes.SHA512,
}


@dataclass(frozen=True)
class DerivationParams:
    """PBKDF2 parameters, stored alongside each wrapped key."""
    iterations: int = MIN_PBKDF2_ITERATIONS
    hash: str = "SHA-256"
    key_length: int = KEY_LENGTH

    def to_dict(self) -> Dict[str, Any]:
        return {"iterations": self.iterations, "hash": self.hash, "keyLength": self.key_length}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DerivationParams":
        return cls(
            iterations=int(data["iterations"]),
            hash=str(data.get("hash", "SHA-256")),
            key_length=int(data.get("keyLength", data.get("key_length", KEY_LENGTH))),
        )

    def validate(self, *, allow_weak: bool = False) -> "DerivationParams":
        """Reject parameters below the supported floor."""
        if self.hash not in HASH_ALGORITHMS:
            raise ValidationError(f"Unsupported PBKDF2 hash: {self.hash}")
        if self.key_length != KEY_LENGTH:
            raise ValidationError(f"Key length must be {KEY_LENGTH} bytes")
        if self.iterations < 1 or (self.iterations < MIN_PBKDF2_ITERATIONS and not allow_weak):
            raise ValidationError(
                f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}, got {self.iterations}"
            )
        return self


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def random_bytes(length: int) -> bytes:
    return os.urandom(length)


def generate_key() -> bytes:
    """Fresh random AES-256 key."""
    return AESGCM.generate_key(bit_length=KEY_LENGTH * 8)


def derive_wrapping_key(passphrase: str, salt: bytes, params: DerivationParams) -> bytes:
    """Derive the key-encryption key from a passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=HASH_ALGORITHMS[params.hash](),
        length=params.key_length,
        salt=salt,
        iterations=params.iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def wrap_key(wrapping_key: bytes, key: bytes, iv: bytes, aad: Optional[bytes] = None) -> bytes:
    """Encrypt a key under another with AES-256-GCM; returns ciphertext || tag."""
    return AESGCM(wrapping_key).encrypt(iv, key, aad)


def unwrap_key(wrapping_key: bytes, wrapped: bytes, iv: bytes, aad: Optional[bytes] = None) -> bytes:
    """
    Decrypt a wrapped key.

    Raises:
        AuthenticationFailure: Wrong wrapping key or tampered material.
            Never returns partial output.
    """
    try:
        return AESGCM(wrapping_key).decrypt(iv, wrapped, aad)
    except (InvalidTag, ValueError) as e:
        raise AuthenticationFailure() from e


def chunk_nonce(base_iv: bytes, index: int) -> bytes:
    """Per-chunk nonce: base IV with ``index`` XOR-ed into the last four bytes."""
    if not 0 <= index < MAX_CHUNKS:
        raise ValidationError(f"Chunk index {index} out of range")
    counter = struct.unpack(">I", base_iv[-4:])[0] ^ index
    return base_iv[:-4] + struct.pack(">I", counter)


def chunk_aad(file_id: UUID, index: int, final: bool) -> bytes:
    """Associated data binding a chunk to its file and position."""
    return file_id.bytes + struct.pack(">I?", index, final)


def iter_chunks(source: Union[bytes, BinaryIO], chunk_size: int) -> Iterator[bytes]:
    """
    Yield ``chunk_size`` pieces of bytes or a binary stream.

    In-memory input is sliced through a memoryview; only the current
    chunk is copied.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset:offset + chunk_size])
        return

    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return
        yield chunk


def encrypt_chunks(key: bytes, base_iv: bytes, file_id: UUID, chunks: Iterable[bytes]) -> Iterator[bytes]:
    """
    Encrypt a sequence of chunks into ``chunk_ct || tag`` records.

    Empty input produces a single record for an empty final chunk, so
    every ciphertext carries at least one tag.
    """
    aead = AESGCM(key)
    index = 0
    pending: Optional[bytes] = None

    for chunk in chunks:
        if pending is not None:
            yield aead.encrypt(chunk_nonce(base_iv, index), pending, chunk_aad(file_id, index, False))
            index += 1
        pending = chunk

    yield aead.encrypt(chunk_nonce(base_iv, index), pending or b"", chunk_aad(file_id, index, True))


def decrypt_chunks(key: bytes, base_iv: bytes, file_id: UUID, ciphertext: bytes, chunk_size: int) -> Iterator[bytes]:
    """
    Decrypt ``chunk_ct || tag`` records produced by :func:`encrypt_chunks`.

    Raises:
        AuthenticationFailure: Any record fails its tag check (tampering,
            reordering, truncation or the wrong key)
    """
    if len(ciphertext) < TAG_LENGTH or len(base_iv) < MIN_IV_LENGTH:
        raise AuthenticationFailure()

    aead = AESGCM(key)
    record_size = chunk_size + TAG_LENGTH
    offset = 0
    index = 0
    total = len(ciphertext)

    while offset < total:
        record = ciphertext[offset:offset + record_size]
        final = offset + record_size >= total
        if len(record) < TAG_LENGTH:
            raise AuthenticationFailure()
        try:
            yield aead.decrypt(chunk_nonce(base_iv, index), record, chunk_aad(file_id, index, final))
        except (InvalidTag, ValueError) as e:
            raise AuthenticationFailure() from e
        offset += record_size
        index += 1


def load_public_key(public_key_pem: Union[str, bytes]) -> rsa.RSAPublicKey:
    data = public_key_pem.encode("ascii") if isinstance(public_key_pem, str) else public_key_pem
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as e:
        raise ValidationError("Invalid PEM public key") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValidationError("Auditor public key must be an RSA key")
    if key.key_size < 2048:
        raise ValidationError("Auditor public key must be at least 2048 bits")
    return key


def _oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def wrap_key_for_public_key(public_key_pem: Union[str, bytes], key: bytes) -> bytes:
    """Encrypt a key for the holder of an RSA private key (RSA-OAEP, SHA-256)."""
    return load_public_key(public_key_pem).encrypt(key, _oaep())


def unwrap_key_with_private_key(
    private_key_pem: Union[str, bytes],
    wrapped: bytes,
    password: Optional[bytes] = None,
) -> bytes:
    """Counterpart of :func:`wrap_key_for_public_key`, used on the auditor's side."""
    data = private_key_pem.encode("ascii") if isinstance(private_key_pem, str) else private_key_pem
    private_key = serialization.load_pem_private_key(data, password=password)
    try:
        return private_key.decrypt(wrapped, _oaep())
    except ValueError as e:
        raise AuthenticationFailure() from e


@dataclass
class PassphraseStrength:
    score: int
    is_valid: bool
    feedback: List[str] = field(default_factory=list)


def check_passphrase_strength(passphrase: str) -> PassphraseStrength:
    """
    Score a passphrase out of 100.

    Valid passphrases are at least 16 characters long and score 75 or more.
    """
    feedback = []
    score = 0

    if len(passphrase) < 16:
        feedback.append("Passphrase must be at least 16 characters long")
    else:
        score += 25

    if not re.search(r"[A-Z]", passphrase):
        feedback.append("Add uppercase letters")
    else:
        score += 25

    if not re.search(r"[a-z]", passphrase):
        feedback.append("Add lowercase letters")
    else:
        score += 25

    if not re.search(r"[0-9]", passphrase):
        feedback.append("Add numbers")
    else:
        score += 12

    if not re.search(r"[^A-Za-z0-9]", passphrase):
        feedback.append("Add special characters")
    else:
        score += 13

    return PassphraseStrength(
        score=score,
        is_valid=len(passphrase) >= 16 and score >= 75,
        feedback=feedback,
    )
