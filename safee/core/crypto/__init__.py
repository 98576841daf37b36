"""Envelope encryption for Safee Core.

Passphrase-derived key -> organization key -> per-file key -> content.
"""

from .primitives import DerivationParams, PassphraseStrength, check_passphrase_strength
from .keys import EncryptionKeyManager
from .files import EncryptedFile, FileEncryptionService

__all__ = [
    "DerivationParams",
    "PassphraseStrength",
    "check_passphrase_strength",
    "EncryptionKeyManager",
    "EncryptedFile",
    "FileEncryptionService",
]
