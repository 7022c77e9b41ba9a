"""Seal secret values for an environment's public key.

The default "sealed_box" format is libsodium's anonymous sealed box, which
the recipient opens with its private key alone. The legacy "box" format is
``base64(nonce || box)`` where the box is made with a throwaway Curve25519
sender key; opening it also needs that sender key, which ``seal`` drops and
``seal_with_sender`` returns. Nothing about the sender key or the nonce
outlives the call, so two seals of the same value never match; only a
round-trip decryption can tell whether sealing worked.
"""
import base64
import binascii
import logging
from typing import Callable, Tuple, Union

from nacl.public import Box, PrivateKey, PublicKey, SealedBox
from nacl.utils import random as random_bytes

from .errors import EncodingError
from .models import EnvironmentKey, SealedSecret

logger = logging.getLogger(__name__)

KeyMaterial = Union[bytes, str, PublicKey]
SealFunction = Callable[[KeyMaterial, str], str]

SEALING_MODES = ("sealed_box", "box")
DEFAULT_SEALING_MODE = "sealed_box"


def _load_public_key(public_key: KeyMaterial) -> PublicKey:
    """
    Turn raw bytes or base64 text into a PublicKey.

    Raises:
        EncodingError: If the key is not base64 or is not 32 bytes long
    """
    if isinstance(public_key, PublicKey):
        return public_key

    if isinstance(public_key, str):
        try:
            raw = base64.b64decode(public_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncodingError(f"Public key is not valid base64: {e}") from e
    elif isinstance(public_key, (bytes, bytearray)):
        raw = bytes(public_key)
    else:
        raise EncodingError(f"Unsupported public key type: {type(public_key).__name__}")

    if len(raw) != PublicKey.SIZE:
        raise EncodingError(
            f"Public key must be {PublicKey.SIZE} bytes, got {len(raw)}"
        )
    return PublicKey(raw)


def seal_with_sender(public_key: KeyMaterial, plaintext: str) -> Tuple[str, bytes]:
    """
    Seal plaintext and also return the ephemeral sender public key.

    Args:
        public_key: Recipient public key (raw 32 bytes or base64 text)
        plaintext: Value to seal

    Returns:
        Tuple of (base64 ciphertext, sender public key bytes)

    Raises:
        EncodingError: If the recipient key is malformed
    """
    recipient = _load_public_key(public_key)
    nonce = random_bytes(Box.NONCE_SIZE)
    sender = PrivateKey.generate()

    encrypted = Box(sender, recipient).encrypt(plaintext.encode("utf-8"), nonce)
    combined = nonce + encrypted.ciphertext

    return base64.b64encode(combined).decode("ascii"), bytes(sender.public_key)


def seal(public_key: KeyMaterial, plaintext: str) -> str:
    """Seal plaintext with a fresh nonce and sender key; returns base64(nonce || box)."""
    ciphertext, _ = seal_with_sender(public_key, plaintext)
    return ciphertext


def seal_anonymous(public_key: KeyMaterial, plaintext: str) -> str:
    """Seal plaintext with libsodium's anonymous sealed box construction."""
    recipient = _load_public_key(public_key)
    encrypted = SealedBox(recipient).encrypt(plaintext.encode("utf-8"))
    return base64.b64encode(encrypted).decode("ascii")


def sealer_for_mode(mode: str) -> SealFunction:
    if mode == "box":
        return seal
    if mode == "sealed_box":
        return seal_anonymous
    raise ValueError(f"Unknown sealing mode '{mode}', expected one of {SEALING_MODES}")


def seal_for(key: EnvironmentKey, plaintext: str, seal_fn: SealFunction = seal_anonymous) -> SealedSecret:
    """Seal plaintext for an environment key, keeping the key id alongside."""
    logger.debug(f"Sealing value with key {key.key_id}")
    return SealedSecret(key_id=key.key_id, ciphertext=seal_fn(key.public_key, plaintext))
