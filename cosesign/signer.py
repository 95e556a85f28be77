# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import os
from abc import ABC, abstractmethod
from typing import Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from loguru import logger as LOG  # type: ignore

from cosesign.algorithms import Algorithm, AlgorithmFamily, AlgorithmLike, lookup
from cosesign.errors import (
    AuthenticationError,
    InvalidKey,
    SigningError,
    UnknownAlgorithm,
    VerificationError,
)

# RFC 8230 6.1
MIN_RSA_KEY_SIZE = 2048

EdDSAPrivateKey = Union[ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey]
EdDSAPublicKey = Union[ed25519.Ed25519PublicKey, ed448.Ed448PublicKey]


class Signer(ABC):
    """
    A private key, or a symmetric key, bound to the algorithm it signs with.
    """

    algorithm: Algorithm

    @abstractmethod
    def sign(self, data: bytes) -> bytes:
        """
        Sign the encoded ToBeSigned (or ToBeMaced) structure.
        Raises SigningError if the primitive fails.
        """


class Verifier(ABC):
    algorithm: Algorithm

    @abstractmethod
    def verify(self, data: bytes, signature: bytes) -> None:
        """
        Verify a signature over the encoded ToBeSigned structure.
        Returns None on success, raises VerificationError otherwise.
        """


def _ecdsa_to_raw(der_signature: bytes, size: int) -> bytes:
    # RFC 8152 8.1: r and s as fixed-width big-endian integers, concatenated
    r, s = decode_dss_signature(der_signature)
    return r.to_bytes(size, "big") + s.to_bytes(size, "big")


class ECDSASigner(Signer):
    def __init__(
        self,
        algorithm: Algorithm,
        key: ec.EllipticCurvePrivateKey,
        deterministic: bool = False,
    ):
        self.algorithm = algorithm
        self._key = key
        self._deterministic = deterministic

    def _signature_algorithm(self) -> ec.ECDSA:
        if self._deterministic:
            # RFC 6979 nonces
            return ec.ECDSA(self.algorithm.new_hash(), deterministic_signing=True)
        return ec.ECDSA(self.algorithm.new_hash())

    def sign(self, data: bytes) -> bytes:
        assert self.algorithm.key_size
        try:
            der_signature = self._key.sign(data, self._signature_algorithm())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"{self.algorithm}: {e}") from e
        return _ecdsa_to_raw(der_signature, self.algorithm.key_size)

    def verifier(self) -> "ECDSAVerifier":
        return ECDSAVerifier(self.algorithm, self._key.public_key())


class ECDSAVerifier(Verifier):
    def __init__(self, algorithm: Algorithm, key: ec.EllipticCurvePublicKey):
        self.algorithm = algorithm
        self._key = key

    def verify(self, data: bytes, signature: bytes) -> None:
        size = self.algorithm.key_size
        assert size
        if signature is None or len(signature) != 2 * size:
            raise VerificationError(
                f"{self.algorithm}: invalid signature length "
                f"{0 if signature is None else len(signature)}, expected {2 * size}"
            )
        r = int.from_bytes(signature[:size], "big")
        s = int.from_bytes(signature[size:], "big")
        try:
            self._key.verify(
                encode_dss_signature(r, s),
                data,
                ec.ECDSA(self.algorithm.new_hash()),
            )
        except InvalidSignature as e:
            raise VerificationError(f"{self.algorithm}: verification error") from e


class EdDSASigner(Signer):
    def __init__(self, algorithm: Algorithm, key: EdDSAPrivateKey):
        self.algorithm = algorithm
        self._key = key

    def sign(self, data: bytes) -> bytes:
        try:
            return self._key.sign(data)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"{self.algorithm}: {e}") from e

    def verifier(self) -> "EdDSAVerifier":
        return EdDSAVerifier(self.algorithm, self._key.public_key())


class EdDSAVerifier(Verifier):
    def __init__(self, algorithm: Algorithm, key: EdDSAPublicKey):
        self.algorithm = algorithm
        self._key = key

    def verify(self, data: bytes, signature: bytes) -> None:
        try:
            self._key.verify(signature or b"", data)
        except InvalidSignature as e:
            raise VerificationError(f"{self.algorithm}: verification error") from e


def _pss_padding(hash_algorithm: hashes.HashAlgorithm) -> padding.PSS:
    # RFC 8230 2: salt length equals the hash length
    return padding.PSS(
        mgf=padding.MGF1(hash_algorithm), salt_length=hash_algorithm.digest_size
    )


class RSAPSSSigner(Signer):
    def __init__(self, algorithm: Algorithm, key: rsa.RSAPrivateKey):
        self.algorithm = algorithm
        self._key = key

    def sign(self, data: bytes) -> bytes:
        h = self.algorithm.new_hash()
        try:
            return self._key.sign(data, _pss_padding(h), h)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"{self.algorithm}: {e}") from e

    def verifier(self) -> "RSAPSSVerifier":
        return RSAPSSVerifier(self.algorithm, self._key.public_key())


class RSAPSSVerifier(Verifier):
    def __init__(self, algorithm: Algorithm, key: rsa.RSAPublicKey):
        self.algorithm = algorithm
        self._key = key

    def verify(self, data: bytes, signature: bytes) -> None:
        h = self.algorithm.new_hash()
        try:
            self._key.verify(signature or b"", data, _pss_padding(h), h)
        except InvalidSignature as e:
            raise VerificationError(f"{self.algorithm}: verification error") from e


class HMACAuthenticator(Signer, Verifier):
    """
    HMAC tagging and tag authentication with a shared key.

    sign and verify are the tagging operations under the common Signer and
    Verifier contract.
    """

    def __init__(self, algorithm: Algorithm, key: bytes):
        self.algorithm = algorithm
        self._key = bytes(key)

    def _hmac(self, content) -> hmac.HMAC:
        h = hmac.HMAC(self._key, self.algorithm.new_hash())
        h.update(b"" if content is None else bytes(content))
        return h

    def create_tag(self, content: bytes) -> bytes:
        try:
            return self._hmac(content).finalize()
        except (ValueError, UnsupportedAlgorithm) as e:
            raise SigningError(f"{self.algorithm}: {e}") from e

    def authenticate_tag(self, content: bytes, tag: bytes) -> None:
        """
        Check tag against the HMAC of content in constant time.
        Every mismatch raises the same AuthenticationError.
        """
        h = self._hmac(content)
        try:
            h.verify(b"" if tag is None else bytes(tag))
        except InvalidSignature:
            raise AuthenticationError() from None

    def sign(self, data: bytes) -> bytes:
        return self.create_tag(data)

    def verify(self, data: bytes, signature: bytes) -> None:
        self.authenticate_tag(data, signature)


def _key_mismatch(alg: Algorithm, key) -> str:
    return f"{alg}: key of type {type(key).__name__} does not match algorithm"


def new_signer(alg: AlgorithmLike, key, deterministic: bool = False) -> Signer:
    """
    Return a Signer for a private key (or an HMAC key) and an algorithm.
    :param alg: algorithm name, value or registry entry.
    :param key: Python cryptography private key, or bytes for HMAC.
    :param deterministic: use RFC 6979 nonces for ECDSA.
    """
    alg = lookup(alg)
    if alg.family == AlgorithmFamily.ECDSA:
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise SigningError(_key_mismatch(alg, key))
        assert alg.curve
        if not isinstance(key.curve, alg.curve):
            raise SigningError(
                f"{alg}: key curve {key.curve.name} does not match {alg.curve.name}"
            )
        return ECDSASigner(alg, key, deterministic)
    elif alg.family == AlgorithmFamily.EDDSA:
        if not isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
            raise SigningError(_key_mismatch(alg, key))
        return EdDSASigner(alg, key)
    elif alg.family == AlgorithmFamily.RSA_PSS:
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningError(_key_mismatch(alg, key))
        if key.key_size < MIN_RSA_KEY_SIZE:
            raise SigningError(
                f"{alg}: RSA key must be at least {MIN_RSA_KEY_SIZE} bits long"
            )
        return RSAPSSSigner(alg, key)
    else:
        try:
            return new_authenticator(alg, key)
        except InvalidKey as e:
            raise SigningError(str(e)) from e


def new_verifier(alg: AlgorithmLike, key) -> Verifier:
    """
    Return a Verifier for a public key (or an HMAC key) and an algorithm.
    Private keys are accepted and their public half is used.
    """
    alg = lookup(alg)
    if hasattr(key, "public_key"):
        key = key.public_key()
    if alg.family == AlgorithmFamily.ECDSA:
        if not isinstance(key, ec.EllipticCurvePublicKey):
            raise InvalidKey(_key_mismatch(alg, key))
        assert alg.curve
        if not isinstance(key.curve, alg.curve):
            raise InvalidKey(
                f"{alg}: key curve {key.curve.name} does not match {alg.curve.name}"
            )
        return ECDSAVerifier(alg, key)
    elif alg.family == AlgorithmFamily.EDDSA:
        if not isinstance(key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
            raise InvalidKey(_key_mismatch(alg, key))
        return EdDSAVerifier(alg, key)
    elif alg.family == AlgorithmFamily.RSA_PSS:
        if not isinstance(key, rsa.RSAPublicKey):
            raise InvalidKey(_key_mismatch(alg, key))
        if key.key_size < MIN_RSA_KEY_SIZE:
            raise InvalidKey(
                f"{alg}: RSA key must be at least {MIN_RSA_KEY_SIZE} bits long"
            )
        return RSAPSSVerifier(alg, key)
    else:
        return new_authenticator(alg, key)


def new_authenticator(alg: AlgorithmLike, key: bytes) -> HMACAuthenticator:
    """
    Return an HMACAuthenticator, which both creates and authenticates tags.
    """
    alg = lookup(alg)
    if not alg.family.is_mac():
        raise UnknownAlgorithm(f"{alg} is not supported for authentication")
    if not isinstance(key, (bytes, bytearray)):
        raise InvalidKey(_key_mismatch(alg, key))
    if not key:
        raise InvalidKey("empty key")
    assert alg.key_size
    if len(key) < alg.key_size:
        # RFC 2104 3: keys shorter than the output length weaken the MAC
        LOG.warning(
            f"{alg}: key is {len(key)} bytes, shorter than the {alg.key_size} byte tag"
        )
    return HMACAuthenticator(alg, key)


def generate_key(alg: AlgorithmLike):
    """
    Generate a fresh private key (or HMAC key) suitable for alg.
    """
    alg = lookup(alg)
    if alg.family == AlgorithmFamily.ECDSA:
        assert alg.curve
        return ec.generate_private_key(alg.curve())
    elif alg.family == AlgorithmFamily.EDDSA:
        return ed25519.Ed25519PrivateKey.generate()
    elif alg.family == AlgorithmFamily.RSA_PSS:
        h = alg.new_hash()
        # 2048, 3072 and 4096 bits for SHA-256, SHA-384 and SHA-512
        key_size = {32: 2048, 48: 3072, 64: 4096}[h.digest_size]
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    else:
        assert alg.key_size
        return os.urandom(alg.key_size)


def new_signer_with_ephemeral_key(alg: AlgorithmLike) -> Tuple[Signer, object]:
    """
    Return a Signer with a freshly generated key, and the key. Meant for
    demos and tests.
    """
    key = generate_key(alg)
    return new_signer(alg, key), key
