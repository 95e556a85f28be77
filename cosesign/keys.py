# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from typing import Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    load_pem_public_key,
)
from cryptography.x509 import load_pem_x509_certificate

from cosesign.algorithms import AlgorithmLike
from cosesign.signer import Signer, Verifier, new_signer, new_verifier

Pem = str


def default_algorithm_for_key(key) -> str:
    """
    Get the default algorithm for a given key, based on its
    type and parameters.
    """
    if hasattr(key, "public_key"):
        key = key.public_key()
    if isinstance(key, ec.EllipticCurvePublicKey):
        if isinstance(key.curve, ec.SECP256R1):
            return "ES256"
        elif isinstance(key.curve, ec.SECP384R1):
            return "ES384"
        elif isinstance(key.curve, ec.SECP521R1):
            return "ES512"
        else:
            raise NotImplementedError("unsupported curve")
    elif isinstance(key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
        return "EdDSA"
    elif isinstance(key, rsa.RSAPublicKey):
        return "PS256"
    else:
        raise NotImplementedError("unsupported key type")


def load_private_key(priv_pem: Pem):
    return load_pem_private_key(priv_pem.encode("ascii"), None, default_backend())


def load_public_key(pem: Pem):
    """
    Load a public key from a PEM certificate or a PEM public key.
    """
    if "BEGIN CERTIFICATE" in pem:
        cert = load_pem_x509_certificate(pem.encode("ascii"), default_backend())
        return cert.public_key()
    return load_pem_public_key(pem.encode("ascii"), default_backend())


def cert_fingerprint(cert_pem: Pem) -> bytes:
    cert = load_pem_x509_certificate(cert_pem.encode("ascii"), default_backend())
    return cert.fingerprint(hashes.SHA256()).hex().encode("utf-8")


def signer_from_pem(
    priv_pem: Pem, alg: Optional[AlgorithmLike] = None, deterministic: bool = False
) -> Signer:
    key = load_private_key(priv_pem)
    return new_signer(alg or default_algorithm_for_key(key), key, deterministic)


def verifier_from_pem(pem: Pem, alg: Optional[AlgorithmLike] = None) -> Verifier:
    key = load_public_key(pem)
    return new_verifier(alg or default_algorithm_for_key(key), key)
