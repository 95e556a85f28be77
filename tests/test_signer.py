# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa, utils

from cosesign.algorithms import EDDSA, lookup
from cosesign.errors import InvalidKey, SigningError, VerificationError
from cosesign.signer import (
    ECDSASigner,
    EdDSAVerifier,
    generate_key,
    new_signer,
    new_signer_with_ephemeral_key,
    new_verifier,
)

PAYLOAD = b"payload to sign"


def make_private_key(curve: ec.EllipticCurve):
    return ec.generate_private_key(curve=curve, backend=default_backend())


@pytest.mark.parametrize(
    "alg,curve,size,hash_alg",
    [
        ("ES256", ec.SECP256R1(), 64, hashes.SHA256()),
        ("ES384", ec.SECP384R1(), 96, hashes.SHA384()),
        ("ES512", ec.SECP521R1(), 132, hashes.SHA512()),
    ],
)
def test_ecdsa_signature(alg, curve, size, hash_alg):
    """
    Signatures are raw r || s, and verify independently of cosesign.
    """
    priv = make_private_key(curve)
    signer = new_signer(alg, priv)
    assert isinstance(signer, ECDSASigner)
    signature = signer.sign(PAYLOAD)
    assert len(signature) == size

    half = size // 2
    r = int.from_bytes(signature[:half], "big")
    s = int.from_bytes(signature[half:], "big")
    priv.public_key().verify(
        utils.encode_dss_signature(r, s), PAYLOAD, ec.ECDSA(hash_alg)
    )

    new_verifier(alg, priv.public_key()).verify(PAYLOAD, signature)
    signer.verifier().verify(PAYLOAD, signature)


def test_ecdsa_is_randomized():
    signer, _ = new_signer_with_ephemeral_key("ES256")
    assert signer.sign(PAYLOAD) != signer.sign(PAYLOAD)


def test_ecdsa_deterministic():
    priv = make_private_key(ec.SECP256R1())
    signer = new_signer("ES256", priv, deterministic=True)
    signature = signer.sign(PAYLOAD)
    assert signature == signer.sign(PAYLOAD)
    new_verifier("ES256", priv).verify(PAYLOAD, signature)


def test_ecdsa_verify_failures():
    priv = make_private_key(ec.SECP256R1())
    signature = new_signer("ES256", priv).sign(PAYLOAD)
    verifier = new_verifier("ES256", priv.public_key())
    with pytest.raises(VerificationError):
        verifier.verify(b"other payload", signature)
    with pytest.raises(VerificationError):
        verifier.verify(PAYLOAD, signature[:-1] + bytes([signature[-1] ^ 1]))
    with pytest.raises(VerificationError, match="length"):
        verifier.verify(PAYLOAD, signature[:-1])
    with pytest.raises(VerificationError):
        verifier.verify(PAYLOAD, None)


@pytest.mark.parametrize(
    "alg,key",
    [
        ("ES256", ec.SECP384R1()),
        ("ES384", ec.SECP256R1()),
        ("ES512", ec.SECP256R1()),
    ],
)
def test_curve_mismatch(alg, key):
    priv = make_private_key(key)
    with pytest.raises(SigningError, match="curve"):
        new_signer(alg, priv)
    with pytest.raises(InvalidKey, match="curve"):
        new_verifier(alg, priv.public_key())


def test_key_type_mismatch():
    ec_key = make_private_key(ec.SECP256R1())
    with pytest.raises(SigningError):
        new_signer("ES256", ed25519.Ed25519PrivateKey.generate())
    with pytest.raises(SigningError):
        new_signer("EdDSA", ec_key)
    with pytest.raises(SigningError):
        new_signer("PS256", ec_key)
    with pytest.raises(SigningError):
        new_signer("ES256", b"secret")
    with pytest.raises(InvalidKey):
        new_verifier("EdDSA", ec_key.public_key())
    with pytest.raises(InvalidKey):
        new_verifier("HMAC 256/256", ec_key)


@pytest.mark.parametrize(
    "key",
    [ed25519.Ed25519PrivateKey.generate(), ed448.Ed448PrivateKey.generate()],
)
def test_eddsa(key):
    signer = new_signer("EdDSA", key)
    signature = signer.sign(PAYLOAD)
    assert signer.verifier().verify(PAYLOAD, signature) is None
    verifier = new_verifier(EDDSA, key.public_key())
    assert isinstance(verifier, EdDSAVerifier)
    verifier.verify(PAYLOAD, signature)
    with pytest.raises(VerificationError):
        verifier.verify(PAYLOAD + b".", signature)


def test_rsa_pss():
    priv = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    signer = new_signer("PS256", priv)
    signature = signer.sign(PAYLOAD)
    assert len(signature) == 256
    new_verifier("PS256", priv.public_key()).verify(PAYLOAD, signature)
    with pytest.raises(VerificationError):
        new_verifier("PS384", priv.public_key()).verify(PAYLOAD, signature)


def test_rsa_key_too_small():
    priv = rsa.generate_private_key(public_exponent=65537, key_size=1024)
    with pytest.raises(SigningError, match="2048"):
        new_signer("PS256", priv)
    with pytest.raises(InvalidKey, match="2048"):
        new_verifier("PS256", priv.public_key())


@pytest.mark.parametrize("alg", ["ES256", "ES384", "ES512", "EdDSA", "HMAC 384/384"])
def test_generated_keys(alg):
    signer, key = new_signer_with_ephemeral_key(alg)
    assert signer.algorithm is lookup(alg)
    new_verifier(alg, key).verify(PAYLOAD, signer.sign(PAYLOAD))


def test_generated_hmac_key_size():
    assert len(generate_key("HMAC 512/512")) == 64
