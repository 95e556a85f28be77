# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import cbor2
import pytest

from cosesign.algorithms import ES256
from cosesign.errors import (
    AlgorithmMismatch,
    CoseError,
    DecodeError,
    HeaderError,
    NoSignatures,
    NoSignerFound,
    SignatureResult,
    VerificationError,
    VerificationFailed,
)
from cosesign.message import CBOR_TAG_SIGN, MessageState
from cosesign.sign import Signature, SignMessage
from cosesign.signer import new_authenticator, new_signer_with_ephemeral_key
from cosesign.structures import CONTEXT_SIGNATURE, sig_structure

PAYLOAD = b"payload to sign"
ALGORITHMS = ["ES256", "ES384", "ES512"]


def make_signers(algs=ALGORITHMS):
    return [new_signer_with_ephemeral_key(alg)[0] for alg in algs]


def make_message(count=len(ALGORITHMS), payload=PAYLOAD, **kwargs) -> SignMessage:
    msg = SignMessage(payload, **kwargs)
    for i in range(count):
        msg.add_signature(Signature(unprotected={"kid": str(i).encode()}))
    return msg


def verifiers_of(signers):
    return [s.verifier() for s in signers]


def test_sign_and_verify():
    signers = make_signers()
    msg = make_message()
    assert msg.state == MessageState.UNSIGNED
    msg.sign(signers)
    assert msg.state == MessageState.SIGNED
    assert msg.protected.finalized
    for signature, signer in zip(msg.signatures, signers):
        assert signature.protected.algorithm is signer.algorithm
        assert signature.protected.finalized
        assert len(signature.signature) == signer.algorithm.signature_size

    results = msg.verify(verifiers_of(signers))
    assert results == [SignatureResult(0), SignatureResult(1), SignatureResult(2)]
    assert all(r.ok for r in results)
    assert msg.state == MessageState.VERIFIED


def test_sign_and_verify_by_kid():
    signers = make_signers()
    msg = make_message()
    msg.sign({str(i).encode(): s for i, s in enumerate(signers)})

    decoded = SignMessage.decode(msg.encode())
    decoded.verify({str(i).encode(): v for i, v in enumerate(verifiers_of(signers))})
    assert decoded.state == MessageState.VERIFIED


def test_sign_and_verify_with_resolver():
    signers = make_signers()
    by_kid = {str(i).encode(): s for i, s in enumerate(signers)}
    seen = []

    def resolve(index, signature):
        seen.append((index, signature.kid))
        return by_kid[signature.kid]

    msg = make_message()
    msg.sign(resolve)
    assert seen == [(0, b"0"), (1, b"1"), (2, b"2")]
    msg.verify(lambda index, signature: by_kid[signature.kid].verifier())


def test_protected_body_header_and_external_aad():
    signers = make_signers()
    msg = make_message(protected={"content type": "text/plain"})
    msg.sign(signers, external_aad=b"aad")
    decoded = SignMessage.decode(msg.encode())
    assert decoded.protected["content type"] == "text/plain"
    decoded.verify(verifiers_of(signers), external_aad=b"aad")

    decoded = SignMessage.decode(msg.encode())
    with pytest.raises(VerificationFailed) as e:
        decoded.verify(verifiers_of(signers), external_aad=b"other")
    assert len(e.value.failed) == 3


def test_to_be_signed_layout():
    signers = make_signers(["ES256"])
    msg = make_message(1)
    msg.sign(signers)
    signature = msg.signatures[0]
    assert signature.to_be_signed(b"", PAYLOAD) == sig_structure(
        CONTEXT_SIGNATURE, b"", bytes.fromhex("a10126"), b"", PAYLOAD
    )


def test_detached_payload():
    signers = make_signers()
    msg = make_message(payload=None)
    msg.sign(signers)
    decoded = SignMessage.decode(msg.encode())
    assert decoded.payload is None
    decoded.verify(verifiers_of(signers))


def test_no_signatures():
    msg = SignMessage(PAYLOAD)
    with pytest.raises(NoSignatures):
        msg.sign([])
    with pytest.raises(NoSignatures):
        msg.verify([])
    with pytest.raises(NoSignatures):
        msg.encode()


def test_sign_is_atomic():
    """
    If any signer cannot be found, no signature entry is modified.
    """
    signers = make_signers()
    msg = make_message()
    keys = {b"0": signers[0], b"1": signers[1]}
    with pytest.raises(NoSignerFound):
        msg.sign(keys)
    assert msg.state == MessageState.UNSIGNED
    assert not msg.protected.finalized
    for signature in msg.signatures:
        assert signature.signature == b""
        assert signature.protected.algorithm is None
        assert not signature.protected.finalized

    # The message can still be signed
    msg.sign(signers)
    msg.verify(verifiers_of(signers))


def test_sign_with_resolver_returning_none():
    msg = make_message(1)
    with pytest.raises(NoSignerFound):
        msg.sign(lambda index, signature: None)
    assert msg.state == MessageState.UNSIGNED


def test_wrong_number_of_signers():
    msg = make_message()
    with pytest.raises(NoSignerFound):
        msg.sign(make_signers(["ES256"]))
    with pytest.raises(TypeError):
        msg.sign(42)


def test_sign_twice():
    signers = make_signers()
    msg = make_message()
    msg.sign(signers)
    with pytest.raises(CoseError):
        msg.sign(signers)
    with pytest.raises(CoseError):
        msg.add_signature(Signature())


def test_algorithm_mismatch():
    msg = make_message(1)
    msg.signatures[0].protected["alg"] = "ES384"
    with pytest.raises(AlgorithmMismatch):
        msg.sign(make_signers(["ES256"]))
    assert msg.state == MessageState.UNSIGNED

    signers = make_signers(["ES256"])
    msg = make_message(1)
    msg.sign(signers)
    with pytest.raises(AlgorithmMismatch):
        msg.verify([new_signer_with_ephemeral_key("ES384")[0].verifier()])
    assert msg.state == MessageState.SIGNED


def test_mac_algorithms_are_rejected():
    msg = make_message(1)
    with pytest.raises(AlgorithmMismatch):
        msg.sign([new_authenticator("HMAC 256/256", bytes(32))])
    assert msg.state == MessageState.UNSIGNED


def test_one_bad_signature():
    """
    A single bad signature fails the message, without affecting the results
    of the other entries.
    """
    signers = make_signers()
    msg = make_message()
    msg.sign(signers)

    decoded = SignMessage.decode(msg.encode())
    bad = decoded.signatures[1].signature
    decoded.signatures[1].signature = bad[:-1] + bytes([bad[-1] ^ 1])

    with pytest.raises(VerificationFailed) as e:
        decoded.verify(verifiers_of(signers))
    results = e.value.results
    assert [r.ok for r in results] == [True, False, True]
    assert [r.index for r in e.value.failed] == [1]
    assert isinstance(results[1].error, VerificationError)
    assert decoded.state == MessageState.VERIFICATION_FAILED


def test_wrong_key():
    signers = make_signers()
    msg = make_message()
    msg.sign(signers)
    verifiers = verifiers_of(signers)
    verifiers[0] = make_signers(["ES256"])[0].verifier()
    with pytest.raises(VerificationFailed) as e:
        msg.verify(verifiers)
    assert [r.ok for r in e.value.results] == [False, True, True]


def test_unprotected_headers_are_not_signed():
    signers = make_signers()
    msg = make_message()
    msg.sign(signers)

    decoded = SignMessage.decode(msg.encode())
    decoded.signatures[0].unprotected["kid"] = b"changed"
    decoded.unprotected["reserved"] = "anything"
    decoded.verify(verifiers_of(signers))


def test_protected_headers_are_signed():
    signers = make_signers()
    msg = make_message()
    msg.sign(signers)

    tagged = cbor2.loads(msg.encode())
    tagged.value[0] = cbor2.dumps({3: 0})
    decoded = SignMessage.decode(cbor2.dumps(tagged))
    with pytest.raises(VerificationFailed) as e:
        decoded.verify(verifiers_of(signers))
    assert len(e.value.failed) == 3

    tagged = cbor2.loads(msg.encode())
    tagged.value[3][2][0] = cbor2.dumps({1: -36, 3: 0})
    decoded = SignMessage.decode(cbor2.dumps(tagged))
    with pytest.raises(VerificationFailed) as e:
        decoded.verify(verifiers_of(signers))
    assert [r.ok for r in e.value.results] == [True, True, False]


def test_finalized_headers_cannot_change():
    signers = make_signers()
    msg = make_message()
    msg.sign(signers)
    with pytest.raises(CoseError):
        msg.protected["content type"] = 0
    with pytest.raises(CoseError):
        msg.signatures[0].protected["kid"] = b"0"


def test_sign_single_entry():
    signer = make_signers(["ES256"])[0]
    signature = Signature(protected={"alg": ES256})
    signature.sign(signer, b"", PAYLOAD)
    signature.verify(signer.verifier(), b"", PAYLOAD)
    with pytest.raises(CoseError):
        signature.sign(signer, b"", PAYLOAD)
    with pytest.raises(VerificationError):
        Signature().verify(signer.verifier(), b"", PAYLOAD)


def test_encode_decode():
    signers = make_signers()
    msg = make_message(unprotected={"content type": 0})
    msg.sign(signers)
    encoded = msg.encode()

    tagged = cbor2.loads(encoded)
    assert tagged.tag == CBOR_TAG_SIGN
    protected, unprotected, payload, signatures = tagged.value
    assert protected == b""
    assert unprotected == {3: 0}
    assert payload == PAYLOAD
    assert len(signatures) == 3

    decoded = SignMessage.decode(encoded)
    assert decoded.state == MessageState.SIGNED
    assert [s.kid for s in decoded.signatures] == [b"0", b"1", b"2"]
    assert decoded.encode() == encoded


@pytest.mark.parametrize(
    "value",
    [
        cbor2.dumps([b"", {}, b"", []]),
        cbor2.dumps(cbor2.CBORTag(18, [b"", {}, b"", b""])),
        cbor2.dumps(cbor2.CBORTag(98, [b"", {}, b""])),
        cbor2.dumps(cbor2.CBORTag(98, [b"", {}, b"", []])),
        cbor2.dumps(cbor2.CBORTag(98, [b"", {}, "text", [[b"", {}, b"sig"]]])),
        cbor2.dumps(cbor2.CBORTag(98, [b"", {}, b"", [[b"", {}]]])),
        cbor2.dumps(cbor2.CBORTag(98, [b"", {}, b"", [[b"", {}, "sig"]]])),
        cbor2.dumps(cbor2.CBORTag(98, [{}, {}, b"", [[b"", {}, b"sig"]]])),
        cbor2.dumps(
            cbor2.CBORTag(98, [cbor2.dumps({1: -7}), {1: -7}, b"", [[b"", {}, b"s"]]])
        ),
        b"\xd8\x62",
    ],
)
def test_decode_errors(value):
    with pytest.raises(DecodeError):
        SignMessage.decode(value)


def test_alg_in_unprotected_bucket():
    """
    Filling in alg must not duplicate an alg already in the unprotected
    bucket. Signing fails and leaves the message unsigned.
    """
    signers = make_signers(["ES256"])
    msg = SignMessage(PAYLOAD)
    msg.add_signature(Signature(unprotected={"alg": "ES256", "kid": b"1"}))
    with pytest.raises(HeaderError, match="both protected and unprotected"):
        msg.sign(signers)
    assert msg.state == MessageState.UNSIGNED
    assert msg.signatures[0].signature == b""
    assert 1 not in msg.signatures[0].protected
    assert not msg.protected.finalized
